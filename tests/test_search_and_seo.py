from __future__ import annotations

import os
import time
import unittest

from carmarket import create_app
from carmarket.extensions import db
from carmarket.models import Listing, User
from carmarket.utils.jwt_utils import create_access_token


class SearchAndSeoTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        cls._prev_db_url = os.getenv("DATABASE_URL")
        db_uri = "sqlite:///:memory:"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri
        if cls._prev_db_url is None:
            os.environ.pop("DATABASE_URL", None)
        else:
            os.environ["DATABASE_URL"] = cls._prev_db_url

    def _seed_user(self, role: str = "seller") -> tuple[int, str]:
        suffix = str(time.time_ns())
        with self.app.app_context():
            row = User(name=f"{role}-{suffix[-4:]}", email=f"{role}-{suffix}@carmarket.test", role=role, is_verified=True)
            row.set_password("Passw0rd!")
            db.session.add(row)
            db.session.commit()
            return int(row.id), create_access_token(int(row.id), role=role)

    def _headers(self, token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    def _create_listing(self, token: str, **fields) -> dict:
        payload = {"title": "Car", "make": "Toyota", "model": "Vitz", "year": 2014, "price": 650000, "location": "Nairobi"}
        payload.update(fields)
        res = self.client.post("/api/listings", json=payload, headers=self._headers(token))
        self.assertEqual(res.status_code, 201, res.get_data(as_text=True))
        return (res.get_json(force=True) or {})["listing"]

    def test_search_terms_filters_and_facets(self):
        _uid, token = self._seed_user()
        tag = f"zx{time.time_ns()}"
        cheap = self._create_listing(token, title=f"{tag} Honda Fit", make="Honda", model="Fit", price=700000, body_type="hatchback")
        pricey = self._create_listing(token, title=f"{tag} Honda CR-V", make="Honda", model="CR-V", price=3200000, body_type="suv")
        self._create_listing(token, title=f"{tag} Mazda CX-5", make="Mazda", model="CX-5", price=2800000, body_type="suv")

        res = self.client.get(f"/api/search?q={tag}+honda")
        self.assertEqual(res.status_code, 200)
        body = res.get_json(force=True) or {}
        self.assertEqual({r["id"] for r in body["results"]}, {cheap["id"], pricey["id"]})
        self.assertEqual(body["search_info"]["terms"], [tag, "honda"])
        self.assertEqual(body["facets"]["make"], [{"value": "Honda", "count": 2}])

        by_body = (self.client.get(f"/api/search?q={tag}&body_type=suv&sort_by=price&sort_order=asc").get_json(force=True) or {})
        self.assertEqual([r["make"] for r in by_body["results"]], ["Mazda", "Honda"])

        ranged = (self.client.get(f"/api/search?q={tag}&max_price=1000000").get_json(force=True) or {})
        self.assertEqual([r["id"] for r in ranged["results"]], [cheap["id"]])

    def test_search_skips_inactive_listings(self):
        _uid, token = self._seed_user()
        tag = f"qq{time.time_ns()}"
        listing = self._create_listing(token, title=f"{tag} Probox")
        with self.app.app_context():
            row = db.session.get(Listing, listing["id"])
            row.status = "sold"
            db.session.commit()
        body = self.client.get(f"/api/search?q={tag}").get_json(force=True) or {}
        self.assertEqual(body["results"], [])

    def test_suggestions(self):
        _uid, token = self._seed_user()
        make = f"Mk{time.time_ns()}"
        self._create_listing(token, make=make, location="Kisumu")
        self.assertEqual(self.client.get("/api/search/suggestions").status_code, 400)
        self.assertEqual(self.client.get(f"/api/search/suggestions?q={make}&type=colors").status_code, 400)
        res = self.client.get(f"/api/search/suggestions?q={make.lower()}&type=makes")
        self.assertEqual(res.status_code, 200)
        suggestions = (res.get_json(force=True) or {})["suggestions"]
        self.assertEqual(suggestions, {"makes": [{"value": make, "count": 1}]})

    def test_trending_counts_recent_searches(self):
        tag = f"tr{time.time_ns()}"
        for _ in range(3):
            self.client.get(f"/api/search?q={tag}")
        res = self.client.get("/api/search/trending")
        self.assertEqual(res.status_code, 200)
        searches = (res.get_json(force=True) or {})["searches"]
        self.assertIn({"query": tag, "count": 3}, searches)

    def test_robots_txt(self):
        res = self.client.get("/robots.txt")
        self.assertEqual(res.status_code, 200)
        text = res.get_data(as_text=True)
        self.assertIn("Disallow: /api/", text)
        self.assertIn("User-agent: AhrefsBot", text)
        sitemap_lines = [line for line in text.splitlines() if line.startswith("Sitemap: ")]
        self.assertEqual(len(sitemap_lines), 1)
        self.assertTrue(sitemap_lines[0].endswith("/sitemap.xml"))

    def test_sitemap_lists_live_inventory(self):
        _uid, token = self._seed_user()
        listing = self._create_listing(token, title="Sitemap Subaru")
        res = self.client.get("/sitemap.xml")
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.content_type.startswith("application/xml"))
        xml = res.get_data(as_text=True)
        self.assertIn("<changefreq>daily</changefreq>", xml)
        self.assertIn(f"/cars/{listing['id']}</loc>", xml)
