from __future__ import annotations

import os
import time
import unittest

from carmarket import create_app
from carmarket.extensions import db
from carmarket.models import User
from carmarket.utils.jwt_utils import create_access_token


class UserProfileTestCase(unittest.TestCase):
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

    def _seed_user(self, role: str = "buyer") -> tuple[int, str]:
        suffix = str(time.time_ns())
        with self.app.app_context():
            row = User(name=f"{role}-{suffix[-4:]}", email=f"{role}-{suffix}@carmarket.test", role=role, is_verified=True)
            row.set_password("Passw0rd!")
            db.session.add(row)
            db.session.commit()
            return int(row.id), create_access_token(int(row.id), role=role)

    def _headers(self, token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    def _create_listing(self, token: str) -> dict:
        res = self.client.post(
            "/api/listings",
            json={"title": "Mazda Demio 2015", "make": "Mazda", "model": "Demio", "year": 2015, "price": 780000},
            headers=self._headers(token),
        )
        self.assertEqual(res.status_code, 201, res.get_data(as_text=True))
        return (res.get_json(force=True) or {})["listing"]

    def test_profile_update_normalizes_phone(self):
        self.assertEqual(self.client.get("/api/user/profile").status_code, 401)
        _uid, token = self._seed_user()
        empty = self.client.patch("/api/user/profile", json={"name": "   "}, headers=self._headers(token))
        self.assertEqual(empty.status_code, 400)
        bad_phone = self.client.patch("/api/user/profile", json={"phone": "12345"}, headers=self._headers(token))
        self.assertEqual(bad_phone.status_code, 400)

        suffix = str(time.time_ns())[-8:]
        res = self.client.patch(
            "/api/user/profile",
            json={"name": "Wanjiku", "location": " Mombasa ", "phone": f"07{suffix}"},
            headers=self._headers(token),
        )
        self.assertEqual(res.status_code, 200, res.get_data(as_text=True))
        user = (res.get_json(force=True) or {})["user"]
        self.assertEqual(user["name"], "Wanjiku")
        self.assertEqual(user["location"], "Mombasa")
        self.assertEqual(user["phone"], f"+2547{suffix}")
        self.assertFalse(user["phone_verified"])

        _other_id, other_token = self._seed_user()
        taken = self.client.patch("/api/user/profile", json={"phone": f"+2547{suffix}"}, headers=self._headers(other_token))
        self.assertEqual(taken.status_code, 409)

    def test_change_password(self):
        _uid, token = self._seed_user()
        wrong = self.client.post(
            "/api/user/change-password",
            json={"current_password": "nope", "new_password": "N3wPassword!"},
            headers=self._headers(token),
        )
        self.assertEqual(wrong.status_code, 400)
        short = self.client.post(
            "/api/user/change-password",
            json={"current_password": "Passw0rd!", "new_password": "short"},
            headers=self._headers(token),
        )
        self.assertEqual(short.status_code, 400)
        ok = self.client.post(
            "/api/user/change-password",
            json={"current_password": "Passw0rd!", "new_password": "N3wPassword!"},
            headers=self._headers(token),
        )
        self.assertEqual(ok.status_code, 200)

    def test_delete_account_deactivates_and_hides_listings(self):
        uid, token = self._seed_user("seller")
        listing = self._create_listing(token)
        res = self.client.delete("/api/user/account", headers=self._headers(token))
        self.assertEqual(res.status_code, 200)
        self.assertEqual(self.client.get("/api/user/profile", headers=self._headers(token)).status_code, 401)
        self.assertEqual(self.client.get(f"/api/listings/{listing['id']}").status_code, 404)
        with self.app.app_context():
            self.assertFalse(db.session.get(User, uid).is_active)

    def test_favorites(self):
        _seller_id, seller_token = self._seed_user("seller")
        _uid, token = self._seed_user()
        listing = self._create_listing(seller_token)

        neither = self.client.post("/api/user/favorites", json={}, headers=self._headers(token))
        self.assertEqual(neither.status_code, 400)
        both = self.client.post(
            "/api/user/favorites", json={"listing_id": listing["id"], "rental_listing_id": 1}, headers=self._headers(token)
        )
        self.assertEqual(both.status_code, 400)
        missing = self.client.post("/api/user/favorites", json={"listing_id": 999999}, headers=self._headers(token))
        self.assertEqual(missing.status_code, 404)

        res = self.client.post("/api/user/favorites", json={"listing_id": listing["id"]}, headers=self._headers(token))
        self.assertEqual(res.status_code, 201)
        favorite = (res.get_json(force=True) or {})["favorite"]
        dup = self.client.post("/api/user/favorites", json={"listing_id": listing["id"]}, headers=self._headers(token))
        self.assertEqual(dup.status_code, 409)

        items = (self.client.get("/api/user/favorites", headers=self._headers(token)).get_json(force=True) or {})["items"]
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0]["listing"]["id"], listing["id"])

        self.assertEqual(self.client.delete(f"/api/user/favorites/{favorite['id']}", headers=self._headers(seller_token)).status_code, 404)
        self.assertEqual(self.client.delete(f"/api/user/favorites/{favorite['id']}", headers=self._headers(token)).status_code, 200)

    def test_notification_settings(self):
        _uid, token = self._seed_user()
        res = self.client.get("/api/user/notification-settings", headers=self._headers(token))
        self.assertEqual(res.status_code, 200)
        settings = (res.get_json(force=True) or {})["settings"]
        self.assertTrue(settings["booking_updates"])
        self.assertFalse(settings["marketing"])

        bad = self.client.put("/api/user/notification-settings", json={"marketing": "yes"}, headers=self._headers(token))
        self.assertEqual(bad.status_code, 400)
        ok = self.client.put(
            "/api/user/notification-settings", json={"marketing": True, "booking_updates": False}, headers=self._headers(token)
        )
        self.assertEqual(ok.status_code, 200)
        updated = (ok.get_json(force=True) or {})["settings"]
        self.assertTrue(updated["marketing"])
        self.assertFalse(updated["booking_updates"])

    def test_company_verification_submission(self):
        _buyer_id, buyer_token = self._seed_user()
        denied = self.client.post("/api/user/verification", json={"company_name": "Acme"}, headers=self._headers(buyer_token))
        self.assertEqual(denied.status_code, 403)

        _cid, company_token = self._seed_user("rental_company")
        missing = self.client.post("/api/user/verification", json={}, headers=self._headers(company_token))
        self.assertEqual(missing.status_code, 400)
        created = self.client.post(
            "/api/user/verification",
            json={"company_name": "Savannah Car Hire", "kra_pin": "P051234567X"},
            headers=self._headers(company_token),
        )
        self.assertEqual(created.status_code, 201)
        company = (created.get_json(force=True) or {})["company"]
        self.assertEqual(company["verification_status"], "PENDING")
        self.assertEqual(company["kra_pin"], "P051234567X")

        again = self.client.post(
            "/api/user/verification", json={"company_name": "Savannah Car Hire Ltd"}, headers=self._headers(company_token)
        )
        self.assertEqual(again.status_code, 200)
        status = (self.client.get("/api/user/verification", headers=self._headers(company_token)).get_json(force=True) or {})
        self.assertEqual(status["company"]["company_name"], "Savannah Car Hire Ltd")
        self.assertTrue(status["email_verified"])

    def test_dashboard_counts(self):
        _uid, token = self._seed_user("seller")
        self._create_listing(token)
        res = self.client.get("/api/user/dashboard", headers=self._headers(token))
        self.assertEqual(res.status_code, 200)
        body = res.get_json(force=True) or {}
        self.assertEqual(body["listings"]["total"], 1)
        self.assertEqual(body["listings"]["by_status"].get("active"), 1)
        self.assertEqual(body["favorites"], 0)
        self.assertIn("usage", body)
