from __future__ import annotations

import os
import time
import unittest

from carmarket import create_app
from carmarket.extensions import db
from carmarket.models import Notification, User
from carmarket.utils.jwt_utils import create_access_token


class ReviewsAndCategoriesTestCase(unittest.TestCase):
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

    def _review(self, token: str, target_id: int, rating: int, **extra):
        payload = {"target_id": target_id, "rating": rating}
        payload.update(extra)
        return self.client.post("/api/reviews", json=payload, headers=self._headers(token))

    def test_review_validation(self):
        seller_id, _seller_token = self._seed_user("seller")
        buyer_id, buyer_token = self._seed_user()
        self.assertEqual(self.client.post("/api/reviews", json={"target_id": seller_id, "rating": 5}).status_code, 401)
        self.assertEqual(self._review(buyer_token, seller_id, 0).status_code, 400)
        self.assertEqual(self._review(buyer_token, seller_id, 6).status_code, 400)
        self.assertEqual(self._review(buyer_token, buyer_id, 5).status_code, 400)
        self.assertEqual(self._review(buyer_token, 999999, 5).status_code, 404)
        missing_target = self.client.post("/api/reviews", json={"rating": 4}, headers=self._headers(buyer_token))
        self.assertEqual(missing_target.status_code, 400)

    def test_review_create_notifies_and_rejects_duplicate(self):
        seller_id, _seller_token = self._seed_user("seller")
        _buyer_id, buyer_token = self._seed_user()
        res = self._review(buyer_token, seller_id, 4, comment="  Honest seller  ")
        self.assertEqual(res.status_code, 201, res.get_data(as_text=True))
        review = (res.get_json(force=True) or {})["review"]
        self.assertEqual(review["rating"], 4)
        self.assertEqual(review["comment"], "Honest seller")

        dup = self._review(buyer_token, seller_id, 5)
        self.assertEqual(dup.status_code, 400)

        with self.app.app_context():
            notes = Notification.query.filter_by(user_id=seller_id, channel="in_app").all()
            self.assertTrue(any(n.type == "social" for n in notes))

    def test_list_reviews_includes_average_for_target(self):
        seller_id, _seller_token = self._seed_user("seller")
        _a, token_a = self._seed_user()
        _b, token_b = self._seed_user()
        self.assertEqual(self._review(token_a, seller_id, 5).status_code, 201)
        self.assertEqual(self._review(token_b, seller_id, 4).status_code, 201)

        res = self.client.get(f"/api/reviews?target_id={seller_id}")
        self.assertEqual(res.status_code, 200)
        body = res.get_json(force=True) or {}
        self.assertEqual(len(body["items"]), 2)
        self.assertEqual(body["average_rating"], {"average": 4.5, "count": 2})

        plain = self.client.get("/api/reviews").get_json(force=True) or {}
        self.assertNotIn("average_rating", plain)

    def test_only_author_edits_and_admin_can_delete(self):
        seller_id, seller_token = self._seed_user("seller")
        _buyer_id, buyer_token = self._seed_user()
        _admin_id, admin_token = self._seed_user("admin")
        review = (self._review(buyer_token, seller_id, 2).get_json(force=True) or {})["review"]

        forbidden = self.client.patch(f"/api/reviews/{review['id']}", json={"rating": 5}, headers=self._headers(seller_token))
        self.assertEqual(forbidden.status_code, 403)
        bad = self.client.patch(f"/api/reviews/{review['id']}", json={"rating": 9}, headers=self._headers(buyer_token))
        self.assertEqual(bad.status_code, 400)
        ok = self.client.patch(f"/api/reviews/{review['id']}", json={"rating": 3}, headers=self._headers(buyer_token))
        self.assertEqual(ok.status_code, 200)
        self.assertEqual((ok.get_json(force=True) or {})["review"]["rating"], 3)

        self.assertEqual(self.client.delete(f"/api/reviews/{review['id']}", headers=self._headers(seller_token)).status_code, 403)
        self.assertEqual(self.client.delete(f"/api/reviews/{review['id']}", headers=self._headers(admin_token)).status_code, 200)
        self.assertEqual(self.client.get(f"/api/reviews/{review['id']}").status_code, 404)

    def test_user_rating_summary(self):
        seller_id, _seller_token = self._seed_user("seller")
        _a, token_a = self._seed_user()
        self.assertEqual(self._review(token_a, seller_id, 3).status_code, 201)
        res = self.client.get(f"/api/users/{seller_id}/ratings")
        self.assertEqual(res.status_code, 200)
        body = res.get_json(force=True) or {}
        self.assertEqual(body["average_rating"], 3.0)
        self.assertEqual(body["total_reviews"], 1)
        self.assertEqual(body["rating_distribution"]["3"], 1)
        self.assertEqual(body["verification_score"], 40)
        self.assertEqual(len(body["recent_reviews"]), 1)
        self.assertEqual(self.client.get("/api/users/999999/ratings").status_code, 404)

    def test_category_tree_and_nesting(self):
        _uid, user_token = self._seed_user()
        _admin_id, admin_token = self._seed_user("admin")
        suffix = str(time.time_ns())[-6:]
        denied = self.client.post("/api/categories", json={"name": f"SUVs {suffix}"}, headers=self._headers(user_token))
        self.assertEqual(denied.status_code, 403)

        root = self.client.post("/api/categories", json={"name": f"SUVs {suffix}"}, headers=self._headers(admin_token))
        self.assertEqual(root.status_code, 201, root.get_data(as_text=True))
        root_cat = (root.get_json(force=True) or {})["category"]
        self.assertEqual(root_cat["slug"], f"suvs-{suffix}")

        dup = self.client.post("/api/categories", json={"name": f"suvs {suffix}"}, headers=self._headers(admin_token))
        self.assertEqual(dup.status_code, 400)

        child = self.client.post(
            "/api/categories", json={"name": f"Compact SUVs {suffix}", "parent_id": root_cat["id"]}, headers=self._headers(admin_token)
        )
        self.assertEqual(child.status_code, 201)
        child_cat = (child.get_json(force=True) or {})["category"]

        too_deep = self.client.post(
            "/api/categories", json={"name": f"Mini {suffix}", "parent_id": child_cat["id"]}, headers=self._headers(admin_token)
        )
        self.assertEqual(too_deep.status_code, 400)

        tree = (self.client.get("/api/categories").get_json(force=True) or {})["items"]
        node = next(item for item in tree if item["id"] == root_cat["id"])
        self.assertEqual([c["id"] for c in node["children"]], [child_cat["id"]])
        self.assertEqual(node["listing_count"], 0)

        detail = (self.client.get(f"/api/categories/{root_cat['id']}").get_json(force=True) or {})["category"]
        self.assertEqual(len(detail["children"]), 1)

        blocked = self.client.delete(f"/api/categories/{root_cat['id']}", headers=self._headers(admin_token))
        self.assertEqual(blocked.status_code, 400)
        self.assertEqual(self.client.delete(f"/api/categories/{child_cat['id']}", headers=self._headers(admin_token)).status_code, 200)
        self.assertEqual(self.client.delete(f"/api/categories/{root_cat['id']}", headers=self._headers(admin_token)).status_code, 200)
