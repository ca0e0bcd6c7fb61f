from __future__ import annotations

import os
import re
import time
import unittest

from carmarket import create_app
from carmarket.extensions import db
from carmarket.integrations.messaging.factory import mock_outbox
from carmarket.models import NotificationSettings, User


class AuthFlowsTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        cls._prev_db_url = os.getenv("DATABASE_URL")
        cls._prev_sms_key = os.getenv("SMS_API_KEY")
        db_uri = "sqlite:///:memory:"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        os.environ.pop("SMS_API_KEY", None)
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        for key, prev in (
            ("SQLALCHEMY_DATABASE_URI", cls._prev_db_uri),
            ("DATABASE_URL", cls._prev_db_url),
            ("SMS_API_KEY", cls._prev_sms_key),
        ):
            if prev is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = prev

    def _unique(self) -> str:
        return str(time.time_ns())

    def _register(self, **overrides) -> dict:
        suffix = self._unique()
        payload = {
            "name": f"Auth User {suffix[-5:]}",
            "email": f"auth-{suffix}@carmarket.test",
            "password": "Passw0rd!",
        }
        payload.update(overrides)
        res = self.client.post("/api/auth/register", json=payload)
        self.assertEqual(res.status_code, 201, res.get_data(as_text=True))
        data = res.get_json(force=True) or {}
        self.assertTrue((data.get("token") or "").strip())
        self.assertTrue((data.get("refresh_token") or "").strip())
        self.assertTrue((data.get("expires_at") or "").strip())
        return data

    def _auth(self, token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    def test_register_creates_buyer_with_notification_settings(self):
        data = self._register()
        user = data["user"]
        self.assertEqual(user["role"], "buyer")
        self.assertFalse(user["is_verified"])
        with self.app.app_context():
            self.assertIsNotNone(NotificationSettings.query.filter_by(user_id=user["id"]).first())

    def test_register_rejects_admin_role_and_duplicates(self):
        res = self.client.post(
            "/api/auth/register",
            json={"name": "Sneaky", "email": f"sneaky-{self._unique()}@carmarket.test", "password": "Passw0rd!", "role": "admin"},
        )
        self.assertEqual(res.status_code, 400)

        data = self._register()
        dup = self.client.post(
            "/api/auth/register",
            json={"name": "Again", "email": data["user"]["email"], "password": "Passw0rd!"},
        )
        self.assertEqual(dup.status_code, 409)

    def test_register_normalizes_kenyan_phone(self):
        suffix = self._unique()
        data = self._register(phone=f"07{suffix[-8:]}")
        self.assertEqual(data["user"]["phone"], f"+2547{suffix[-8:]}")

        bad = self.client.post(
            "/api/auth/register",
            json={"name": "Bad Phone", "email": f"bad-{suffix}@carmarket.test", "password": "Passw0rd!", "phone": "12345"},
        )
        self.assertEqual(bad.status_code, 400)

    def test_login_and_me(self):
        data = self._register()
        email = data["user"]["email"]
        wrong = self.client.post("/api/auth/login", json={"email": email, "password": "nope-nope"})
        self.assertEqual(wrong.status_code, 401)

        res = self.client.post("/api/auth/login", json={"email": email, "password": "Passw0rd!"})
        self.assertEqual(res.status_code, 200)
        token = (res.get_json(force=True) or {}).get("token")
        me = self.client.get("/api/auth/me", headers=self._auth(token))
        self.assertEqual(me.status_code, 200)
        self.assertEqual((me.get_json(force=True) or {}).get("email"), email)

    def test_refresh_rotation_enforced(self):
        registered = self._register()
        refresh_1 = registered.get("refresh_token")

        refreshed = self.client.post("/api/auth/refresh", json={"refresh_token": refresh_1})
        self.assertEqual(refreshed.status_code, 200)
        refresh_2 = ((refreshed.get_json(force=True) or {}).get("refresh_token") or "").strip()
        self.assertTrue(refresh_2)
        self.assertNotEqual(refresh_1, refresh_2)

        replay_old = self.client.post("/api/auth/refresh", json={"refresh_token": refresh_1})
        self.assertEqual(replay_old.status_code, 401)

    def test_logout_revokes_refresh_token(self):
        registered = self._register()
        logout = self.client.post(
            "/api/auth/logout",
            json={"refresh_token": registered["refresh_token"]},
            headers=self._auth(registered["token"]),
        )
        self.assertEqual(logout.status_code, 200)
        self.assertEqual((logout.get_json(force=True) or {}).get("revoked_refresh_tokens"), 1)

        refreshed = self.client.post("/api/auth/refresh", json={"refresh_token": registered["refresh_token"]})
        self.assertEqual(refreshed.status_code, 401)

    def test_deactivated_account_cannot_login(self):
        data = self._register()
        with self.app.app_context():
            row = db.session.get(User, data["user"]["id"])
            row.is_active = False
            db.session.commit()
        res = self.client.post("/api/auth/login", json={"email": data["user"]["email"], "password": "Passw0rd!"})
        self.assertEqual(res.status_code, 403)
        me = self.client.get("/api/auth/me", headers=self._auth(data["token"]))
        self.assertEqual(me.status_code, 401)

    def test_forgot_password_is_generic(self):
        res = self.client.post("/api/auth/forgot-password", json={"email": "nobody@carmarket.test"})
        self.assertEqual(res.status_code, 200)
        self.assertTrue((res.get_json(force=True) or {}).get("ok"))

    def test_sms_verification_round_trip(self):
        data = self._register()
        suffix = self._unique()
        phone = f"07{suffix[-8:]}"
        sent = self.client.post("/api/auth/send-sms-verification", json={"phone": phone}, headers=self._auth(data["token"]))
        self.assertEqual(sent.status_code, 200, sent.get_data(as_text=True))

        international = f"+2547{suffix[-8:]}"
        messages = [m for m in mock_outbox() if m["to"] == international]
        self.assertTrue(messages)
        code = re.search(r"\b(\d{6})\b", messages[-1]["message"]).group(1)

        wrong = self.client.post("/api/auth/verify-sms", json={"phone": phone, "code": "000000" if code != "000000" else "111111"})
        self.assertEqual(wrong.status_code, 400)
        self.assertEqual((wrong.get_json(force=True) or {}).get("attempts_remaining"), 4)

        ok = self.client.post("/api/auth/verify-sms", json={"phone": phone, "code": code}, headers=self._auth(data["token"]))
        self.assertEqual(ok.status_code, 200)
        body = ok.get_json(force=True) or {}
        self.assertEqual(body["phone"], international)
        self.assertTrue(body["user"]["phone_verified"])

    def test_sms_resend_is_throttled(self):
        phone = f"01{self._unique()[-8:]}"
        first = self.client.post("/api/auth/send-sms-verification", json={"phone": phone})
        self.assertEqual(first.status_code, 200)
        second = self.client.post("/api/auth/send-sms-verification", json={"phone": phone})
        self.assertEqual(second.status_code, 429)


if __name__ == "__main__":
    unittest.main()
