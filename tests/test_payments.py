from __future__ import annotations

import json
import os
import time
import unittest

from carmarket import create_app
from carmarket.extensions import db
from carmarket.integrations.payments.stripe_provider import sign_stripe_payload
from carmarket.models import Listing, Payment, PaymentTransition, User, WebhookEvent
from carmarket.utils.jwt_utils import create_access_token


WEBHOOK_SECRET = "whsec_test_secret"


class PaymentsTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev = {key: os.getenv(key) for key in ("SQLALCHEMY_DATABASE_URI", "DATABASE_URL", "STRIPE_WEBHOOK_SECRET", "PAYMENTS_PROVIDER_MODE")}
        db_uri = "sqlite:///:memory:"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        os.environ["STRIPE_WEBHOOK_SECRET"] = WEBHOOK_SECRET
        os.environ["PAYMENTS_PROVIDER_MODE"] = "mock"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        for key, prev in cls._prev.items():
            if prev is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = prev

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

    def _seed_listing(self, user_id: int) -> int:
        with self.app.app_context():
            row = Listing(user_id=user_id, title="Subaru Outback", make="Subaru", model="Outback", year=2017, price=2800000)
            db.session.add(row)
            db.session.commit()
            return int(row.id)

    def _create_payment(self, token: str, **payload) -> dict:
        res = self.client.post("/api/payments/create", json=payload, headers=self._headers(token))
        self.assertEqual(res.status_code, 201, res.get_data(as_text=True))
        return res.get_json(force=True) or {}

    def _post_stripe_event(self, event: dict):
        raw = json.dumps(event).encode("utf-8")
        return self.client.post(
            "/api/payments/stripe/webhook",
            data=raw,
            headers={"Stripe-Signature": sign_stripe_payload(raw, WEBHOOK_SECRET), "Content-Type": "application/json"},
        )

    def _mpesa_callback(self, checkout_id: str, code: int, desc: str = "", receipt: str = ""):
        callback = {"MerchantRequestID": "m-1", "CheckoutRequestID": checkout_id, "ResultCode": code, "ResultDesc": desc or "done"}
        if code == 0:
            callback["CallbackMetadata"] = {
                "Item": [
                    {"Name": "Amount", "Value": 1500},
                    {"Name": "MpesaReceiptNumber", "Value": receipt},
                    {"Name": "TransactionDate", "Value": 20260101120000},
                    {"Name": "PhoneNumber", "Value": 254712345678},
                ]
            }
        return self.client.post("/api/payments/mpesa/callback", json={"Body": {"stkCallback": callback}})

    def test_pricing_table(self):
        res = self.client.get("/api/payments/pricing")
        self.assertEqual(res.status_code, 200)
        rows = (res.get_json(force=True) or {})["pricing"]
        self.assertEqual(len(rows), 6)
        single = self.client.get("/api/payments/pricing?listing_type=premium").get_json(force=True) or {}
        self.assertEqual(single["pricing"]["usd_cents"], 2500)
        self.assertEqual(single["pricing"]["kes"], 3750)
        self.assertEqual(self.client.get("/api/payments/pricing?listing_type=gold").status_code, 400)

    def test_create_validation(self):
        _uid, token = self._seed_user()
        cases = [
            {"listing_type": "GOLD"},
            {"listing_type": "FEATURED", "provider": "paypal"},
            {"listing_type": "FEATURED", "provider": "mpesa"},
            {"listing_type": "FEATURED", "provider": "mpesa", "phone_number": "12345"},
        ]
        for payload in cases:
            res = self.client.post("/api/payments/create", json=payload, headers=self._headers(token))
            self.assertEqual(res.status_code, 400, payload)

        owner_id, _owner_token = self._seed_user()
        foreign = self._seed_listing(owner_id)
        res = self.client.post("/api/payments/create", json={"listing_type": "FEATURED", "listing_id": foreign}, headers=self._headers(token))
        self.assertEqual(res.status_code, 403)

    def test_stripe_mock_payment_reconciles_on_status_check(self):
        user_id, token = self._seed_user()
        listing_id = self._seed_listing(user_id)
        body = self._create_payment(token, listing_type="PREMIUM", provider="stripe", listing_id=listing_id)
        self.assertTrue(body["client_secret"])
        self.assertEqual(body["payment"]["amount_minor"], 2500)
        self.assertEqual(body["payment"]["currency"], "usd")

        status = self.client.get(f"/api/payments/status/{body['reference']}", headers=self._headers(token))
        self.assertEqual(status.status_code, 200)
        self.assertEqual((status.get_json(force=True) or {})["status"], "succeeded")
        with self.app.app_context():
            self.assertEqual(db.session.get(Listing, listing_id).listing_type, "premium")

        _other_id, other_token = self._seed_user()
        self.assertEqual(self.client.get(f"/api/payments/status/{body['reference']}", headers=self._headers(other_token)).status_code, 403)

    def test_mpesa_callback_success_is_idempotent(self):
        user_id, token = self._seed_user()
        listing_id = self._seed_listing(user_id)
        body = self._create_payment(token, listing_type="FEATURED", provider="mpesa", phone_number="0712345678", listing_id=listing_id)
        self.assertEqual(body["payment"]["currency"], "kes")
        self.assertEqual(body["payment"]["amount_minor"], 150000)
        checkout_id = body["checkout_request_id"]

        res = self._mpesa_callback(checkout_id, 0, receipt="QK12ABC")
        self.assertEqual(res.status_code, 200)
        self.assertEqual((res.get_json(force=True) or {})["ResultCode"], 0)
        again = self._mpesa_callback(checkout_id, 0, receipt="QK12ABC")
        self.assertEqual(again.status_code, 200)

        with self.app.app_context():
            payment = Payment.query.filter_by(payment_intent_id=checkout_id).first()
            self.assertEqual(payment.status, "succeeded")
            self.assertEqual(payment.receipt_number, "QK12ABC")
            self.assertEqual(PaymentTransition.query.filter_by(payment_id=payment.id).count(), 1)
            self.assertEqual(db.session.get(Listing, listing_id).listing_type, "featured")

        # A late failure for a settled payment is recorded but ignored.
        late = self._mpesa_callback(checkout_id, 1032, desc="Request cancelled by user")
        self.assertEqual(late.status_code, 200)
        with self.app.app_context():
            payment = Payment.query.filter_by(payment_intent_id=checkout_id).first()
            self.assertEqual(payment.status, "succeeded")
            event = WebhookEvent.query.filter_by(event_id=f"mpesa:{checkout_id}:1032").first()
            self.assertEqual(event.status, "ignored")

    def test_mpesa_callback_failure_and_unknown(self):
        _uid, token = self._seed_user()
        body = self._create_payment(token, listing_type="FEATURED_RENTAL", provider="mpesa", phone_number="254712345678")
        res = self._mpesa_callback(body["checkout_request_id"], 1, desc="Insufficient funds")
        self.assertEqual(res.status_code, 200)
        with self.app.app_context():
            payment = Payment.query.filter_by(payment_intent_id=body["checkout_request_id"]).first()
            self.assertEqual(payment.status, "failed")
            self.assertEqual(payment.failure_reason, "Insufficient funds")

        self.assertEqual(self._mpesa_callback("ws_CO_unknown", 0).status_code, 404)
        self.assertEqual(self.client.post("/api/payments/mpesa/callback", json={"Body": {}}).status_code, 400)

    def test_late_mpesa_success_leaves_failed_payment_untouched(self):
        _uid, token = self._seed_user()
        body = self._create_payment(token, listing_type="FEATURED", provider="mpesa", phone_number="0722000111")
        checkout_id = body["checkout_request_id"]
        self.assertEqual(self._mpesa_callback(checkout_id, 1, desc="Insufficient funds").status_code, 200)
        self.assertEqual(self._mpesa_callback(checkout_id, 0, receipt="RCPT999").status_code, 200)

        with self.app.app_context():
            payment = Payment.query.filter_by(payment_intent_id=checkout_id).first()
            self.assertEqual(payment.status, "failed")
            self.assertIsNone(payment.receipt_number)
            self.assertNotIn("mpesa_receipt_number", payment.meta_dict())
            self.assertIsNone(payment.paid_at)
            self.assertEqual(WebhookEvent.query.filter_by(event_id=f"mpesa:{checkout_id}:0").first().status, "ignored")
            self.assertEqual(PaymentTransition.query.filter_by(payment_id=payment.id).count(), 1)

    def test_stripe_webhook_signature_and_transitions(self):
        _uid, token = self._seed_user()
        body = self._create_payment(token, listing_type="FEATURED", provider="stripe")
        reference = body["payment_intent_id"]

        raw = json.dumps({"id": "evt_bad", "type": "payment_intent.succeeded"}).encode("utf-8")
        bad = self.client.post("/api/payments/stripe/webhook", data=raw, headers={"Stripe-Signature": "t=1,v1=deadbeef"})
        self.assertEqual(bad.status_code, 400)
        missing = self.client.post("/api/payments/stripe/webhook", data=raw)
        self.assertEqual(missing.status_code, 400)

        failed_event = {
            "id": f"evt_fail_{time.time_ns()}",
            "type": "payment_intent.payment_failed",
            "data": {"object": {"id": reference, "last_payment_error": {"message": "Card declined"}}},
        }
        res = self._post_stripe_event(failed_event)
        self.assertEqual(res.status_code, 200, res.get_data(as_text=True))
        dup = self._post_stripe_event(failed_event)
        self.assertTrue((dup.get_json(force=True) or {}).get("duplicate"))

        late_success = {"id": f"evt_ok_{time.time_ns()}", "type": "payment_intent.succeeded", "data": {"object": {"id": reference}}}
        self.assertEqual(self._post_stripe_event(late_success).status_code, 200)

        with self.app.app_context():
            payment = Payment.query.filter_by(payment_intent_id=reference).first()
            self.assertEqual(payment.status, "failed")
            self.assertEqual(payment.failure_reason, "Card declined")
            self.assertEqual(WebhookEvent.query.filter_by(event_id=late_success["id"]).first().status, "ignored")

        unrelated = {"id": f"evt_other_{time.time_ns()}", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}
        self.assertTrue((self._post_stripe_event(unrelated).get_json(force=True) or {}).get("ignored"))

    def test_manual_status_updates(self):
        _uid, token = self._seed_user()
        _admin_id, admin_token = self._seed_user("admin")
        first = self._create_payment(token, listing_type="FEATURED", provider="stripe")
        second = self._create_payment(token, listing_type="FEATURED", provider="stripe")

        res = self.client.patch(f"/api/payments/status/{first['reference']}", json={"status": "succeeded"}, headers=self._headers(token))
        self.assertEqual(res.status_code, 403)
        res = self.client.patch(f"/api/payments/status/{first['reference']}", json={"status": "cancelled"}, headers=self._headers(token))
        self.assertEqual(res.status_code, 200)
        self.assertEqual((res.get_json(force=True) or {})["payment"]["status"], "cancelled")
        reopen = self.client.patch(f"/api/payments/status/{first['reference']}", json={"status": "pending"}, headers=self._headers(token))
        self.assertEqual(reopen.status_code, 400)

        res = self.client.patch(f"/api/payments/status/{second['reference']}", json={"status": "succeeded"}, headers=self._headers(admin_token))
        self.assertEqual(res.status_code, 200)
        self.assertEqual((res.get_json(force=True) or {})["payment"]["status"], "succeeded")

    def test_history_and_stats(self):
        _uid, token = self._seed_user()
        for _ in range(3):
            self._create_payment(token, listing_type="FEATURED", provider="stripe")
        history = self.client.get("/api/payments/history?limit=2", headers=self._headers(token)).get_json(force=True) or {}
        self.assertEqual(len(history["items"]), 2)
        self.assertEqual(history["pagination"]["total"], 3)
        stats = self.client.get("/api/payments/stats", headers=self._headers(token)).get_json(force=True) or {}
        self.assertEqual(stats["total_payments"], 3)
        self.assertEqual(stats["by_status"].get("pending"), 3)


if __name__ == "__main__":
    unittest.main()
