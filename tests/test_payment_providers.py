from __future__ import annotations

import base64
import json
import time
import unittest
from datetime import datetime
from unittest import mock

import requests

from carmarket.integrations.payments import mpesa_provider
from carmarket.integrations.payments.mpesa_provider import MpesaPaymentsProvider, mpesa_password, mpesa_timestamp
from carmarket.integrations.payments.stripe_provider import StripePaymentsProvider, sign_stripe_payload, verify_stripe_signature


def _response(status_code: int, body: dict) -> mock.Mock:
    return mock.Mock(status_code=status_code, content=json.dumps(body).encode("utf-8"), text=json.dumps(body), **{"json.return_value": body})


def _token_response() -> mock.Mock:
    return _response(200, {"access_token": "daraja-token", "expires_in": "3599"})


class MpesaProviderTestCase(unittest.TestCase):
    def setUp(self):
        mpesa_provider._TOKEN_CACHE.clear()
        self.provider = MpesaPaymentsProvider(
            consumer_key="ck",
            consumer_secret="cs",
            shortcode="174379",
            passkey="passkey-abc",
            callback_url="https://carmarket.test/api/payments/mpesa/callback",
        )

    def tearDown(self):
        mpesa_provider._TOKEN_CACHE.clear()

    def test_password_and_timestamp(self):
        ts = mpesa_timestamp(datetime(2026, 3, 9, 7, 5, 1))
        self.assertEqual(ts, "20260309070501")
        decoded = base64.b64decode(mpesa_password("174379", "passkey-abc", ts)).decode("utf-8")
        self.assertEqual(decoded, "174379passkey-abc20260309070501")

    def test_stk_query_result_codes(self):
        cases = (("0", "succeeded"), ("1032", "cancelled"), ("1", "failed"), ("2001", "failed"))
        for code, expected in cases:
            with self.subTest(code=code):
                query = _response(200, {"ResultCode": code, "ResultDesc": f"desc {code}"})
                with mock.patch("requests.get", return_value=_token_response()), mock.patch("requests.post", return_value=query):
                    result = self.provider.verify("ws_CO_123")
                self.assertEqual(result.status, expected)
                self.assertEqual(result.detail, f"desc {code}")

    def test_open_prompt_reports_pending(self):
        still_open = _response(500, {"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"})
        with mock.patch("requests.get", return_value=_token_response()), mock.patch("requests.post", return_value=still_open):
            result = self.provider.verify("ws_CO_456")
        self.assertEqual(result.status, "pending")

    def test_access_token_is_cached(self):
        query = _response(200, {"ResultCode": "0"})
        with mock.patch("requests.get", return_value=_token_response()) as get, mock.patch("requests.post", return_value=query) as post:
            self.provider.verify("ws_CO_1")
            self.provider.verify("ws_CO_2")
            self.assertEqual(get.call_count, 1)
            self.assertEqual(post.call_count, 2)
            self.assertEqual(post.call_args.kwargs["headers"]["Authorization"], "Bearer daraja-token")

            key = next(iter(mpesa_provider._TOKEN_CACHE))
            token, expires_at = mpesa_provider._TOKEN_CACHE[key]
            self.assertAlmostEqual(expires_at - time.time(), mpesa_provider.TOKEN_CACHE_SECONDS, delta=5)
            mpesa_provider._TOKEN_CACHE[key] = (token, time.time() - 1)
            self.provider.verify("ws_CO_3")
            self.assertEqual(get.call_count, 2)

    def test_stk_push_rounds_to_whole_shillings(self):
        accepted = _response(200, {"ResponseCode": "0", "CheckoutRequestID": "ws_CO_789", "MerchantRequestID": "m-1", "CustomerMessage": "ok"})
        with mock.patch("requests.get", return_value=_token_response()), mock.patch("requests.post", return_value=accepted) as post:
            result = self.provider.initialize(amount_minor=149_950, reference_hint="PAY-1", description="Featured listing", phone_number="0712345678")
        payload = post.call_args.kwargs["json"]
        self.assertEqual(payload["Amount"], 1500)
        self.assertEqual(payload["PhoneNumber"], "254712345678")
        self.assertEqual(result.reference, "ws_CO_789")
        self.assertEqual(result.amount_minor, 150_000)

    def test_transport_errors_become_provider_errors(self):
        with mock.patch("requests.get", side_effect=requests.ConnectionError("dns")):
            with self.assertRaises(RuntimeError) as ctx:
                self.provider.verify("ws_CO_1")
        self.assertTrue(str(ctx.exception).startswith("MPESA_AUTH_FAILED:"))

        with mock.patch("requests.get", return_value=_token_response()), mock.patch("requests.post", side_effect=requests.Timeout("slow")):
            with self.assertRaises(RuntimeError) as ctx:
                self.provider.initialize(amount_minor=10_000, reference_hint="PAY-2", description="Boost", phone_number="0712345678")
        self.assertTrue(str(ctx.exception).startswith("MPESA_INIT_FAILED:"))


class StripeProviderTestCase(unittest.TestCase):
    def setUp(self):
        self.provider = StripePaymentsProvider(secret_key="sk_test_carmarket")

    def test_intent_status_mapping(self):
        cases = (
            ({"status": "succeeded"}, "succeeded"),
            ({"status": "canceled"}, "cancelled"),
            ({"status": "processing"}, "pending"),
            ({"status": "requires_action"}, "pending"),
            ({"status": "requires_payment_method"}, "pending"),
            ({"status": "requires_payment_method", "last_payment_error": {"message": "Your card was declined."}}, "failed"),
        )
        for body, expected in cases:
            with self.subTest(body=body):
                with mock.patch("requests.get", return_value=_response(200, body)):
                    self.assertEqual(self.provider.verify("pi_123").status, expected)

    def test_verify_http_error_and_transport_error(self):
        with mock.patch("requests.get", return_value=_response(404, {"error": {"message": "No such payment_intent"}})):
            with self.assertRaises(RuntimeError) as ctx:
                self.provider.verify("pi_missing")
        self.assertEqual(str(ctx.exception), "STRIPE_VERIFY_FAILED:No such payment_intent")

        with mock.patch("requests.get", side_effect=requests.ConnectionError("down")):
            with self.assertRaises(RuntimeError) as ctx:
                self.provider.verify("pi_123")
        self.assertTrue(str(ctx.exception).startswith("STRIPE_VERIFY_FAILED:"))

    def test_initialize_sends_idempotency_key(self):
        created = _response(200, {"id": "pi_new", "amount": 2500, "currency": "usd", "client_secret": "pi_new_secret"})
        with mock.patch("requests.post", return_value=created) as post:
            result = self.provider.initialize(amount_minor=2500, reference_hint="PAY-9", description="Featured", metadata={"payment_id": 9})
        self.assertEqual(post.call_args.kwargs["headers"]["Idempotency-Key"], "PAY-9")
        self.assertEqual(post.call_args.kwargs["data"]["metadata[payment_id]"], "9")
        self.assertEqual(result.reference, "pi_new")
        self.assertEqual(result.client_secret, "pi_new_secret")

    def test_signature_tolerance(self):
        payload = b'{"id":"evt_1"}'
        now = 1_760_000_000
        header = sign_stripe_payload(payload, "whsec_test", timestamp=now)
        self.assertTrue(verify_stripe_signature(payload, header, "whsec_test", now=now + 299))
        self.assertFalse(verify_stripe_signature(payload, header, "whsec_test", now=now + 301))
        self.assertFalse(verify_stripe_signature(payload, header, "whsec_other", now=now))
        self.assertFalse(verify_stripe_signature(payload + b" ", header, "whsec_test", now=now))
        self.assertFalse(verify_stripe_signature(payload, "v1=deadbeef", "whsec_test", now=now))


if __name__ == "__main__":
    unittest.main()
