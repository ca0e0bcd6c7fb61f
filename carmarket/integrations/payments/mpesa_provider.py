from __future__ import annotations

import base64
import threading
import time
from datetime import datetime

import requests

from carmarket.integrations.payments.base import PaymentsProvider, PaymentInitializeResult, PaymentVerifyResult, provider_response
from carmarket.utils.phone import to_msisdn


MPESA_SANDBOX_BASE = "https://sandbox.safaricom.co.ke"
MPESA_PRODUCTION_BASE = "https://api.safaricom.co.ke"
# Daraja tokens live for an hour; refresh a little early.
TOKEN_CACHE_SECONDS = 55 * 60

RESULT_SUCCESS = "0"
RESULT_CANCELLED_BY_USER = "1032"

_TOKEN_LOCK = threading.Lock()
_TOKEN_CACHE: dict[str, tuple[str, float]] = {}


def mpesa_timestamp(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def mpesa_password(shortcode: str, passkey: str, timestamp: str) -> str:
    raw = f"{shortcode}{passkey}{timestamp}".encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


class MpesaPaymentsProvider(PaymentsProvider):
    name = "mpesa"
    currency = "kes"

    def __init__(self, *, consumer_key: str, consumer_secret: str, shortcode: str, passkey: str, callback_url: str, environment: str = "sandbox"):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.callback_url = callback_url
        self.base_url = MPESA_PRODUCTION_BASE if (environment or "").lower() == "production" else MPESA_SANDBOX_BASE

    def _access_token(self) -> str:
        cache_key = f"{self.base_url}:{self.consumer_key}"
        with _TOKEN_LOCK:
            cached = _TOKEN_CACHE.get(cache_key)
            if cached and cached[1] > time.time():
                return cached[0]
        auth = base64.b64encode(f"{self.consumer_key}:{self.consumer_secret}".encode("utf-8")).decode("ascii")
        status_code, j = provider_response(
            lambda: requests.get(
                f"{self.base_url}/oauth/v1/generate?grant_type=client_credentials",
                headers={"Authorization": f"Basic {auth}"},
                timeout=15,
            ),
            "MPESA_AUTH_FAILED",
        )
        token = str(j.get("access_token") or "").strip()
        if status_code < 200 or status_code >= 300 or not token:
            raise RuntimeError(f"MPESA_AUTH_FAILED:HTTP {status_code}")
        with _TOKEN_LOCK:
            _TOKEN_CACHE[cache_key] = (token, time.time() + TOKEN_CACHE_SECONDS)
        return token

    def _post(self, path: str, payload: dict, failure_code: str) -> tuple[int, dict]:
        token = self._access_token()
        return provider_response(
            lambda: requests.post(
                f"{self.base_url}{path}",
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                json=payload,
                timeout=25,
            ),
            failure_code,
        )

    def initialize(self, *, amount_minor: int, reference_hint: str, description: str, phone_number: str | None = None, metadata: dict | None = None) -> PaymentInitializeResult:
        if not phone_number:
            raise ValueError("Phone number is required for M-Pesa payments")
        msisdn = to_msisdn(phone_number)
        timestamp = mpesa_timestamp()
        amount_kes = max(1, int(round(int(amount_minor) / 100.0)))
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": mpesa_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": amount_kes,
            "PartyA": msisdn,
            "PartyB": self.shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": self.callback_url,
            "AccountReference": reference_hint[:12] if len(reference_hint) > 12 else reference_hint,
            "TransactionDesc": (description or "Payment")[:13],
        }
        status_code, j = self._post("/mpesa/stkpush/v1/processrequest", payload, "MPESA_INIT_FAILED")
        if status_code < 200 or status_code >= 300 or str(j.get("ResponseCode")) != RESULT_SUCCESS:
            msg = (j.get("ResponseDescription") or j.get("errorMessage") or f"HTTP {status_code}").strip()
            raise RuntimeError(f"MPESA_INIT_FAILED:{msg}")
        return PaymentInitializeResult(
            reference=(j.get("CheckoutRequestID") or "").strip(),
            provider=self.name,
            amount_minor=amount_kes * 100,
            currency=self.currency,
            merchant_request_id=(j.get("MerchantRequestID") or "").strip(),
            customer_message=(j.get("CustomerMessage") or "").strip(),
            raw=j,
        )

    def verify(self, reference: str) -> PaymentVerifyResult:
        timestamp = mpesa_timestamp()
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": mpesa_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": reference,
        }
        status_code, j = self._post("/mpesa/stkpushquery/v1/query", payload, "MPESA_VERIFY_FAILED")
        result_code = j.get("ResultCode")
        if result_code is None:
            # Daraja answers with an errorCode while the STK prompt is still open.
            if status_code >= 500 or j.get("errorCode"):
                return PaymentVerifyResult(status="pending", reference=reference, detail=str(j.get("errorMessage") or "processing"), raw=j)
            raise RuntimeError(f"MPESA_VERIFY_FAILED:HTTP {status_code}")
        code = str(result_code)
        detail = str(j.get("ResultDesc") or "")
        if code == RESULT_SUCCESS:
            status = "succeeded"
        elif code == RESULT_CANCELLED_BY_USER:
            status = "cancelled"
        else:
            status = "failed"
        return PaymentVerifyResult(status=status, reference=reference, detail=detail, raw=j)


def parse_stk_callback(payload: dict) -> dict:
    """Flatten Body.stkCallback into the fields the payment flow needs."""
    callback = ((payload or {}).get("Body") or {}).get("stkCallback") or {}
    items = ((callback.get("CallbackMetadata") or {}).get("Item")) or []
    meta = {}
    for item in items:
        if isinstance(item, dict) and item.get("Name"):
            meta[str(item["Name"])] = item.get("Value")
    result_code = callback.get("ResultCode")
    return {
        "checkout_request_id": (callback.get("CheckoutRequestID") or "").strip(),
        "merchant_request_id": (callback.get("MerchantRequestID") or "").strip(),
        "result_code": str(result_code) if result_code is not None else "",
        "result_desc": str(callback.get("ResultDesc") or ""),
        "amount": meta.get("Amount"),
        "receipt_number": meta.get("MpesaReceiptNumber"),
        "transaction_date": meta.get("TransactionDate"),
        "phone_number": meta.get("PhoneNumber"),
    }
