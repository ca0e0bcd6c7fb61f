from __future__ import annotations

import hashlib
import hmac
import time

import requests

from carmarket.integrations.payments.base import PaymentsProvider, PaymentInitializeResult, PaymentVerifyResult, provider_response


STRIPE_API_BASE = "https://api.stripe.com/v1"
SIGNATURE_TOLERANCE_SECONDS = 300

_STATUS_MAP = {
    "succeeded": "succeeded",
    "canceled": "cancelled",
    "requires_payment_method": "pending",
    "requires_confirmation": "pending",
    "requires_action": "pending",
    "processing": "pending",
    "requires_capture": "pending",
}


def _error_message(body: dict, status_code: int) -> str:
    error = body.get("error") if isinstance(body.get("error"), dict) else {}
    return (error.get("message") or f"HTTP {status_code}").strip()


class StripePaymentsProvider(PaymentsProvider):
    name = "stripe"
    currency = "usd"

    def __init__(self, secret_key: str):
        self.secret_key = secret_key

    def _headers(self, idempotency_key: str = "") -> dict:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def initialize(self, *, amount_minor: int, reference_hint: str, description: str, phone_number: str | None = None, metadata: dict | None = None) -> PaymentInitializeResult:
        form = {
            "amount": int(amount_minor),
            "currency": self.currency,
            "description": description[:200],
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in (metadata or {}).items():
            form[f"metadata[{key}]"] = "" if value is None else str(value)
        status_code, j = provider_response(
            lambda: requests.post(
                f"{STRIPE_API_BASE}/payment_intents",
                headers=self._headers(idempotency_key=reference_hint),
                data=form,
                timeout=25,
            ),
            "STRIPE_INIT_FAILED",
        )
        if status_code < 200 or status_code >= 300:
            raise RuntimeError(f"STRIPE_INIT_FAILED:{_error_message(j, status_code)}")
        return PaymentInitializeResult(
            reference=(j.get("id") or "").strip(),
            provider=self.name,
            amount_minor=int(j.get("amount") or amount_minor),
            currency=(j.get("currency") or self.currency).lower(),
            client_secret=(j.get("client_secret") or "").strip(),
            raw=j,
        )

    def verify(self, reference: str) -> PaymentVerifyResult:
        ref = (reference or "").strip()
        status_code, j = provider_response(
            lambda: requests.get(f"{STRIPE_API_BASE}/payment_intents/{ref}", headers=self._headers(), timeout=25),
            "STRIPE_VERIFY_FAILED",
        )
        if status_code < 200 or status_code >= 300:
            raise RuntimeError(f"STRIPE_VERIFY_FAILED:{_error_message(j, status_code)}")
        stripe_status = (j.get("status") or "").strip().lower()
        status = _STATUS_MAP.get(stripe_status, "pending")
        detail = stripe_status
        last_error = j.get("last_payment_error") or {}
        if stripe_status == "requires_payment_method" and last_error:
            status = "failed"
            detail = (last_error.get("message") or "payment_failed")[:200]
        return PaymentVerifyResult(status=status, reference=ref, detail=detail, raw=j)


def verify_stripe_signature(payload: bytes, header: str, secret: str, *, tolerance: int = SIGNATURE_TOLERANCE_SECONDS, now: int | None = None) -> bool:
    """Check a Stripe-Signature header (``t=<ts>,v1=<hex>``) against the raw body."""
    if not header or not secret:
        return False
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if not timestamp or not signatures:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False
    current = int(now if now is not None else time.time())
    if tolerance and abs(current - ts) > tolerance:
        return False
    signed = f"{timestamp}.".encode("utf-8") + (payload or b"")
    expected = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(expected, sig) for sig in signatures)


def sign_stripe_payload(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.".encode("utf-8") + (payload or b"")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"
