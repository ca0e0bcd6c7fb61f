from __future__ import annotations

import os

from carmarket.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError, integrations_mode, missing_env
from carmarket.integrations.payments.base import PaymentsProvider
from carmarket.integrations.payments.mock_provider import MockPaymentsProvider
from carmarket.integrations.payments.mpesa_provider import MpesaPaymentsProvider
from carmarket.integrations.payments.stripe_provider import StripePaymentsProvider


SUPPORTED_PROVIDERS = ("stripe", "mpesa")
STRIPE_ENV = ("STRIPE_SECRET_KEY",)
STRIPE_WEBHOOK_ENV = ("STRIPE_WEBHOOK_SECRET",)
MPESA_ENV = ("MPESA_CONSUMER_KEY", "MPESA_CONSUMER_SECRET", "MPESA_SHORTCODE", "MPESA_PASSKEY")


def _provider_mode() -> str:
    """PAYMENTS_PROVIDER_MODE: mock settles locally, live talks to Stripe and Daraja."""
    mode = (os.getenv("PAYMENTS_PROVIDER_MODE") or "mock").strip().lower()
    return mode if mode in ("mock", "live") else "mock"


def _app_url() -> str:
    return (os.getenv("APP_URL") or "http://localhost:5000").strip().rstrip("/")


def build_payments_provider(provider: str) -> PaymentsProvider:
    name = (provider or "").strip().lower()
    if name not in SUPPORTED_PROVIDERS:
        raise IntegrationMisconfiguredError("payments", f"unknown provider {name!r}")
    if integrations_mode() == "disabled":
        raise IntegrationDisabledError("payments")
    if _provider_mode() == "mock":
        return MockPaymentsProvider(currency="kes" if name == "mpesa" else "usd")

    missing = missing_env(*(STRIPE_ENV if name == "stripe" else MPESA_ENV))
    if missing:
        raise IntegrationMisconfiguredError(name, "missing " + ", ".join(missing))
    if name == "stripe":
        return StripePaymentsProvider(secret_key=os.environ["STRIPE_SECRET_KEY"].strip())
    return MpesaPaymentsProvider(
        consumer_key=os.environ["MPESA_CONSUMER_KEY"].strip(),
        consumer_secret=os.environ["MPESA_CONSUMER_SECRET"].strip(),
        shortcode=os.environ["MPESA_SHORTCODE"].strip(),
        passkey=os.environ["MPESA_PASSKEY"].strip(),
        callback_url=f"{_app_url()}/api/payments/mpesa/callback",
        environment=(os.getenv("MPESA_ENVIRONMENT") or "sandbox").strip().lower(),
    )


def payment_health() -> dict:
    mode = integrations_mode()
    provider_mode = _provider_mode()
    missing = []
    if mode != "disabled" and provider_mode == "live":
        missing = missing_env(*STRIPE_ENV, *STRIPE_WEBHOOK_ENV, *MPESA_ENV)
    if mode == "disabled":
        status = "disabled"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "mode": mode, "provider_mode": provider_mode, "missing": missing}
