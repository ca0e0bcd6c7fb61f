from __future__ import annotations

import os

from carmarket.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError, integrations_mode, missing_env
from carmarket.integrations.messaging.africastalking_provider import AfricasTalkingMessagingProvider
from carmarket.integrations.messaging.base import MessagingProvider
from carmarket.integrations.messaging.mock_provider import MockMessagingProvider


SMS_ENV = ("SMS_API_KEY", "SMS_USERNAME")

_MOCK = MockMessagingProvider()


def mock_outbox() -> list[dict]:
    return _MOCK.outbox


def build_messaging_provider() -> MessagingProvider:
    mode = integrations_mode()
    if mode == "disabled":
        raise IntegrationDisabledError("sms")
    # Sandbox without credentials keeps smoke runs deterministic.
    if mode == "sandbox" and not (os.getenv("SMS_API_KEY") or "").strip():
        return _MOCK
    missing = missing_env(*SMS_ENV)
    if missing:
        raise IntegrationMisconfiguredError("sms", "missing " + ", ".join(missing))
    return AfricasTalkingMessagingProvider(
        api_key=os.environ["SMS_API_KEY"].strip(),
        username=os.environ["SMS_USERNAME"].strip(),
        sender_id=(os.getenv("SMS_SENDER_ID") or "").strip(),
    )


def messaging_health() -> dict:
    mode = integrations_mode()
    missing = missing_env(*SMS_ENV)
    if mode == "disabled":
        status = "disabled"
    elif missing:
        status = "mock" if mode == "sandbox" else "misconfigured"
    else:
        status = "configured"
    return {"status": status, "mode": mode, "missing": missing}
