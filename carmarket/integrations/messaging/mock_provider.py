from __future__ import annotations

import os

from carmarket.integrations.messaging.base import MessagingProvider, MessageResult


class MockMessagingProvider(MessagingProvider):
    """Keeps every message in ``outbox``. A message containing "[fail]" or
    MOCK_NOTIFY_FORCE_FAIL=1 simulates a gateway outage."""

    name = "mock"

    def __init__(self):
        self.outbox: list[dict] = []

    def send_sms(self, *, to: str, message: str, reference: str = "") -> MessageResult:
        if "[fail]" in (message or "").lower() or (os.getenv("MOCK_NOTIFY_FORCE_FAIL") or "").strip() == "1":
            return MessageResult.failed("SMS_PROVIDER_DOWN", "mock forced failure")
        self.outbox.append({"to": to, "message": message, "reference": reference})
        return MessageResult.sent("mock_sent", to=to, reference=reference)
