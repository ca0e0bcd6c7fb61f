from __future__ import annotations

import os
import secrets

from carmarket.integrations.payments.base import PaymentsProvider, PaymentInitializeResult, PaymentVerifyResult


class MockPaymentsProvider(PaymentsProvider):
    """Deterministic provider for sandbox runs and tests.

    Verification succeeds unless MOCK_PAYMENTS_FORCE_STATUS overrides it.
    """

    name = "mock"

    def __init__(self, *, currency: str = "usd"):
        self.currency = currency

    def initialize(self, *, amount_minor: int, reference_hint: str, description: str, phone_number: str | None = None, metadata: dict | None = None) -> PaymentInitializeResult:
        reference = f"mock_{reference_hint}_{secrets.token_hex(6)}"
        return PaymentInitializeResult(
            reference=reference,
            provider=self.name,
            amount_minor=int(amount_minor),
            currency=self.currency,
            client_secret=f"{reference}_secret",
            customer_message="mock_payment_created",
            raw={"description": description, "phone_number": phone_number, "metadata": metadata or {}},
        )

    def verify(self, reference: str) -> PaymentVerifyResult:
        forced = (os.getenv("MOCK_PAYMENTS_FORCE_STATUS") or "").strip().lower()
        status = forced if forced in ("pending", "succeeded", "failed", "cancelled") else "succeeded"
        return PaymentVerifyResult(status=status, reference=reference, detail="mock", raw={"provider": self.name})
