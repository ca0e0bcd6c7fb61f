from __future__ import annotations

from dataclasses import dataclass

import requests


@dataclass
class PaymentInitializeResult:
    reference: str
    provider: str
    amount_minor: int
    currency: str
    client_secret: str = ""
    merchant_request_id: str = ""
    customer_message: str = ""
    raw: dict | None = None


@dataclass
class PaymentVerifyResult:
    # pending | succeeded | failed | cancelled
    status: str
    reference: str
    detail: str = ""
    raw: dict | None = None


class PaymentsProvider:
    name = "unknown"
    # Currency the provider charges in.
    currency = "usd"

    def initialize(self, *, amount_minor: int, reference_hint: str, description: str, phone_number: str | None = None, metadata: dict | None = None) -> PaymentInitializeResult:
        raise NotImplementedError

    def verify(self, reference: str) -> PaymentVerifyResult:
        raise NotImplementedError


def provider_response(send, failure_code: str) -> tuple[int, dict]:
    """Run one HTTP call to a gateway. Transport errors become RuntimeError("<failure_code>:<detail>")."""
    try:
        r = send()
    except requests.RequestException as exc:
        raise RuntimeError(f"{failure_code}:{exc}") from exc
    try:
        body = r.json() if r.content else {}
    except ValueError:
        body = {"body": (r.text or "")[:200]}
    return r.status_code, body if isinstance(body, dict) else {"payload": body}
