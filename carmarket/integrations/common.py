from __future__ import annotations

import os


INTEGRATION_MODES = ("disabled", "sandbox", "live")


class IntegrationError(RuntimeError):
    """A third-party integration (payments, SMS) cannot serve the request."""

    code = "INTEGRATION_ERROR"

    def __init__(self, integration: str, detail: str = ""):
        self.integration = integration
        self.detail = detail
        super().__init__(f"{self.code}:{integration}" + (f" {detail}" if detail else ""))


class IntegrationDisabledError(IntegrationError):
    code = "INTEGRATION_DISABLED"


class IntegrationMisconfiguredError(IntegrationError):
    code = "INTEGRATION_MISCONFIGURED"


def integrations_mode() -> str:
    """INTEGRATIONS_MODE, falling back to sandbox for unknown values."""
    mode = (os.getenv("INTEGRATIONS_MODE") or "").strip().lower()
    return mode if mode in INTEGRATION_MODES else "sandbox"


def missing_env(*names: str) -> list[str]:
    return [name for name in names if not (os.getenv(name) or "").strip()]
