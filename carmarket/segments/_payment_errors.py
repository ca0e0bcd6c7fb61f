from __future__ import annotations

from flask import current_app

from carmarket.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from carmarket.utils.http import error_response


def provider_error_response(exc: Exception, *, action: str):
    """Map provider adapter failures to JSON responses."""
    if isinstance(exc, IntegrationDisabledError):
        return error_response("Payments are currently disabled", 503, error="INTEGRATION_DISABLED")
    if isinstance(exc, IntegrationMisconfiguredError):
        current_app.logger.error("%s_misconfigured detail=%s", action, str(exc))
        return error_response("Payment provider is not configured", 503, error="INTEGRATION_MISCONFIGURED")
    if isinstance(exc, ValueError):
        return error_response(str(exc), 400)
    current_app.logger.warning("%s_failed detail=%s", action, str(exc))
    detail = str(exc)
    code = detail.split(":", 1)[0] if ":" in detail else "PAYMENT_PROVIDER_ERROR"
    return error_response("Payment provider request failed", 502, error=code, detail=detail.split(":", 1)[-1][:200])
