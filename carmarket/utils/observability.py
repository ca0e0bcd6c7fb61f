from __future__ import annotations

import hashlib
import json
import os
import time
import uuid
from datetime import datetime

import sentry_sdk
from flask import g, has_app_context, request
from sentry_sdk.integrations.flask import FlaskIntegration


REQUEST_ID_HEADER = "X-Request-Id"
SCRUBBED_HEADERS = ("authorization", "cookie", "set-cookie", "x-api-key", "stripe-signature")
SERVICE_SALT = "carmarket"


def get_request_id() -> str:
    # Celery beat and CLI commands run without a request.
    if not has_app_context():
        return ""
    return getattr(g, "request_id", "") or ""


def _client_fingerprint(salt: str) -> str:
    ip = request.headers.get("X-Forwarded-For", request.remote_addr or "")
    return hashlib.sha256(f"{salt}:{ip}".encode("utf-8")).hexdigest()[:16]


def _scrub_event(event, hint):
    headers = (event.get("request") or {}).get("headers") or {}
    for name in list(headers):
        if name.lower() in SCRUBBED_HEADERS:
            headers[name] = "[REDACTED]"
    return event


def init_sentry(app) -> None:
    """Report unhandled errors to Sentry when SENTRY_DSN is configured."""
    dsn = (os.getenv("SENTRY_DSN") or "").strip()
    if not dsn:
        app.logger.info("sentry_disabled_no_dsn")
        return
    try:
        traces_rate = float((os.getenv("SENTRY_TRACES_SAMPLE_RATE") or "0").strip())
    except ValueError:
        traces_rate = 0.0
    sentry_sdk.init(
        dsn=dsn,
        environment=os.getenv("SENTRY_ENVIRONMENT") or os.getenv("CARMARKET_ENV") or "dev",
        release=os.getenv("GIT_SHA") or "unknown",
        integrations=[FlaskIntegration()],
        send_default_pii=False,
        traces_sample_rate=min(max(traces_rate, 0.0), 1.0),
        before_send=_scrub_event,
    )
    app.logger.info("sentry_enabled env=%s", os.getenv("CARMARKET_ENV") or "dev")


def install_request_observers(app) -> None:
    """Tag every request with an id and write one JSON access line per response."""

    @app.before_request
    def _start_request_clock():
        g.request_id = (request.headers.get(REQUEST_ID_HEADER) or "").strip() or uuid.uuid4().hex
        g.request_started_at = time.perf_counter()

    @app.after_request
    def _write_access_line(response):
        rid = getattr(g, "request_id", "") or uuid.uuid4().hex
        response.headers[REQUEST_ID_HEADER] = rid
        started = getattr(g, "request_started_at", None)
        app.logger.info(
            json.dumps(
                {
                    "ts": datetime.utcnow().isoformat(),
                    "request_id": rid,
                    "method": request.method,
                    "path": request.path,
                    "status": response.status_code,
                    "latency_ms": round((time.perf_counter() - started) * 1000.0, 2) if started is not None else None,
                    "user_id": getattr(g, "auth_user_id", None),
                    "role": getattr(g, "auth_role", None),
                    "ip_hash": _client_fingerprint(app.config.get("SECRET_KEY") or SERVICE_SALT),
                    "user_agent": (request.user_agent.string or "")[:180],
                }
            )
        )
        return response

