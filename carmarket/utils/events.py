from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from carmarket.extensions import db
from carmarket.models import PlatformEvent
from carmarket.models._json import dump_json
from carmarket.utils.observability import get_request_id


SEVERITIES = ("INFO", "WARN", "ERROR")


def log_event(
    event_type: str,
    *,
    actor_user_id: int | None = None,
    subject_type: str | None = None,
    subject_id: int | str | None = None,
    severity: str = "INFO",
    idempotency_key: str | None = None,
    metadata: dict | None = None,
) -> PlatformEvent | None:
    """Append a platform event inside a savepoint.

    The caller owns the outer commit. A failed insert is logged and returns
    ``None`` without disturbing the caller's pending rows. Events carrying an
    ``idempotency_key`` are written at most once.
    """
    key = (idempotency_key or "").strip()[:180] or None
    level = (severity or "INFO").strip().upper()
    try:
        if key:
            seen = PlatformEvent.query.filter_by(idempotency_key=key).first()
            if seen is not None:
                return seen
        event = PlatformEvent(
            event_type=(event_type or "unknown").strip()[:80],
            actor_user_id=int(actor_user_id) if actor_user_id is not None else None,
            subject_type=(subject_type or "").strip()[:80] or None,
            subject_id=str(subject_id)[:120] if subject_id is not None else None,
            request_id=get_request_id()[:80] or None,
            idempotency_key=key,
            severity=level if level in SEVERITIES else "INFO",
            metadata_json=dump_json(metadata or {}),
        )
        with db.session.begin_nested():
            db.session.add(event)
        return event
    except SQLAlchemyError:
        current_app.logger.warning("platform_event_write_failed type=%s", event_type, exc_info=True)
        return None
