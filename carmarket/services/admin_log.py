from __future__ import annotations

from carmarket.extensions import db
from carmarket.models import AdminActionLog
from carmarket.models._json import dump_json


def log_admin_action(admin, action: str, target_type: str, target_id=None, details: dict | None = None) -> AdminActionLog:
    row = AdminActionLog(
        admin_id=int(admin.id),
        action=(action or "")[:64],
        target_type=(target_type or "")[:40],
        target_id=str(target_id)[:64] if target_id is not None else None,
        details_json=dump_json(details or {}),
    )
    db.session.add(row)
    return row
