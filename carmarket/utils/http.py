from __future__ import annotations

import math
from datetime import date, datetime

from flask import g, jsonify, request


def error_response(message: str, status: int = 400, **extra):
    payload = {"ok": False, "message": message, "status": int(status)}
    payload.update(extra)
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return jsonify(payload), int(status)


def unauthorized():
    return error_response("Unauthorized", 401)


def forbidden():
    return error_response("Forbidden", 403)


def not_found(what: str = "Resource"):
    return error_response(f"{what} not found", 404)


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def to_int(value, default=None):
    if value is None or value == "":
        return default
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def to_float(value, default=None):
    if value is None or value == "":
        return default
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def to_bool(value, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def parse_date(value) -> date | None:
    """Accepts YYYY-MM-DD or a full ISO timestamp."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        return None


def parse_datetime(value) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1]
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    return parsed.replace(tzinfo=None)


def pagination_args(default_limit: int = 12, max_limit: int = 100) -> tuple[int, int]:
    page = max(1, to_int(request.args.get("page"), 1) or 1)
    limit = to_int(request.args.get("limit"), default_limit) or default_limit
    limit = max(1, min(int(limit), max_limit))
    return page, limit


def paginate(query, page: int, limit: int):
    total = query.order_by(None).count()
    rows = query.offset((page - 1) * limit).limit(limit).all()
    meta = {
        "page": page,
        "limit": limit,
        "total": int(total),
        "pages": int(math.ceil(total / float(limit))) if limit else 0,
    }
    return rows, meta


def csv_arg(name: str) -> list[str]:
    raw = (request.args.get(name) or "").strip()
    return [part.strip() for part in raw.split(",") if part.strip()]


TIMEFRAME_DAYS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}


def timeframe_arg(default: str = "30d") -> tuple[str, int]:
    raw = (request.args.get("timeframe") or default).strip().lower()
    if raw not in TIMEFRAME_DAYS:
        raw = default
    return raw, TIMEFRAME_DAYS[raw]
