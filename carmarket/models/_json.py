from __future__ import annotations

import json


def load_json(raw, default):
    text = (raw or "").strip() if isinstance(raw, str) else ""
    if not text:
        return default
    try:
        data = json.loads(text)
    except ValueError:
        return default
    if isinstance(default, list) and not isinstance(data, list):
        return default
    if isinstance(default, dict) and not isinstance(data, dict):
        return default
    return data


def dump_json(value) -> str:
    try:
        return json.dumps(value if value is not None else None, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return "null"


def iso(value):
    return value.isoformat() if value is not None else None
