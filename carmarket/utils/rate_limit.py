from __future__ import annotations

import os
import threading
import time
from functools import wraps

import redis
from flask import g, jsonify, request


# tier -> (limit, window_seconds)
RATE_TIERS = {
    "auth_minute": (10, 60),
    "auth_hour": (30, 3600),
    "browse": (120, 60),
    "write": (60, 60),
}

# Provider callbacks arrive in bursts from a handful of gateway IPs.
UNLIMITED_PATHS = ("/api/payments/stripe/webhook", "/api/payments/mpesa/callback")
AUTH_PREFIX = "/api/auth"
LONGEST_WINDOW_SECONDS = 3600
MEMORY_PRUNE_THRESHOLD = 10000

_lock = threading.Lock()
_memory_hits: dict[str, list[float]] = {}
_redis_state = {"client": None, "resolved": False}


def _flag(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def rate_limit_enabled(default: bool = True) -> bool:
    return _flag("RATE_LIMIT_ENABLED", default)


def _redis():
    if not rate_limit_enabled(True):
        return None
    with _lock:
        if _redis_state["resolved"]:
            return _redis_state["client"]
        _redis_state["resolved"] = True
    url = (os.getenv("RATE_LIMIT_REDIS_URL") or os.getenv("REDIS_URL") or "").strip()
    if not url:
        return None
    try:
        client = redis.Redis.from_url(url, decode_responses=True, socket_connect_timeout=0.75, socket_timeout=0.75)
        client.ping()
    except redis.RedisError:
        return None
    with _lock:
        _redis_state["client"] = client
    return client


def _hit_memory(key: str, limit: int, window: int) -> tuple[bool, int]:
    now = time.time()
    with _lock:
        if len(_memory_hits) > MEMORY_PRUNE_THRESHOLD:
            _prune_memory(now)
        hits = [ts for ts in _memory_hits.get(key, ()) if ts > now - window]
        if len(hits) >= limit:
            _memory_hits[key] = hits
            return False, int(max(1, window - (now - hits[0])))
        hits.append(now)
        _memory_hits[key] = hits
    return True, 0


def _prune_memory(now: float) -> None:
    # Caller holds _lock. Keys whose newest hit is older than every window are dead.
    for key in [k for k, hits in _memory_hits.items() if not hits or hits[-1] <= now - LONGEST_WINDOW_SECONDS]:
        del _memory_hits[key]


def check_limit(key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
    """Count one hit against ``key``. Returns (allowed, retry_after_seconds).

    Redis keeps a fixed-window counter shared by all workers; without redis
    each process keeps its own sliding window.
    """
    window = max(1, int(window_seconds))
    limit = max(1, int(limit))
    client = _redis()
    if client is not None:
        now = int(time.time())
        bucket_key = f"carmarket:rl:{key}:{now // window}"
        try:
            hits = int(client.incr(bucket_key))
            if hits == 1:
                client.expire(bucket_key, window + 1)
        except redis.RedisError:
            return _hit_memory(key, limit, window)
        if hits <= limit:
            return True, 0
        return False, max(1, window - now % window)
    return _hit_memory(key, limit, window)


def reset_memory_windows() -> None:
    with _lock:
        _memory_hits.clear()


def client_ip(req=None) -> str:
    req = req or request
    if _flag("TRUST_PROXY_HEADERS", False):
        forwarded = (req.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
        if forwarded:
            return forwarded
        real_ip = (req.headers.get("X-Real-IP") or "").strip()
        if real_ip:
            return real_ip
    return (req.remote_addr or "").strip() or "unknown"


def build_rate_limit_subject(*, scope: str = "ip", user_id: int | None = None, request_obj=None) -> str:
    if (scope or "").strip().lower() == "user" and user_id is not None:
        return f"u:{int(user_id)}"
    return f"ip:{client_ip(request_obj)}"


def limited_response(retry_after: int, message: str = "Too many requests. Please retry later."):
    retry_after = int(max(1, retry_after or 1))
    payload = {
        "ok": False,
        "message": message,
        "error": {"code": "RATE_LIMITED", "retry_after_seconds": retry_after},
    }
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    resp = jsonify(payload)
    resp.status_code = 429
    resp.headers["Retry-After"] = str(retry_after)
    return resp


def guard_request():
    """Apply the marketplace-wide tiers to the current /api request.

    Auth endpoints get a tight per-IP minute and hour budget. Everything else
    is counted per user when a token was presented, per IP otherwise, with a
    larger allowance for reads than for writes.
    """
    method = (request.method or "GET").upper()
    path = request.path or ""
    if method == "OPTIONS" or not path.startswith("/api/") or path in UNLIMITED_PATHS:
        return None

    if path.startswith(AUTH_PREFIX):
        subject = build_rate_limit_subject()
        for tier in ("auth_minute", "auth_hour"):
            limit, window = RATE_TIERS[tier]
            ok, retry_after = check_limit(f"{tier}:{subject}", limit=limit, window_seconds=window)
            if not ok:
                return limited_response(retry_after)
        return None

    user_id = getattr(g, "auth_user_id", None)
    subject = build_rate_limit_subject(scope="user" if user_id is not None else "ip", user_id=user_id)
    tier = "browse" if method == "GET" else "write"
    limit, window = RATE_TIERS[tier]
    ok, retry_after = check_limit(f"{tier}:{subject}", limit=limit, window_seconds=window)
    if not ok:
        return limited_response(retry_after)
    return None


def rate_limit(key: str, per_seconds: int, limit: int, *, scope: str = "ip", message: str = "Too many requests. Please retry later."):
    """Per-route limit on top of the global tiers, e.g. contact-seller clicks."""

    def decorator(fn):
        @wraps(fn)
        def wrapped(*args, **kwargs):
            subject = build_rate_limit_subject(scope=scope, user_id=getattr(g, "auth_user_id", None))
            ok, retry_after = check_limit(f"{key}:{subject}", limit=limit, window_seconds=per_seconds)
            if not ok:
                return limited_response(retry_after, message)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
