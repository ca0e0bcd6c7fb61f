from __future__ import annotations

from flask import g, request

from carmarket.extensions import db
from carmarket.models import User
from carmarket.utils.jwt_utils import decode_access_token, get_bearer_token


def current_user() -> User | None:
    """Resolve the bearer access token to an active user, cached per request."""
    if getattr(g, "_current_user_loaded", False):
        return getattr(g, "_current_user", None)
    g._current_user_loaded = True
    g._current_user = None
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        return None
    payload = decode_access_token(token)
    if not payload:
        return None
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
    user = db.session.get(User, user_id)
    if user is None or not bool(user.is_active):
        return None
    g._current_user = user
    return user


def is_admin(user: User | None) -> bool:
    if not user:
        return False
    return (getattr(user, "role", None) or "").strip().lower() == "admin"


def owns(user: User | None, owner_id) -> bool:
    if not user or owner_id is None:
        return False
    return int(user.id) == int(owner_id)


def require_admin():
    """Returns (admin_user, None) or (None, error_response)."""
    from carmarket.utils.http import forbidden, unauthorized

    user = current_user()
    if not user:
        return None, unauthorized()
    if not is_admin(user):
        return None, forbidden()
    return user, None
