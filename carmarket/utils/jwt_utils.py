import os
import time
from typing import Any, Dict, Optional

import jwt

ACCESS_TOKEN_TTL_SECONDS = 60 * 60 * 24 * 7
TOKEN_ALGORITHM = "HS256"
TOKEN_ISSUER = "carmarket"


def _signing_key() -> str:
    return os.getenv("JWT_SECRET_KEY") or os.getenv("SECRET_KEY") or "dev-secret-change-me"


def create_access_token(user_id: int, ttl_seconds: int = ACCESS_TOKEN_TTL_SECONDS, *, role: str | None = None) -> str:
    issued = int(time.time())
    claims = {
        "sub": str(int(user_id)),
        "iss": TOKEN_ISSUER,
        "iat": issued,
        "exp": issued + int(ttl_seconds),
        "type": "access",
    }
    if role:
        claims["role"] = role
    return jwt.encode(claims, _signing_key(), algorithm=TOKEN_ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Verified claims for an access token, or None when expired, forged or not an access token."""
    if not token:
        return None
    try:
        claims = jwt.decode(token, _signing_key(), algorithms=[TOKEN_ALGORITHM], issuer=TOKEN_ISSUER)
    except jwt.PyJWTError:
        return None
    if claims.get("type") != "access":
        return None
    return claims


def get_bearer_token(auth_header: str) -> Optional[str]:
    scheme, _, token = (auth_header or "").strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None
