from __future__ import annotations

import re

_KENYAN_PATTERNS = (
    re.compile(r"^254[17]\d{8}$"),
    re.compile(r"^0[17]\d{8}$"),
)


def digits_only(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")


def is_valid_kenyan_phone(phone: str) -> bool:
    clean = digits_only(phone)
    return any(p.match(clean) for p in _KENYAN_PATTERNS)


def to_msisdn(phone: str) -> str:
    """Normalize to the 2547XXXXXXXX form used by M-Pesa and SMS gateways."""
    clean = digits_only(phone)
    if clean.startswith("254"):
        return clean
    if clean.startswith("0"):
        return "254" + clean[1:]
    if len(clean) == 9:
        return "254" + clean
    return clean


def to_international(phone: str) -> str:
    clean = digits_only(phone)
    if clean.startswith("254") or clean.startswith("0") or len(clean) == 9:
        return "+" + to_msisdn(clean)
    return phone
