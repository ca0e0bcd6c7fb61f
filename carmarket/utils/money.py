from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP


def _clamp_minor(value) -> int:
    try:
        parsed = int(value or 0)
    except (TypeError, ValueError):
        parsed = 0
    return parsed if parsed > 0 else 0


def money_major_to_minor(amount) -> int:
    try:
        parsed = Decimal(str(amount or 0))
    except ArithmeticError:
        parsed = Decimal("0")
    minor = (parsed * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return _clamp_minor(int(minor))


def money_minor_to_major(minor) -> float:
    parsed = Decimal(_clamp_minor(minor))
    return float((parsed / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def bps_of_minor(amount_minor: int, bps: int) -> int:
    """Basis points of an amount in minor units, rounded half up."""
    amt = Decimal(_clamp_minor(amount_minor))
    rate = Decimal(int(max(0, bps)))
    raw = (amt * rate) / Decimal("10000")
    return _clamp_minor(int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def format_usd_cents(cents: int) -> str:
    return f"${money_minor_to_major(cents):,.2f}"


def format_kes(amount: int | float) -> str:
    return f"KES {int(round(float(amount or 0))):,}"
