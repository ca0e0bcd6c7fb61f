from __future__ import annotations

from datetime import datetime

from carmarket.extensions import db
from carmarket.models import Commission
from carmarket.utils.money import bps_of_minor


COMMISSION_RATES_BPS = {
    "rental": 1500,
    "sale": 500,
    "subscription": 1000,
    "ad": 2000,
}


def commission_for(kind: str, amount_minor: int) -> tuple[int, int]:
    rate = COMMISSION_RATES_BPS.get((kind or "").strip().lower())
    if rate is None:
        raise ValueError(f"unknown commission type {kind}")
    return rate, bps_of_minor(amount_minor, rate)


def record_commission(*, user_id: int, kind: str, source_id: int, amount_minor: int) -> Commission:
    """Create the commission for a source once; repeated calls return the first row."""
    existing = Commission.query.filter_by(type=kind, source_id=int(source_id)).first()
    if existing:
        return existing
    rate, commission_minor = commission_for(kind, amount_minor)
    row = Commission(
        user_id=int(user_id),
        type=kind,
        source_id=int(source_id),
        amount_minor=int(amount_minor),
        rate_bps=rate,
        commission_minor=commission_minor,
        status="pending",
        created_at=datetime.utcnow(),
    )
    db.session.add(row)
    return row
