from __future__ import annotations

import calendar
from datetime import datetime

from carmarket.extensions import db
from carmarket.models import Listing, Subscription
from carmarket.services.pricing import FREE_LISTING_LIMIT, SUBSCRIPTION_PLANS, plan_listing_limit


def add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + int(months)
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def period_end(start: datetime, billing_cycle: str) -> datetime:
    return add_months(start, 12 if (billing_cycle or "").lower() == "yearly" else 1)


def current_subscription(user_id: int) -> Subscription | None:
    row = Subscription.query.filter_by(user_id=int(user_id)).first()
    if row is not None and row.is_current():
        return row
    return None


def activate_subscription(sub: Subscription, *, plan: str | None = None, billing_cycle: str | None = None, payment_id: int | None = None) -> Subscription:
    now = datetime.utcnow()
    if plan:
        sub.plan = plan
    if billing_cycle:
        sub.billing_cycle = billing_cycle
    sub.status = "active"
    sub.current_period_start = now
    sub.current_period_end = period_end(now, sub.billing_cycle)
    sub.cancel_at_period_end = False
    if payment_id is not None:
        sub.last_payment_id = int(payment_id)
    sub.updated_at = now
    db.session.add(sub)
    return sub


def listing_limit_for(user_id: int) -> int:
    sub = current_subscription(user_id)
    if sub is None:
        return FREE_LISTING_LIMIT
    return plan_listing_limit(sub.plan)


def active_listing_count(user_id: int) -> int:
    return Listing.query.filter_by(user_id=int(user_id), status="active").count()


def can_create_listing(user_id: int) -> tuple[bool, int, int]:
    """Returns (allowed, used, limit); a limit of -1 means unlimited."""
    limit = listing_limit_for(user_id)
    used = active_listing_count(user_id)
    if limit < 0:
        return True, used, limit
    return used < limit, used, limit


def usage_summary(user_id: int) -> dict:
    sub = current_subscription(user_id)
    limit = listing_limit_for(user_id)
    used = active_listing_count(user_id)
    plan = sub.plan if sub else None
    features = SUBSCRIPTION_PLANS[plan]["features"] if plan in SUBSCRIPTION_PLANS else {"listings": FREE_LISTING_LIMIT}
    return {
        "plan": plan or "free",
        "active_listings": used,
        "listing_limit": limit,
        "remaining": -1 if limit < 0 else max(0, limit - used),
        "features": features,
    }


def expire_subscriptions(now: datetime | None = None) -> int:
    """Close active subscriptions whose period has ended; the caller commits."""
    now = now or datetime.utcnow()
    rows = Subscription.query.filter(
        Subscription.status == "active", Subscription.current_period_end.isnot(None), Subscription.current_period_end <= now
    ).all()
    for row in rows:
        row.status = "cancelled" if row.cancel_at_period_end else "expired"
        row.updated_at = now
    return len(rows)
