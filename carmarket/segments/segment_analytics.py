from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, jsonify, request
from sqlalchemy import func

from carmarket.extensions import db
from carmarket.models import Commission, Payment, Subscription, User
from carmarket.services.pricing import SUBSCRIPTION_PLANS
from carmarket.utils.auth import require_admin
from carmarket.utils.http import timeframe_arg, to_int


analytics_bp = Blueprint("analytics_bp", __name__, url_prefix="/api/analytics")

TOP_USERS = 10


def _major(minor) -> float:
    return round(int(minor or 0) / 100.0, 2)


def _succeeded(start: datetime, end: datetime, user_id: int | None):
    q = Payment.query.filter(Payment.status == "succeeded", Payment.paid_at >= start, Payment.paid_at < end)
    if user_id is not None:
        q = q.filter(Payment.user_id == user_id)
    return q


def _growth(current: int, previous: int) -> float:
    if previous <= 0:
        return 100.0 if current > 0 else 0.0
    return round((current - previous) * 100.0 / previous, 1)


def _monthly_recurring_usd(now: datetime) -> float:
    total = 0.0
    for sub in Subscription.query.filter(Subscription.status == "active").all():
        if not sub.is_current(now):
            continue
        prices = (SUBSCRIPTION_PLANS.get(sub.plan or "") or {}).get("price") or {}
        if (sub.billing_cycle or "monthly") == "yearly":
            total += float(prices.get("yearly") or 0) / 12.0
        else:
            total += float(prices.get("monthly") or 0)
    return round(total, 2)


@analytics_bp.get("/revenue")
def revenue():
    """Platform revenue from succeeded payments, split by currency since M-Pesa settles in KES."""
    _, err = require_admin()
    if err is not None:
        return err
    timeframe, days = timeframe_arg("30d")
    user_id = to_int(request.args.get("user_id"))
    now = datetime.utcnow()
    end = now + timedelta(seconds=1)
    start = now - timedelta(days=days)
    previous_start = start - timedelta(days=days)

    payments = _succeeded(start, end, user_id).all()
    previous = (
        _succeeded(previous_start, start, user_id)
        .with_entities(Payment.currency, func.coalesce(func.sum(Payment.amount_minor), 0))
        .group_by(Payment.currency)
        .all()
    )
    previous_by_currency = {str(cur or "usd"): int(total or 0) for cur, total in previous}

    totals: dict[str, dict] = defaultdict(lambda: {"minor": 0, "count": 0})
    by_type: dict[tuple[str, str], dict] = defaultdict(lambda: {"minor": 0, "count": 0})
    monthly: dict[tuple[str, str], dict] = defaultdict(lambda: {"minor": 0, "count": 0})
    daily: dict[tuple[str, str], dict] = defaultdict(lambda: {"minor": 0, "count": 0})
    per_user: dict[tuple[int, str], dict] = defaultdict(lambda: {"minor": 0, "count": 0})
    for p in payments:
        currency = p.currency or "usd"
        amount = int(p.amount_minor or 0)
        buckets = (
            totals[currency],
            by_type[(p.listing_type or "UNKNOWN", currency)],
            monthly[(p.paid_at.strftime("%Y-%m"), currency)],
            daily[(p.paid_at.date().isoformat(), currency)],
            per_user[(int(p.user_id), currency)],
        )
        for bucket in buckets:
            bucket["minor"] += amount
            bucket["count"] += 1

    summary = {
        currency: {
            "revenue": _major(row["minor"]),
            "transactions": row["count"],
            "avg_order_value": _major(row["minor"] / row["count"]) if row["count"] else 0.0,
            "growth_rate": _growth(row["minor"], previous_by_currency.get(currency, 0)),
        }
        for currency, row in totals.items()
    }
    revenue_by_type = [
        {
            "type": kind,
            "currency": currency,
            "revenue": _major(row["minor"]),
            "transactions": row["count"],
            "percentage": round(row["minor"] * 100.0 / totals[currency]["minor"], 1) if totals[currency]["minor"] else 0.0,
        }
        for (kind, currency), row in sorted(by_type.items())
    ]

    ranked = sorted(per_user.items(), key=lambda item: -item[1]["minor"])[:TOP_USERS]
    names = {int(u.id): u for u in User.query.filter(User.id.in_([uid for (uid, _c), _r in ranked])).all()} if ranked else {}
    top_users = []
    for (uid, currency), row in ranked:
        user = names.get(uid)
        top_users.append(
            {
                "user_id": uid,
                "name": user.name if user else "",
                "email": user.email if user else "",
                "currency": currency,
                "revenue": _major(row["minor"]),
                "transactions": row["count"],
            }
        )

    commission_rows = (
        db.session.query(Commission.status, func.coalesce(func.sum(Commission.commission_minor), 0))
        .filter(Commission.created_at >= start)
        .group_by(Commission.status)
        .all()
    )
    subscription_rows = db.session.query(Subscription.status, func.count(Subscription.id)).group_by(Subscription.status).all()

    return jsonify(
        {
            "ok": True,
            "timeframe": timeframe,
            "summary": summary,
            "revenue_by_type": revenue_by_type,
            "trends": {
                "monthly": [
                    {"period": period, "currency": cur, "revenue": _major(row["minor"]), "transactions": row["count"]}
                    for (period, cur), row in sorted(monthly.items())
                ],
                "daily": [
                    {"date": day, "currency": cur, "revenue": _major(row["minor"]), "transactions": row["count"]}
                    for (day, cur), row in sorted(daily.items())
                ],
            },
            "top_users": top_users,
            "commissions": {str(status): _major(total) for status, total in commission_rows},
            "subscriptions": {
                "active": sum(1 for s in Subscription.query.filter(Subscription.status == "active").all() if s.is_current(now)),
                "mrr_usd": _monthly_recurring_usd(now),
                "breakdown": {str(status): int(count) for status, count in subscription_rows},
            },
        }
    ), 200
