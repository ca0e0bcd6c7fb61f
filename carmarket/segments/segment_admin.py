from __future__ import annotations

import csv
import io
from datetime import datetime, timedelta

from flask import Blueprint, Response, jsonify, request
from sqlalchemy import func, or_

from carmarket.extensions import db
from carmarket.models import AdminActionLog, Commission, Listing, Payment, RentalBooking, RentalListing, User
from carmarket.models.user import ROLES
from carmarket.services.admin_log import log_admin_action
from carmarket.services.user_service import deactivate_account
from carmarket.utils.auth import require_admin
from carmarket.utils.http import error_response, json_body, not_found, paginate, pagination_args, timeframe_arg, to_bool, to_int


admin_bp = Blueprint("admin_bp", __name__, url_prefix="/api/admin")

USER_BULK_ACTIONS = ("verify", "unverify", "activate", "deactivate", "delete")
MODERATION_QUEUE_STATUSES = ("pending", "flagged")


def _month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _growth(current: int, previous: int) -> float:
    if previous <= 0:
        return 100.0 if current > 0 else 0.0
    return round((current - previous) * 100.0 / previous, 1)


def _count_between(model, start: datetime, end: datetime | None = None) -> int:
    q = model.query.filter(model.created_at >= start)
    if end is not None:
        q = q.filter(model.created_at < end)
    return int(q.count())


def _grouped(column) -> dict:
    q = db.session.query(column, func.count())
    return {str(k): int(v) for k, v in q.group_by(column).all() if k is not None}


def _revenue_by_currency(since: datetime | None = None) -> dict:
    q = db.session.query(Payment.currency, func.coalesce(func.sum(Payment.amount_minor), 0)).filter(Payment.status == "succeeded")
    if since is not None:
        q = q.filter(Payment.paid_at >= since)
    return {str(cur or "usd"): round(int(total or 0) / 100.0, 2) for cur, total in q.group_by(Payment.currency).all()}


def _stats_payload() -> dict:
    now = datetime.utcnow()
    this_month = _month_start(now)
    last_month = _month_start(this_month - timedelta(days=1))

    users_now = _count_between(User, this_month)
    users_prev = _count_between(User, last_month, this_month)
    listings_now = _count_between(Listing, this_month)
    listings_prev = _count_between(Listing, last_month, this_month)
    bookings_now = _count_between(RentalBooking, this_month)
    bookings_prev = _count_between(RentalBooking, last_month, this_month)

    commission_minor = db.session.query(func.coalesce(func.sum(Commission.commission_minor), 0)).scalar() or 0
    pending_commission_minor = (
        db.session.query(func.coalesce(func.sum(Commission.commission_minor), 0)).filter(Commission.status == "pending").scalar() or 0
    )
    return {
        "users": {
            "total": User.query.count(),
            "this_month": users_now,
            "growth": _growth(users_now, users_prev),
            "by_role": _grouped(User.role),
            "active": User.query.filter(User.is_active.is_(True)).count(),
            "verified": User.query.filter(User.is_verified.is_(True)).count(),
        },
        "listings": {
            "total": Listing.query.count(),
            "this_month": listings_now,
            "growth": _growth(listings_now, listings_prev),
            "by_status": _grouped(Listing.status),
            "by_type": _grouped(Listing.listing_type),
        },
        "rentals": {
            "total": RentalListing.query.count(),
            "active": RentalListing.query.filter(RentalListing.is_active.is_(True)).count(),
        },
        "bookings": {
            "total": RentalBooking.query.count(),
            "this_month": bookings_now,
            "growth": _growth(bookings_now, bookings_prev),
            "by_status": _grouped(RentalBooking.status),
        },
        "revenue": {
            "this_month": _revenue_by_currency(this_month),
            "all_time": _revenue_by_currency(),
            "commissions": round(int(commission_minor) / 100.0, 2),
            "pending_commissions": round(int(pending_commission_minor) / 100.0, 2),
        },
        "moderation": {"queue": Listing.query.filter(Listing.status.in_(MODERATION_QUEUE_STATUSES)).count()},
        "generated_at": now.isoformat(),
    }


@admin_bp.get("/stats")
def admin_stats():
    _, err = require_admin()
    if err is not None:
        return err
    return jsonify({"ok": True, **_stats_payload()}), 200


@admin_bp.get("/overview/stats")
def overview_stats():
    _, err = require_admin()
    if err is not None:
        return err
    return jsonify({"ok": True, "stats": _stats_payload()}), 200


@admin_bp.get("/overview/activity")
def overview_activity():
    _, err = require_admin()
    if err is not None:
        return err
    limit = max(1, min(50, to_int(request.args.get("limit"), 10) or 10))
    return jsonify(
        {
            "ok": True,
            "users": [u.to_dict() for u in User.query.order_by(User.created_at.desc()).limit(limit).all()],
            "listings": [r.to_dict() for r in Listing.query.order_by(Listing.created_at.desc()).limit(limit).all()],
            "payments": [p.to_dict() for p in Payment.query.order_by(Payment.created_at.desc()).limit(limit).all()],
            "bookings": [b.to_dict() for b in RentalBooking.query.order_by(RentalBooking.created_at.desc()).limit(limit).all()],
        }
    ), 200


def _daily(model, since: datetime, value=None) -> dict:
    day = func.date(model.created_at)
    agg = func.count(model.id) if value is None else func.coalesce(func.sum(value), 0)
    rows = db.session.query(day, agg).filter(model.created_at >= since).group_by(day).all()
    return {str(d): (int(v) if value is None else round(int(v or 0) / 100.0, 2)) for d, v in rows}


@admin_bp.get("/analytics")
def analytics():
    _, err = require_admin()
    if err is not None:
        return err
    timeframe, days = timeframe_arg("30d")
    now = datetime.utcnow()
    since = (now - timedelta(days=days - 1)).replace(hour=0, minute=0, second=0, microsecond=0)

    users = _daily(User, since)
    listings = _daily(Listing, since)
    revenue_rows = (
        db.session.query(func.date(Payment.paid_at), func.coalesce(func.sum(Payment.amount_minor), 0))
        .filter(Payment.status == "succeeded", Payment.paid_at >= since)
        .group_by(func.date(Payment.paid_at))
        .all()
    )
    revenue = {str(d): round(int(v or 0) / 100.0, 2) for d, v in revenue_rows}

    series = []
    for offset in range(days):
        key = (since + timedelta(days=offset)).date().isoformat()
        series.append({"date": key, "users": users.get(key, 0), "listings": listings.get(key, 0), "revenue": revenue.get(key, 0.0)})

    def _top(column):
        rows = (
            db.session.query(column, func.count(Listing.id))
            .filter(Listing.created_at >= since, column.isnot(None))
            .group_by(column)
            .order_by(func.count(Listing.id).desc())
            .limit(10)
            .all()
        )
        return [{"name": name, "count": int(count)} for name, count in rows if name]

    providers = (
        db.session.query(Payment.provider, func.count(Payment.id), func.coalesce(func.sum(Payment.amount_minor), 0))
        .filter(Payment.created_at >= since)
        .group_by(Payment.provider)
        .all()
    )
    return jsonify(
        {
            "ok": True,
            "timeframe": timeframe,
            "series": series,
            "top_makes": _top(Listing.make),
            "top_locations": _top(Listing.location),
            "payment_providers": [
                {"provider": p or "", "count": int(c), "amount": round(int(a or 0) / 100.0, 2)} for p, c, a in providers
            ],
        }
    ), 200


def _user_query():
    q = User.query
    search = (request.args.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(or_(User.name.ilike(like), User.email.ilike(like), User.phone.ilike(like)))
    role = (request.args.get("role") or "").strip().lower()
    if role:
        q = q.filter(User.role == role)
    verified = request.args.get("verified")
    if verified not in (None, ""):
        q = q.filter(User.is_verified.is_(to_bool(verified)))
    active = request.args.get("is_active")
    if active not in (None, ""):
        q = q.filter(User.is_active.is_(to_bool(active)))
    return q


@admin_bp.get("/users")
def list_users():
    _, err = require_admin()
    if err is not None:
        return err
    page, limit = pagination_args(default_limit=20)
    rows, meta = paginate(_user_query().order_by(User.created_at.desc(), User.id.desc()), page, limit)
    items = []
    for row in rows:
        data = row.to_dict()
        data["listing_count"] = Listing.query.filter_by(user_id=int(row.id)).count()
        items.append(data)
    return jsonify({"ok": True, "items": items, "pagination": meta}), 200


@admin_bp.get("/users/stats")
def user_stats():
    _, err = require_admin()
    if err is not None:
        return err
    return jsonify({"ok": True, **_stats_payload()["users"]}), 200


@admin_bp.get("/users/export")
def export_users():
    admin, err = require_admin()
    if err is not None:
        return err
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(["id", "name", "email", "phone", "role", "is_verified", "phone_verified", "is_active", "created_at", "last_login_at"])
    for row in _user_query().order_by(User.id.asc()).all():
        writer.writerow(
            [
                row.id,
                row.name or "",
                row.email,
                row.phone or "",
                row.role or "buyer",
                int(bool(row.is_verified)),
                int(bool(row.phone_verified)),
                int(bool(row.is_active)),
                row.created_at.isoformat() if row.created_at else "",
                row.last_login_at.isoformat() if row.last_login_at else "",
            ]
        )
    log_admin_action(admin, "users_export", "user", None, {"filters": dict(request.args)})
    db.session.commit()
    stamp = datetime.utcnow().strftime("%Y%m%d")
    return Response(
        output.getvalue(),
        mimetype="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="users-{stamp}.csv"',
            "Cache-Control": "no-store",
        },
    )


@admin_bp.post("/users/bulk")
def bulk_users():
    admin, err = require_admin()
    if err is not None:
        return err
    data = json_body()
    action = (data.get("action") or "").strip().lower()
    raw_ids = data.get("user_ids")
    if action not in USER_BULK_ACTIONS:
        return error_response(f"action must be one of {', '.join(USER_BULK_ACTIONS)}", 400)
    if not isinstance(raw_ids, list) or not raw_ids:
        return error_response("user_ids must be a non-empty list", 400)
    ids = {to_int(x) for x in raw_ids if to_int(x) is not None}
    ids.discard(int(admin.id))
    rows = User.query.filter(User.id.in_(ids)).all() if ids else []
    now = datetime.utcnow()
    for row in rows:
        if action == "verify":
            row.is_verified = True
        elif action == "unverify":
            row.is_verified = False
        elif action == "activate":
            row.is_active = True
        else:
            deactivate_account(row, now)
        row.updated_at = now
    log_admin_action(admin, f"users_bulk_{action}", "user", None, {"user_ids": sorted(int(r.id) for r in rows)})
    db.session.commit()
    return jsonify({"ok": True, "action": action, "updated": len(rows)}), 200


def _user_or_404(user_id: int):
    row = db.session.get(User, int(user_id))
    if not row:
        return None, not_found("User")
    return row, None


@admin_bp.get("/users/<int:user_id>")
def get_user(user_id: int):
    _, err = require_admin()
    if err is not None:
        return err
    row, err = _user_or_404(user_id)
    if err is not None:
        return err
    data = row.to_dict()
    data["listings"] = Listing.query.filter_by(user_id=int(row.id)).count()
    data["rentals"] = RentalListing.query.filter_by(user_id=int(row.id)).count()
    data["bookings"] = RentalBooking.query.filter_by(user_id=int(row.id)).count()
    data["payments"] = [p.to_dict() for p in Payment.query.filter_by(user_id=int(row.id)).order_by(Payment.created_at.desc()).limit(10).all()]
    return jsonify({"ok": True, "user": data}), 200


@admin_bp.patch("/users/<int:user_id>")
def update_user(user_id: int):
    admin, err = require_admin()
    if err is not None:
        return err
    row, err = _user_or_404(user_id)
    if err is not None:
        return err
    data = json_body()
    changes = {}
    if "role" in data:
        role = (data.get("role") or "").strip().lower()
        if role not in ROLES:
            return error_response(f"role must be one of {', '.join(ROLES)}", 400)
        if int(row.id) == int(admin.id) and role != "admin":
            return error_response("You cannot remove your own admin role", 400)
        changes["role"] = role
    for flag in ("is_active", "is_verified", "phone_verified"):
        if flag in data:
            if not isinstance(data.get(flag), bool):
                return error_response(f"{flag} must be a boolean", 400)
            changes[flag] = data.get(flag)
    if changes.get("is_active") is False and int(row.id) == int(admin.id):
        return error_response("You cannot deactivate your own account", 400)
    if not changes:
        return error_response("No updatable fields supplied", 400)

    for key, value in changes.items():
        setattr(row, key, value)
    if changes.get("is_active") is False:
        deactivate_account(row)
    row.updated_at = datetime.utcnow()
    log_admin_action(admin, "user_update", "user", row.id, changes)
    db.session.commit()
    return jsonify({"ok": True, "user": row.to_dict()}), 200


@admin_bp.delete("/users/<int:user_id>")
def delete_user(user_id: int):
    admin, err = require_admin()
    if err is not None:
        return err
    row, err = _user_or_404(user_id)
    if err is not None:
        return err
    if int(row.id) == int(admin.id):
        return error_response("You cannot delete your own account", 400)
    deactivate_account(row)
    log_admin_action(admin, "user_delete", "user", row.id, {"email": row.email})
    db.session.commit()
    return jsonify({"ok": True, "message": "User deactivated"}), 200


@admin_bp.post("/users/<int:user_id>/verify")
def verify_user(user_id: int):
    admin, err = require_admin()
    if err is not None:
        return err
    row, err = _user_or_404(user_id)
    if err is not None:
        return err
    value = json_body().get("is_verified", True)
    if not isinstance(value, bool):
        return error_response("is_verified must be a boolean", 400)
    row.is_verified = value
    row.updated_at = datetime.utcnow()
    log_admin_action(admin, "user_verify" if value else "user_unverify", "user", row.id)
    db.session.commit()
    return jsonify({"ok": True, "user": row.to_dict()}), 200


@admin_bp.get("/action-log")
def action_log():
    _, err = require_admin()
    if err is not None:
        return err
    q = AdminActionLog.query
    action = (request.args.get("action") or "").strip()
    if action:
        q = q.filter(AdminActionLog.action == action)
    admin_id = to_int(request.args.get("admin_id"))
    if admin_id is not None:
        q = q.filter(AdminActionLog.admin_id == admin_id)
    page, limit = pagination_args(default_limit=50)
    rows, meta = paginate(q.order_by(AdminActionLog.created_at.desc(), AdminActionLog.id.desc()), page, limit)
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows], "pagination": meta}), 200
