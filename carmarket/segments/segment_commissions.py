from __future__ import annotations

from datetime import datetime, timedelta

from flask import Blueprint, jsonify, request
from sqlalchemy import func

from carmarket.extensions import db
from carmarket.models import Commission
from carmarket.models.commission import COMMISSION_STATUSES, COMMISSION_TYPES
from carmarket.services.admin_log import log_admin_action
from carmarket.utils.auth import current_user, is_admin, require_admin
from carmarket.utils.http import error_response, forbidden, json_body, not_found, paginate, pagination_args, timeframe_arg, to_int, unauthorized


commissions_bp = Blueprint("commissions_bp", __name__, url_prefix="/api/commissions")


@commissions_bp.get("")
def list_commissions():
    user = current_user()
    if not user:
        return unauthorized()
    target_id = int(user.id)
    requested = to_int(request.args.get("user_id"))
    if requested is not None and requested != target_id:
        if not is_admin(user):
            return forbidden()
        target_id = requested

    timeframe, days = timeframe_arg("30d")
    since = datetime.utcnow() - timedelta(days=days)
    q = Commission.query.filter(Commission.user_id == target_id, Commission.created_at >= since)
    kind = (request.args.get("type") or "").strip().lower()
    if kind:
        if kind not in COMMISSION_TYPES:
            return error_response("Invalid commission type", 400)
        q = q.filter(Commission.type == kind)
    status = (request.args.get("status") or "").strip().lower()
    if status:
        if status not in COMMISSION_STATUSES:
            return error_response("Invalid commission status", 400)
        q = q.filter(Commission.status == status)

    page, limit = pagination_args(default_limit=20)
    rows, meta = paginate(q.order_by(Commission.created_at.desc(), Commission.id.desc()), page, limit)

    grouped = (
        db.session.query(Commission.status, func.count(Commission.id), func.coalesce(func.sum(Commission.commission_minor), 0))
        .filter(Commission.user_id == target_id, Commission.created_at >= since)
        .group_by(Commission.status)
        .all()
    )
    summary = {s: {"count": 0, "amount": 0.0} for s in COMMISSION_STATUSES}
    total_minor = 0
    for row_status, count, minor in grouped:
        summary[row_status] = {"count": int(count), "amount": round(int(minor or 0) / 100.0, 2)}
        total_minor += int(minor or 0)
    summary["total"] = round(total_minor / 100.0, 2)

    return jsonify(
        {"ok": True, "items": [r.to_dict() for r in rows], "pagination": meta, "summary": summary, "timeframe": timeframe}
    ), 200


@commissions_bp.patch("/<int:commission_id>")
def update_commission(commission_id: int):
    admin, err = require_admin()
    if err is not None:
        return err
    row = db.session.get(Commission, int(commission_id))
    if not row:
        return not_found("Commission")
    status = (json_body().get("status") or "").strip().lower()
    if status not in COMMISSION_STATUSES:
        return error_response(f"status must be one of {', '.join(COMMISSION_STATUSES)}", 400)
    previous = row.status
    row.status = status
    row.paid_at = datetime.utcnow() if status == "paid" else None
    log_admin_action(admin, "commission_status", "commission", row.id, {"from": previous, "to": status})
    db.session.commit()
    return jsonify({"ok": True, "commission": row.to_dict()}), 200
