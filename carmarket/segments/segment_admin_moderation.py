from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify, request
from sqlalchemy import func, or_

from carmarket.extensions import db
from carmarket.models import Listing, User
from carmarket.services.admin_log import log_admin_action
from carmarket.services.listing_service import delete_listing_rows
from carmarket.services.notification_service import notify
from carmarket.utils.auth import require_admin
from carmarket.utils.events import log_event
from carmarket.utils.http import error_response, json_body, not_found, paginate, pagination_args


moderation_bp = Blueprint("moderation_bp", __name__, url_prefix="/api/admin/moderation")

MODERATION_STATUSES = ("active", "rejected", "flagged", "inactive")

_OWNER_MESSAGES = {
    "active": ("Listing approved", "Your listing '{title}' has been approved and is now live."),
    "rejected": ("Listing rejected", "Your listing '{title}' was rejected: {reason}"),
    "flagged": ("Listing flagged", "Your listing '{title}' has been flagged for review."),
    "inactive": ("Listing deactivated", "Your listing '{title}' has been deactivated by a moderator."),
}


@moderation_bp.get("")
def moderation_queue():
    _, err = require_admin()
    if err is not None:
        return err
    q = Listing.query
    status = (request.args.get("status") or "").strip().lower()
    if status and status != "all":
        q = q.filter(Listing.status == status)
    search = (request.args.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.outerjoin(User, User.id == Listing.user_id).filter(
            or_(Listing.title.ilike(like), Listing.make.ilike(like), Listing.model.ilike(like), User.email.ilike(like))
        )
    page, limit = pagination_args(default_limit=20)
    rows, meta = paginate(q.order_by(Listing.created_at.desc(), Listing.id.desc()), page, limit)
    items = []
    for row in rows:
        data = row.to_dict()
        owner = db.session.get(User, int(row.user_id))
        data["owner"] = {"id": int(owner.id), "name": owner.name or "", "email": owner.email} if owner else None
        items.append(data)
    return jsonify({"ok": True, "items": items, "pagination": meta}), 200


@moderation_bp.get("/stats")
def moderation_stats():
    _, err = require_admin()
    if err is not None:
        return err
    by_status = {str(k): int(v) for k, v in db.session.query(Listing.status, func.count(Listing.id)).group_by(Listing.status).all()}
    today = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    moderated_today = Listing.query.filter(Listing.moderated_at >= today).count()
    return jsonify(
        {
            "ok": True,
            "by_status": by_status,
            "pending": by_status.get("pending", 0) + by_status.get("flagged", 0),
            "moderated_today": int(moderated_today),
            "total": int(sum(by_status.values())),
        }
    ), 200


@moderation_bp.patch("/<int:listing_id>")
def moderate_listing(listing_id: int):
    admin, err = require_admin()
    if err is not None:
        return err
    listing = db.session.get(Listing, int(listing_id))
    if not listing:
        return not_found("Listing")
    data = json_body()
    status = (data.get("status") or "").strip().lower()
    reason = (data.get("rejection_reason") or "").strip()
    if status not in MODERATION_STATUSES:
        return error_response(f"status must be one of {', '.join(MODERATION_STATUSES)}", 400)
    if status == "rejected" and not reason:
        return error_response("rejection_reason is required when rejecting a listing", 400)

    previous = listing.status
    now = datetime.utcnow()
    listing.status = status
    listing.rejection_reason = reason if status == "rejected" else None
    listing.moderated_at = now
    listing.moderated_by = int(admin.id)
    listing.updated_at = now

    title, template = _OWNER_MESSAGES[status]
    notify(
        listing.user_id,
        "listing",
        title,
        template.format(title=listing.title, reason=reason),
        meta={"listing_id": int(listing.id), "status": status},
        email=True,
    )
    log_admin_action(admin, "listing_moderate", "listing", listing.id, {"from": previous, "to": status, "reason": reason or None})
    log_event("listing_moderated", actor_user_id=admin.id, subject_type="listing", subject_id=listing.id, metadata={"status": status})
    db.session.commit()
    return jsonify({"ok": True, "listing": listing.to_dict()}), 200


@moderation_bp.delete("/<int:listing_id>")
def moderation_delete(listing_id: int):
    admin, err = require_admin()
    if err is not None:
        return err
    listing = db.session.get(Listing, int(listing_id))
    if not listing:
        return not_found("Listing")
    details = {"title": listing.title, "owner_id": int(listing.user_id)}
    notify(listing.user_id, "listing", "Listing removed", f"Your listing '{listing.title}' was removed by a moderator.")
    delete_listing_rows(listing)
    log_admin_action(admin, "listing_delete", "listing", listing_id, details)
    db.session.commit()
    return jsonify({"ok": True}), 200
