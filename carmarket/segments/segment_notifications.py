from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify, request
from sqlalchemy import func

from carmarket.extensions import db
from carmarket.models import Notification, User
from carmarket.models.notification import NOTIFICATION_TYPES
from carmarket.services.admin_log import log_admin_action
from carmarket.services.notification_service import notify
from carmarket.utils.auth import current_user, require_admin
from carmarket.utils.http import error_response, json_body, not_found, paginate, pagination_args, to_bool, to_int, unauthorized


notifications_bp = Blueprint("notifications_bp", __name__, url_prefix="/api/notifications")

MAX_BROADCAST = 5000


def _inbox(user_id: int):
    return Notification.query.filter(Notification.user_id == int(user_id), Notification.channel == "in_app")


@notifications_bp.get("")
def list_notifications():
    user = current_user()
    if not user:
        return unauthorized()
    q = _inbox(user.id)
    if to_bool(request.args.get("unread_only")):
        q = q.filter(Notification.is_read.is_(False))
    kind = (request.args.get("type") or "").strip().lower()
    if kind:
        q = q.filter(Notification.type == kind)
    page, limit = pagination_args(default_limit=20)
    rows, meta = paginate(q.order_by(Notification.created_at.desc(), Notification.id.desc()), page, limit)
    by_type = dict(
        db.session.query(Notification.type, func.count(Notification.id))
        .filter(Notification.user_id == int(user.id), Notification.channel == "in_app")
        .group_by(Notification.type)
        .all()
    )
    unread = _inbox(user.id).filter(Notification.is_read.is_(False)).count()
    return jsonify(
        {
            "ok": True,
            "items": [r.to_dict() for r in rows],
            "pagination": meta,
            "unread_count": int(unread),
            "counts_by_type": {str(k): int(v) for k, v in by_type.items()},
        }
    ), 200


@notifications_bp.post("/<int:notification_id>/read")
def mark_read(notification_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    row = _inbox(user.id).filter(Notification.id == int(notification_id)).first()
    if not row:
        return not_found("Notification")
    stamped = row.mark_read()
    db.session.commit()
    return jsonify({"ok": True, "id": int(row.id), "is_read": True, "read_at": stamped.isoformat()}), 200


@notifications_bp.post("/read-all")
def mark_all_read():
    user = current_user()
    if not user:
        return unauthorized()
    now = datetime.utcnow()
    updated = _inbox(user.id).filter(Notification.is_read.is_(False)).update(
        {"is_read": True, "read_at": now}, synchronize_session=False
    )
    db.session.commit()
    return jsonify({"ok": True, "updated": int(updated or 0)}), 200


@notifications_bp.delete("/<int:notification_id>")
def delete_notification(notification_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    row = _inbox(user.id).filter(Notification.id == int(notification_id)).first()
    if not row:
        return not_found("Notification")
    db.session.delete(row)
    db.session.commit()
    return jsonify({"ok": True}), 200


@notifications_bp.post("")
def broadcast():
    admin, err = require_admin()
    if err is not None:
        return err
    data = json_body()
    title = (data.get("title") or "").strip()
    message = (data.get("message") or "").strip()
    kind = (data.get("type") or "system").strip().lower()
    if not title or not message:
        return error_response("title and message are required", 400)
    if kind not in NOTIFICATION_TYPES:
        return error_response("Invalid notification type", 400)

    user_ids = data.get("user_ids")
    role = (data.get("role") or "").strip().lower()
    if isinstance(user_ids, list) and user_ids:
        ids = {to_int(x) for x in user_ids if to_int(x) is not None}
        recipients = User.query.filter(User.id.in_(ids), User.is_active.is_(True)).all() if ids else []
    elif role:
        recipients = User.query.filter(User.role == role, User.is_active.is_(True)).limit(MAX_BROADCAST).all()
    else:
        return error_response("Provide user_ids or role", 400)

    sent = 0
    for recipient in recipients:
        if notify(recipient.id, kind, title, message, meta={"broadcast_by": int(admin.id)}, email=bool(data.get("send_email"))):
            sent += 1
    log_admin_action(admin, "notification_broadcast", "notification", None, {"recipients": len(recipients), "delivered": sent, "type": kind})
    db.session.commit()
    return jsonify({"ok": True, "recipients": len(recipients), "sent": sent}), 201
