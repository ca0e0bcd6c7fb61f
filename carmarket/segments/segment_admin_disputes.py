from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify, request
from sqlalchemy import func, or_

from carmarket.extensions import db
from carmarket.models import Dispute, DisputeMessage, RentalBooking, User
from carmarket.models.dispute import DISPUTE_PRIORITIES, DISPUTE_STATUSES
from carmarket.services.admin_log import log_admin_action
from carmarket.services.notification_service import notify
from carmarket.utils.auth import require_admin
from carmarket.utils.http import error_response, json_body, not_found, paginate, pagination_args, to_float, to_int


disputes_bp = Blueprint("disputes_bp", __name__, url_prefix="/api/admin/disputes")

# Booking status applied when a dispute closes out.
_BOOKING_OUTCOME = {"RESOLVED": "COMPLETED", "CLOSED": "CANCELLED"}


def _dispute_or_404(dispute_id: int):
    row = db.session.get(Dispute, int(dispute_id))
    if not row:
        return None, not_found("Dispute")
    return row, None


def _dispute_payload(row: Dispute, *, with_messages: bool = False) -> dict:
    data = row.to_dict()
    booking = db.session.get(RentalBooking, int(row.booking_id))
    data["booking"] = booking.to_dict() if booking else None
    if with_messages:
        messages = DisputeMessage.query.filter_by(dispute_id=int(row.id)).order_by(DisputeMessage.created_at.asc(), DisputeMessage.id.asc()).all()
        data["messages"] = [m.to_dict() for m in messages]
    return data


@disputes_bp.get("")
def list_disputes():
    _, err = require_admin()
    if err is not None:
        return err
    q = Dispute.query
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(Dispute.status == status)
    priority = (request.args.get("priority") or "").strip().upper()
    if priority:
        q = q.filter(Dispute.priority == priority)
    search = (request.args.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(or_(Dispute.title.ilike(like), Dispute.description.ilike(like)))
    page, limit = pagination_args(default_limit=20)
    rows, meta = paginate(q.order_by(Dispute.created_at.desc(), Dispute.id.desc()), page, limit)
    counts = {s: 0 for s in DISPUTE_STATUSES}
    counts.update({str(k): int(v) for k, v in db.session.query(Dispute.status, func.count(Dispute.id)).group_by(Dispute.status).all()})
    return jsonify({"ok": True, "items": [_dispute_payload(r) for r in rows], "pagination": meta, "counts": counts}), 200


@disputes_bp.post("")
def create_dispute():
    admin, err = require_admin()
    if err is not None:
        return err
    data = json_body()
    booking_id = to_int(data.get("booking_id"))
    title = (data.get("title") or "").strip()
    description = (data.get("description") or "").strip()
    priority = (data.get("priority") or "MEDIUM").strip().upper()
    if booking_id is None or not title or not description:
        return error_response("booking_id, title and description are required", 400)
    if priority not in DISPUTE_PRIORITIES:
        return error_response(f"priority must be one of {', '.join(DISPUTE_PRIORITIES)}", 400)
    booking = db.session.get(RentalBooking, booking_id)
    if not booking:
        return not_found("Booking")

    now = datetime.utcnow()
    row = Dispute(
        booking_id=int(booking.id),
        created_by=int(admin.id),
        assigned_to=int(admin.id),
        title=title[:200],
        description=description,
        type=(data.get("type") or "other").strip().lower()[:40] or "other",
        status="OPEN",
        priority=priority,
        created_at=now,
        updated_at=now,
    )
    db.session.add(row)
    booking.status = "DISPUTED"
    booking.updated_at = now
    db.session.flush()
    notify(booking.user_id, "booking", "Booking under dispute", f"A dispute has been opened for booking #{booking.id}.", meta={"dispute_id": int(row.id)}, email=True)
    log_admin_action(admin, "dispute_create", "dispute", row.id, {"booking_id": int(booking.id), "priority": priority})
    db.session.commit()
    return jsonify({"ok": True, "dispute": _dispute_payload(row)}), 201


@disputes_bp.get("/<int:dispute_id>")
def get_dispute(dispute_id: int):
    _, err = require_admin()
    if err is not None:
        return err
    row, err = _dispute_or_404(dispute_id)
    if err is not None:
        return err
    return jsonify({"ok": True, "dispute": _dispute_payload(row, with_messages=True)}), 200


@disputes_bp.patch("/<int:dispute_id>")
def update_dispute(dispute_id: int):
    admin, err = require_admin()
    if err is not None:
        return err
    row, err = _dispute_or_404(dispute_id)
    if err is not None:
        return err
    data = json_body()
    changes: dict = {}

    if "status" in data:
        status = (data.get("status") or "").strip().upper()
        if status not in DISPUTE_STATUSES:
            return error_response(f"status must be one of {', '.join(DISPUTE_STATUSES)}", 400)
        changes["status"] = status
    if "priority" in data:
        priority = (data.get("priority") or "").strip().upper()
        if priority not in DISPUTE_PRIORITIES:
            return error_response(f"priority must be one of {', '.join(DISPUTE_PRIORITIES)}", 400)
        changes["priority"] = priority
    if "assigned_to" in data:
        assignee_id = to_int(data.get("assigned_to"))
        assignee = db.session.get(User, assignee_id) if assignee_id is not None else None
        if assignee is None or not assignee.is_admin:
            return error_response("assigned_to must be an admin user", 400)
        changes["assigned_to"] = int(assignee.id)
    for field in ("refund_amount", "compensation_amount"):
        if field in data:
            amount = to_float(data.get(field))
            if amount is None or amount < 0:
                return error_response(f"{field} must be a non-negative number", 400)
            changes[field] = amount
    for field in ("resolution", "admin_notes"):
        if field in data:
            changes[field] = (str(data.get(field) or "")).strip() or None

    now = datetime.utcnow()
    for key, value in changes.items():
        setattr(row, key, value)
    new_status = changes.get("status")
    if new_status in _BOOKING_OUTCOME:
        row.resolved_at = now
        row.resolved_by = int(admin.id)
        booking = db.session.get(RentalBooking, int(row.booking_id))
        if booking is not None:
            booking.status = _BOOKING_OUTCOME[new_status]
            booking.updated_at = now
            notify(
                booking.user_id,
                "booking",
                f"Dispute {new_status.lower()}",
                f"The dispute on booking #{booking.id} has been {new_status.lower()}.",
                meta={"dispute_id": int(row.id), "resolution": row.resolution or ""},
                email=True,
            )
    row.updated_at = now
    log_admin_action(admin, "dispute_update", "dispute", row.id, changes)
    db.session.commit()
    return jsonify({"ok": True, "dispute": _dispute_payload(row)}), 200


@disputes_bp.delete("/<int:dispute_id>")
def delete_dispute(dispute_id: int):
    admin, err = require_admin()
    if err is not None:
        return err
    row, err = _dispute_or_404(dispute_id)
    if err is not None:
        return err
    if row.status != "CLOSED":
        return error_response("Only closed disputes can be deleted", 400)
    DisputeMessage.query.filter_by(dispute_id=int(row.id)).delete(synchronize_session=False)
    db.session.delete(row)
    log_admin_action(admin, "dispute_delete", "dispute", dispute_id)
    db.session.commit()
    return jsonify({"ok": True}), 200


@disputes_bp.get("/<int:dispute_id>/messages")
def list_messages(dispute_id: int):
    _, err = require_admin()
    if err is not None:
        return err
    row, err = _dispute_or_404(dispute_id)
    if err is not None:
        return err
    return jsonify({"ok": True, "items": _dispute_payload(row, with_messages=True)["messages"]}), 200


@disputes_bp.post("/<int:dispute_id>/messages")
def add_message(dispute_id: int):
    admin, err = require_admin()
    if err is not None:
        return err
    row, err = _dispute_or_404(dispute_id)
    if err is not None:
        return err
    data = json_body()
    text = (data.get("message") or "").strip()
    if not text:
        return error_response("message is required", 400)
    message = DisputeMessage(dispute_id=int(row.id), sender_id=int(admin.id), message=text, is_internal=bool(data.get("is_internal")))
    db.session.add(message)
    row.updated_at = datetime.utcnow()
    db.session.flush()
    log_admin_action(admin, "dispute_message", "dispute", row.id, {"message_id": int(message.id), "is_internal": bool(message.is_internal)})
    db.session.commit()
    return jsonify({"ok": True, "message": message.to_dict()}), 201
