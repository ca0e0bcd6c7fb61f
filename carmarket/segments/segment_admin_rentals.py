from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify, request
from sqlalchemy import func, or_

from carmarket.extensions import db
from carmarket.models import RentalBooking, RentalCompany, RentalListing, User
from carmarket.models.company import COMPANY_VERIFICATION_STATUSES
from carmarket.models.rental import BOOKING_PAYMENT_STATUSES, BOOKING_STATUSES
from carmarket.services.admin_log import log_admin_action
from carmarket.services.commission_service import record_commission
from carmarket.services.notification_service import notify
from carmarket.utils.auth import require_admin
from carmarket.utils.http import error_response, json_body, not_found, paginate, pagination_args, to_int
from carmarket.utils.money import money_major_to_minor


admin_rentals_bp = Blueprint("admin_rentals_bp", __name__, url_prefix="/api/admin")

BOOKING_DELETABLE = ("CANCELLED", "DISPUTED")
_COMPANY_FIELDS = ("company_name", "business_registration", "kra_pin", "phone", "email", "address", "notes")


def _booking_row(booking: RentalBooking) -> dict:
    data = booking.to_dict()
    rental = db.session.get(RentalListing, int(booking.rental_listing_id))
    renter = db.session.get(User, int(booking.user_id))
    data["rental_listing"] = {"id": int(rental.id), "title": rental.title, "owner_id": int(rental.user_id)} if rental else None
    data["renter"] = {"id": int(renter.id), "name": renter.name or "", "email": renter.email} if renter else None
    return data


@admin_rentals_bp.get("/rental-bookings")
def list_rental_bookings():
    _, err = require_admin()
    if err is not None:
        return err
    q = RentalBooking.query
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(RentalBooking.status == status)
    payment_status = (request.args.get("payment_status") or "").strip().upper()
    if payment_status:
        q = q.filter(RentalBooking.payment_status == payment_status)
    search = (request.args.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        q = (
            q.join(RentalListing, RentalListing.id == RentalBooking.rental_listing_id)
            .join(User, User.id == RentalBooking.user_id)
            .filter(or_(RentalListing.title.ilike(like), User.name.ilike(like), User.email.ilike(like)))
        )
    page, limit = pagination_args(default_limit=20)
    rows, meta = paginate(q.order_by(RentalBooking.created_at.desc(), RentalBooking.id.desc()), page, limit)
    return jsonify({"ok": True, "items": [_booking_row(r) for r in rows], "pagination": meta}), 200


@admin_rentals_bp.get("/rental-bookings/stats")
def rental_booking_stats():
    _, err = require_admin()
    if err is not None:
        return err
    by_status = {s: 0 for s in BOOKING_STATUSES}
    by_status.update({str(k): int(v) for k, v in db.session.query(RentalBooking.status, func.count(RentalBooking.id)).group_by(RentalBooking.status).all()})
    by_payment = {s: 0 for s in BOOKING_PAYMENT_STATUSES}
    by_payment.update(
        {str(k): int(v) for k, v in db.session.query(RentalBooking.payment_status, func.count(RentalBooking.id)).group_by(RentalBooking.payment_status).all()}
    )
    paid_total = (
        db.session.query(func.coalesce(func.sum(RentalBooking.total_price), 0.0)).filter(RentalBooking.payment_status == "PAID").scalar() or 0.0
    )
    return jsonify(
        {
            "ok": True,
            "total": int(sum(by_status.values())),
            "by_status": by_status,
            "by_payment_status": by_payment,
            "paid_revenue": round(float(paid_total), 2),
        }
    ), 200


@admin_rentals_bp.patch("/rental-bookings/<int:booking_id>")
def update_rental_booking(booking_id: int):
    admin, err = require_admin()
    if err is not None:
        return err
    booking = db.session.get(RentalBooking, int(booking_id))
    if not booking:
        return not_found("Booking")
    data = json_body()
    changes: dict = {}
    if "status" in data:
        status = (data.get("status") or "").strip().upper()
        if status not in BOOKING_STATUSES:
            return error_response(f"status must be one of {', '.join(BOOKING_STATUSES)}", 400)
        changes["status"] = status
    if "payment_status" in data:
        payment_status = (data.get("payment_status") or "").strip().upper()
        if payment_status not in BOOKING_PAYMENT_STATUSES:
            return error_response(f"payment_status must be one of {', '.join(BOOKING_PAYMENT_STATUSES)}", 400)
        changes["payment_status"] = payment_status
    if "admin_notes" in data:
        changes["admin_notes"] = (str(data.get("admin_notes") or "")).strip() or None

    now = datetime.utcnow()
    for key, value in changes.items():
        setattr(booking, key, value)
    if booking.status == "CANCELLED":
        if "cancellation_reason" in data:
            booking.cancellation_reason = (str(data.get("cancellation_reason") or "")).strip() or None
        booking.cancelled_at = booking.cancelled_at or now
    else:
        booking.cancellation_reason = None
        booking.cancelled_at = None
    booking.updated_at = now

    commission = None
    if changes.get("payment_status") == "PAID":
        rental = db.session.get(RentalListing, int(booking.rental_listing_id))
        if rental is not None:
            commission = record_commission(
                user_id=int(rental.user_id),
                kind="rental",
                source_id=int(booking.id),
                amount_minor=money_major_to_minor(booking.total_price),
            )
    if "status" in changes:
        notify(
            booking.user_id,
            "booking",
            "Booking updated",
            f"Your booking #{booking.id} is now {booking.status.lower()}.",
            meta={"booking_id": int(booking.id), "status": booking.status},
        )
    log_admin_action(admin, "rental_booking_update", "rental_booking", booking.id, changes)
    db.session.commit()
    body = {"ok": True, "booking": _booking_row(booking)}
    if commission is not None:
        body["commission"] = commission.to_dict()
    return jsonify(body), 200


@admin_rentals_bp.delete("/rental-bookings/<int:booking_id>")
def delete_rental_booking(booking_id: int):
    admin, err = require_admin()
    if err is not None:
        return err
    booking = db.session.get(RentalBooking, int(booking_id))
    if not booking:
        return not_found("Booking")
    if booking.status not in BOOKING_DELETABLE:
        return error_response("Only cancelled or disputed bookings can be deleted", 400)
    details = {"status": booking.status, "rental_listing_id": int(booking.rental_listing_id)}
    db.session.delete(booking)
    log_admin_action(admin, "rental_booking_delete", "rental_booking", booking_id, details)
    db.session.commit()
    return jsonify({"ok": True}), 200


@admin_rentals_bp.get("/rental-companies")
def list_rental_companies():
    _, err = require_admin()
    if err is not None:
        return err
    q = RentalCompany.query
    status = (request.args.get("verification_status") or "").strip().upper()
    if status:
        q = q.filter(RentalCompany.verification_status == status)
    search = (request.args.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(or_(RentalCompany.company_name.ilike(like), RentalCompany.email.ilike(like), RentalCompany.business_registration.ilike(like)))
    page, limit = pagination_args(default_limit=20)
    rows, meta = paginate(q.order_by(RentalCompany.created_at.desc(), RentalCompany.id.desc()), page, limit)
    counts = {s: 0 for s in COMPANY_VERIFICATION_STATUSES}
    counts.update(
        {str(k): int(v) for k, v in db.session.query(RentalCompany.verification_status, func.count(RentalCompany.id)).group_by(RentalCompany.verification_status).all()}
    )
    items = []
    for row in rows:
        data = row.to_dict()
        data["fleet_size"] = RentalListing.query.filter_by(user_id=int(row.user_id)).count()
        items.append(data)
    return jsonify({"ok": True, "items": items, "pagination": meta, "counts": counts}), 200


@admin_rentals_bp.post("/rental-companies")
def create_rental_company():
    admin, err = require_admin()
    if err is not None:
        return err
    data = json_body()
    user_id = to_int(data.get("user_id"))
    name = (data.get("company_name") or "").strip()
    if user_id is None or not name:
        return error_response("user_id and company_name are required", 400)
    owner = db.session.get(User, user_id)
    if not owner:
        return not_found("User")
    if RentalCompany.query.filter_by(user_id=user_id).first():
        return error_response("User already has a rental company profile", 400)
    now = datetime.utcnow()
    company = RentalCompany(user_id=user_id, company_name=name, verification_status="PENDING", created_at=now, updated_at=now)
    for field in _COMPANY_FIELDS:
        if field in data and field != "company_name":
            setattr(company, field, (str(data.get(field) or "")).strip() or None)
    db.session.add(company)
    if owner.role == "buyer":
        owner.role = "rental_company"
    db.session.flush()
    log_admin_action(admin, "rental_company_create", "rental_company", company.id, {"user_id": user_id})
    db.session.commit()
    return jsonify({"ok": True, "company": company.to_dict()}), 201


@admin_rentals_bp.get("/rental-companies/<int:company_id>")
def get_rental_company(company_id: int):
    _, err = require_admin()
    if err is not None:
        return err
    company = db.session.get(RentalCompany, int(company_id))
    if not company:
        return not_found("Rental company")
    data = company.to_dict()
    owner = db.session.get(User, int(company.user_id))
    data["owner"] = owner.to_dict() if owner else None
    data["fleet"] = [r.to_dict() for r in RentalListing.query.filter_by(user_id=int(company.user_id)).order_by(RentalListing.created_at.desc()).limit(50).all()]
    return jsonify({"ok": True, "company": data}), 200


@admin_rentals_bp.patch("/rental-companies/<int:company_id>")
def update_rental_company(company_id: int):
    admin, err = require_admin()
    if err is not None:
        return err
    company = db.session.get(RentalCompany, int(company_id))
    if not company:
        return not_found("Rental company")
    data = json_body()
    now = datetime.utcnow()
    changes: dict = {}
    if "verification_status" in data:
        status = (data.get("verification_status") or "").strip().upper()
        if status not in COMPANY_VERIFICATION_STATUSES:
            return error_response(f"verification_status must be one of {', '.join(COMPANY_VERIFICATION_STATUSES)}", 400)
        changes["verification_status"] = status
    if "company_name" in data and not (str(data.get("company_name") or "")).strip():
        return error_response("company_name cannot be empty", 400)
    for field in _COMPANY_FIELDS:
        if field in data:
            changes[field] = (str(data.get(field) or "")).strip() or None

    for key, value in changes.items():
        setattr(company, key, value)
    status = changes.get("verification_status")
    if status == "APPROVED":
        company.is_verified = True
        company.verified_at = now
        company.verified_by = int(admin.id)
    elif status is not None:
        company.is_verified = False
    if status is not None:
        notify(
            company.user_id,
            "system",
            "Company verification update",
            f"Your company verification status is now {status.lower()}.",
            meta={"company_id": int(company.id), "status": status},
            email=True,
        )
    company.updated_at = now
    log_admin_action(admin, "rental_company_update", "rental_company", company.id, changes)
    db.session.commit()
    return jsonify({"ok": True, "company": company.to_dict()}), 200
