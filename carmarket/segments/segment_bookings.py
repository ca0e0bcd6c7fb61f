from __future__ import annotations

from datetime import date, datetime

from flask import Blueprint, jsonify, request

from carmarket.extensions import db
from carmarket.models import RentalBooking, RentalListing
from carmarket.services.availability_service import check_availability, quote, rental_days
from carmarket.services.notification_service import notify
from carmarket.utils.auth import current_user, is_admin, owns
from carmarket.utils.events import log_event
from carmarket.utils.http import error_response, forbidden, json_body, not_found, paginate, pagination_args, parse_date, to_int, unauthorized


bookings_bp = Blueprint("bookings_bp", __name__, url_prefix="/api/bookings")

# Owner-driven status changes.
OWNER_TRANSITIONS = {
    "PENDING": {"CONFIRMED", "CANCELLED"},
    "CONFIRMED": {"ACTIVE", "CANCELLED"},
    "ACTIVE": {"COMPLETED"},
}
RENTER_CANCELLABLE = ("PENDING", "CONFIRMED")


def _booking_payload(booking: RentalBooking) -> dict:
    data = booking.to_dict()
    rental = db.session.get(RentalListing, int(booking.rental_listing_id))
    data["rental_listing"] = (
        {"id": int(rental.id), "title": rental.title, "make": rental.make, "model": rental.model, "images": rental.images, "owner_id": int(rental.user_id)}
        if rental
        else None
    )
    return data


def _notify_parties(booking: RentalBooking, rental: RentalListing | None, title: str, message: str) -> None:
    meta = {"booking_id": int(booking.id), "rental_listing_id": int(booking.rental_listing_id), "status": booking.status}
    notify(booking.user_id, "booking", title, message, meta=meta, email=True, sms=True)
    if rental is not None and int(rental.user_id) != int(booking.user_id):
        notify(rental.user_id, "booking", title, message, meta=meta, email=True)


def validate_booking_dates(rental: RentalListing, start: date | None, end: date | None) -> str | None:
    if start is None or end is None:
        return "start_date and end_date are required (YYYY-MM-DD)"
    if start <= date.today():
        return "start_date must be in the future"
    if end <= start:
        return "end_date must be after start_date"
    days = rental_days(start, end)
    if days < int(rental.min_rental_days or 1):
        return f"Minimum rental period is {int(rental.min_rental_days or 1)} days"
    if rental.max_rental_days and days > int(rental.max_rental_days):
        return f"Maximum rental period is {int(rental.max_rental_days)} days"
    if rental.available_from and start < rental.available_from:
        return "Vehicle is not available for the selected dates"
    if rental.available_to and end > rental.available_to:
        return "Vehicle is not available for the selected dates"
    return None


@bookings_bp.post("")
def create_booking():
    user = current_user()
    if not user:
        return unauthorized()
    data = json_body()
    rental_id = to_int(data.get("rental_listing_id"))
    if rental_id is None:
        return error_response("rental_listing_id is required", 400)
    rental = db.session.get(RentalListing, rental_id)
    if not rental or not rental.is_live():
        return not_found("Rental listing")
    if owns(user, rental.user_id):
        return error_response("You cannot book your own vehicle", 400)

    start = parse_date(data.get("start_date"))
    end = parse_date(data.get("end_date"))
    problem = validate_booking_dates(rental, start, end)
    if problem:
        return error_response(problem, 400)

    availability = check_availability(rental, start, end)
    if availability["conflicts"] or availability["blocked_dates"]:
        return error_response(
            "Vehicle is already booked for the selected dates",
            409,
            error="BOOKING_CONFLICT",
            conflicts=availability["conflicts"],
            blocked_dates=availability["blocked_dates"],
        )

    priced = quote(rental, start, end)
    booking = RentalBooking(
        rental_listing_id=int(rental.id),
        user_id=int(user.id),
        start_date=start,
        end_date=end,
        total_days=priced["days"],
        total_price=priced["total_price"],
        status="PENDING",
        payment_status="PENDING",
        notes=(data.get("notes") or "").strip() or None,
    )
    db.session.add(booking)
    db.session.flush()
    _notify_parties(booking, rental, "New booking request", f"Booking #{booking.id} for {rental.title} from {start.isoformat()} to {end.isoformat()}.")
    log_event("booking_created", actor_user_id=user.id, subject_type="booking", subject_id=booking.id, metadata={"total_price": booking.total_price})
    db.session.commit()
    body = _booking_payload(booking)
    body["price_breakdown"] = priced["breakdown"]
    return jsonify({"ok": True, "booking": body}), 201


@bookings_bp.get("")
def list_bookings():
    user = current_user()
    if not user:
        return unauthorized()
    as_owner = (request.args.get("as") or "").strip().lower() == "owner"
    if as_owner:
        owned = [r.id for r in RentalListing.query.with_entities(RentalListing.id).filter_by(user_id=int(user.id)).all()]
        q = RentalBooking.query.filter(RentalBooking.rental_listing_id.in_(owned or [-1]))
    else:
        q = RentalBooking.query.filter(RentalBooking.user_id == int(user.id))
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(RentalBooking.status == status)
    page, limit = pagination_args(default_limit=10)
    rows, meta = paginate(q.order_by(RentalBooking.created_at.desc()), page, limit)
    return jsonify({"ok": True, "items": [_booking_payload(r) for r in rows], "pagination": meta}), 200


def _load_for(user, booking_id: int):
    booking = db.session.get(RentalBooking, int(booking_id))
    if not booking:
        return None, None, not_found("Booking")
    rental = db.session.get(RentalListing, int(booking.rental_listing_id))
    if not (owns(user, booking.user_id) or (rental and owns(user, rental.user_id)) or is_admin(user)):
        return None, None, forbidden()
    return booking, rental, None


@bookings_bp.get("/<int:booking_id>")
def get_booking(booking_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    booking, _rental, err = _load_for(user, booking_id)
    if err is not None:
        return err
    return jsonify({"ok": True, "booking": _booking_payload(booking)}), 200


@bookings_bp.patch("/<int:booking_id>/status")
def update_booking_status(booking_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    booking, rental, err = _load_for(user, booking_id)
    if err is not None:
        return err
    if not (rental and owns(user, rental.user_id)) and not is_admin(user):
        return forbidden()
    data = json_body()
    target = (data.get("status") or "").strip().upper()
    allowed = OWNER_TRANSITIONS.get(booking.status or "", set())
    if target not in allowed:
        return error_response(f"Cannot change booking from {booking.status} to {target or 'empty'}", 400)

    now = datetime.utcnow()
    previous = booking.status
    booking.status = target
    booking.updated_at = now
    if target == "CANCELLED":
        booking.cancelled_at = now
        booking.cancellation_reason = (data.get("reason") or "").strip() or "Cancelled by owner"
    # The rental may have been deleted since the booking was made.
    label = rental.title if rental else f"rental #{booking.rental_listing_id}"
    _notify_parties(booking, rental, f"Booking {target.lower()}", f"Booking #{booking.id} for {label} is now {target}.")
    log_event("booking_status_changed", actor_user_id=user.id, subject_type="booking", subject_id=booking.id, metadata={"from": previous, "to": target})
    db.session.commit()
    return jsonify({"ok": True, "booking": _booking_payload(booking)}), 200


@bookings_bp.post("/<int:booking_id>/cancel")
def cancel_booking(booking_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    booking = db.session.get(RentalBooking, int(booking_id))
    if not booking:
        return not_found("Booking")
    if not owns(user, booking.user_id):
        return forbidden()
    if booking.status not in RENTER_CANCELLABLE:
        return error_response(f"Bookings in status {booking.status} cannot be cancelled", 400)
    now = datetime.utcnow()
    booking.status = "CANCELLED"
    booking.cancelled_at = now
    booking.cancellation_reason = (json_body().get("reason") or "").strip() or "Cancelled by renter"
    booking.updated_at = now
    rental = db.session.get(RentalListing, int(booking.rental_listing_id))
    label = rental.title if rental else f"rental #{booking.rental_listing_id}"
    _notify_parties(booking, rental, "Booking cancelled", f"Booking #{booking.id} for {label} was cancelled.")
    log_event("booking_cancelled", actor_user_id=user.id, subject_type="booking", subject_id=booking.id)
    db.session.commit()
    return jsonify({"ok": True, "booking": _booking_payload(booking)}), 200
