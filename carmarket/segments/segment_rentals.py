from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify, request
from sqlalchemy import or_

from carmarket.extensions import db
from carmarket.models import RentalBooking, RentalListing, User
from carmarket.services.listing_service import compute_expiry, delete_listing_rows, extend_expiry
from carmarket.utils.auth import current_user, is_admin, owns
from carmarket.utils.events import log_event
from carmarket.utils.http import (
    error_response,
    forbidden,
    json_body,
    not_found,
    paginate,
    pagination_args,
    parse_date,
    to_float,
    to_int,
    unauthorized,
)


rentals_bp = Blueprint("rentals_bp", __name__, url_prefix="/api/rental-listings")

RENTAL_CATEGORIES = ("economy", "compact", "midsize", "fullsize", "suv", "luxury", "van", "truck", "convertible", "electric")
RENTAL_ROLES = ("rental_company", "seller", "admin")
_TEXT_FIELDS = ("title", "make", "model", "description", "transmission", "fuel_type", "location")
_SORT_COLUMNS = {
    "price_per_day": RentalListing.price_per_day,
    "year": RentalListing.year,
    "seats": RentalListing.seats,
    "created_at": RentalListing.created_at,
}


def validate_rental_payload(data: dict, *, partial: bool = False, current: RentalListing | None = None) -> tuple[dict, str | None]:
    clean: dict = {}
    if not partial:
        missing = [f for f in ("title", "make", "model", "year", "price_per_day") if data.get(f) in (None, "")]
        if missing:
            return {}, f"Missing required fields: {', '.join(missing)}"

    for field in _TEXT_FIELDS:
        if field in data:
            value = (str(data.get(field) or "")).strip()
            if field in ("title", "make", "model") and not value:
                return {}, f"{field} cannot be empty"
            clean[field] = value or None
    if "category" in data:
        category = (data.get("category") or "").strip().lower()
        if category not in RENTAL_CATEGORIES:
            return {}, f"category must be one of {', '.join(RENTAL_CATEGORIES)}"
        clean["category"] = category
    if "year" in data:
        year = to_int(data.get("year"))
        max_year = datetime.utcnow().year + 1
        if year is None or year < 1900 or year > max_year:
            return {}, f"year must be between 1900 and {max_year}"
        clean["year"] = year
    if "price_per_day" in data:
        price = to_float(data.get("price_per_day"))
        if price is None or price <= 0:
            return {}, "price_per_day must be greater than 0"
        clean["price_per_day"] = price
    if "seats" in data:
        seats = to_int(data.get("seats"))
        if seats is None or seats < 2 or seats > 15:
            return {}, "seats must be between 2 and 15"
        clean["seats"] = seats
    if "min_rental_days" in data:
        min_days = to_int(data.get("min_rental_days"))
        if min_days is None or min_days < 1:
            return {}, "min_rental_days must be at least 1"
        clean["min_rental_days"] = min_days
    if "max_rental_days" in data:
        raw = data.get("max_rental_days")
        max_days = to_int(raw) if raw not in (None, "") else None
        if raw not in (None, "") and max_days is None:
            return {}, "max_rental_days must be an integer"
        clean["max_rental_days"] = max_days
    min_days = clean.get("min_rental_days", current.min_rental_days if current else 1)
    max_days = clean.get("max_rental_days", current.max_rental_days if current else None)
    if max_days is not None and max_days < (min_days or 1):
        return {}, "max_rental_days must be greater than or equal to min_rental_days"

    for field in ("available_from", "available_to"):
        if field in data:
            raw = data.get(field)
            parsed = parse_date(raw)
            if raw not in (None, "") and parsed is None:
                return {}, f"{field} must be a date (YYYY-MM-DD)"
            clean[field] = parsed
    start = clean.get("available_from", current.available_from if current else None)
    end = clean.get("available_to", current.available_to if current else None)
    if start and end and end < start:
        return {}, "available_to must be on or after available_from"

    for field in ("features", "images"):
        if field in data:
            value = data.get(field) or []
            if not isinstance(value, list):
                return {}, f"{field} must be a list"
            clean[field] = value
    return clean, None


def _rental_or_404(rental_id: int):
    row = db.session.get(RentalListing, int(rental_id))
    if not row:
        return None, not_found("Rental listing")
    return row, None


@rentals_bp.get("")
def list_rentals():
    now = datetime.utcnow()
    args = request.args
    q = RentalListing.query.filter(
        RentalListing.is_active.is_(True), or_(RentalListing.expires_at.is_(None), RentalListing.expires_at > now)
    )
    for field in ("make", "model", "location"):
        value = (args.get(field) or "").strip()
        if value:
            q = q.filter(getattr(RentalListing, field).ilike(f"%{value}%"))
    for field in ("category", "transmission", "fuel_type"):
        value = (args.get(field) or "").strip()
        if value:
            q = q.filter(getattr(RentalListing, field).ilike(value))
    seats = to_int(args.get("seats"))
    if seats is not None:
        q = q.filter(RentalListing.seats >= seats)
    min_price = to_float(args.get("min_price"))
    max_price = to_float(args.get("max_price"))
    if min_price is not None:
        q = q.filter(RentalListing.price_per_day >= min_price)
    if max_price is not None:
        q = q.filter(RentalListing.price_per_day <= max_price)
    window_start = parse_date(args.get("available_from"))
    window_end = parse_date(args.get("available_to"))
    if window_start is not None:
        q = q.filter(or_(RentalListing.available_from.is_(None), RentalListing.available_from <= window_start))
    if window_end is not None:
        q = q.filter(or_(RentalListing.available_to.is_(None), RentalListing.available_to >= window_end))

    column = _SORT_COLUMNS.get((args.get("sort_by") or "created_at").strip(), RentalListing.created_at)
    direction = (args.get("sort_order") or "desc").strip().lower()
    q = q.order_by(column.asc() if direction == "asc" else column.desc(), RentalListing.id.desc())
    page, limit = pagination_args()
    rows, meta = paginate(q, page, limit)
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows], "pagination": meta}), 200


@rentals_bp.post("")
def create_rental():
    user = current_user()
    if not user:
        return unauthorized()
    if (user.role or "") not in RENTAL_ROLES:
        return error_response("Only rental companies and sellers can list rentals", 403)
    clean, problem = validate_rental_payload(json_body())
    if problem:
        return error_response(problem, 400)
    now = datetime.utcnow()
    rental = RentalListing(user_id=int(user.id), listing_type="free", is_active=True, created_at=now, updated_at=now)
    for key, value in clean.items():
        setattr(rental, key, value)
    rental.expires_at = compute_expiry(rental.listing_type, now)
    db.session.add(rental)
    db.session.flush()
    log_event("rental_listing_created", actor_user_id=user.id, subject_type="rental_listing", subject_id=rental.id)
    db.session.commit()
    return jsonify({"ok": True, "rental_listing": rental.to_dict()}), 201


@rentals_bp.get("/<int:rental_id>")
def get_rental(rental_id: int):
    rental, err = _rental_or_404(rental_id)
    if err is not None:
        return err
    if not rental.is_live():
        user = current_user()
        if not (owns(user, rental.user_id) or is_admin(user)):
            return not_found("Rental listing")
    owner = db.session.get(User, int(rental.user_id))
    data = rental.to_dict()
    data["owner"] = owner.public_dict() if owner else None
    return jsonify({"ok": True, "rental_listing": data}), 200


@rentals_bp.patch("/<int:rental_id>")
def update_rental(rental_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    rental, err = _rental_or_404(rental_id)
    if err is not None:
        return err
    if not (owns(user, rental.user_id) or is_admin(user)):
        return forbidden()
    data = json_body()
    clean, problem = validate_rental_payload(data, partial=True, current=rental)
    if problem:
        return error_response(problem, 400)
    for key, value in clean.items():
        setattr(rental, key, value)
    if "is_active" in data:
        rental.is_active = bool(data.get("is_active"))
    rental.updated_at = datetime.utcnow()
    db.session.commit()
    return jsonify({"ok": True, "rental_listing": rental.to_dict()}), 200


@rentals_bp.delete("/<int:rental_id>")
def delete_rental(rental_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    rental, err = _rental_or_404(rental_id)
    if err is not None:
        return err
    if not (owns(user, rental.user_id) or is_admin(user)):
        return forbidden()
    # Booking history keeps the vehicle row; hide it instead.
    if RentalBooking.query.filter_by(rental_listing_id=rental.id).first():
        rental.is_active = False
        rental.updated_at = datetime.utcnow()
        db.session.commit()
        return jsonify({"ok": True, "deactivated": True}), 200
    log_event("rental_listing_deleted", actor_user_id=user.id, subject_type="rental_listing", subject_id=rental.id)
    delete_listing_rows(rental)
    db.session.commit()
    return jsonify({"ok": True, "deleted": True}), 200


@rentals_bp.post("/<int:rental_id>/view")
def record_rental_view(rental_id: int):
    rental, err = _rental_or_404(rental_id)
    if err is not None:
        return err
    RentalListing.query.filter_by(id=rental.id).update({"views": RentalListing.views + 1}, synchronize_session=False)
    db.session.commit()
    db.session.refresh(rental)
    return jsonify({"ok": True, "views": int(rental.views or 0)}), 200


@rentals_bp.post("/<int:rental_id>/extend")
def extend_rental(rental_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    rental, err = _rental_or_404(rental_id)
    if err is not None:
        return err
    if not owns(user, rental.user_id):
        return forbidden()
    days = to_int(json_body().get("days"), 30)
    try:
        new_expiry = extend_expiry(rental, days if days is not None else 30)
    except ValueError as e:
        return error_response(str(e), 400)
    db.session.commit()
    return jsonify({"ok": True, "expires_at": new_expiry.isoformat(), "rental_listing": rental.to_dict()}), 200
