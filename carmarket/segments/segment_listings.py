from __future__ import annotations

import math
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import or_

from carmarket.extensions import db
from carmarket.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from carmarket.models import Category, Listing, User
from carmarket.models.listing import LISTING_STATUSES
from carmarket.segments._payment_errors import provider_error_response
from carmarket.services.listing_service import compute_expiry, delete_listing_rows, expire_listings, extend_expiry
from carmarket.services.payment_service import create_payment, display_amounts
from carmarket.services.pricing import UPGRADE_DURATIONS, UPGRADE_FEATURES, UPGRADE_PRICING, upgrade_price_usd
from carmarket.services.subscription_service import can_create_listing
from carmarket.utils.auth import current_user, is_admin, owns, require_admin
from carmarket.utils.events import log_event
from carmarket.utils.http import (
    error_response,
    forbidden,
    json_body,
    not_found,
    paginate,
    pagination_args,
    to_float,
    to_int,
    unauthorized,
)
from carmarket.utils.phone import is_valid_kenyan_phone
from carmarket.utils.rate_limit import rate_limit


listings_bp = Blueprint("listings_bp", __name__, url_prefix="/api/listings")

_TEXT_FIELDS = ("title", "make", "model", "description", "fuel_type", "transmission", "body_type", "color", "condition", "engine_size", "location")
_SORT_COLUMNS = {
    "price": Listing.price,
    "year": Listing.year,
    "mileage": Listing.mileage,
    "created_at": Listing.created_at,
    "views": Listing.views,
}
_OWNER_STATUSES = ("active", "inactive", "sold")
BULK_ACTIONS = ("activate", "deactivate", "delete", "mark_sold", "update_price", "update_location", "extend_expiry")
PRICE_UPDATE_TYPES = ("set_fixed", "increase_percent", "decrease_percent", "increase_amount", "decrease_amount")


def validate_listing_payload(data: dict, *, partial: bool = False) -> tuple[dict, str | None]:
    """Return (clean_fields, error_message)."""
    clean: dict = {}
    required = ("title", "make", "model", "year", "price")
    if not partial:
        missing = [f for f in required if data.get(f) in (None, "")]
        if missing:
            return {}, f"Missing required fields: {', '.join(missing)}"

    for field in _TEXT_FIELDS:
        if field in data:
            value = (str(data.get(field) or "")).strip()
            if field in ("title", "make", "model") and not value:
                return {}, f"{field} cannot be empty"
            clean[field] = value or None

    if "year" in data:
        year = to_int(data.get("year"))
        max_year = datetime.utcnow().year + 1
        if year is None or year < 1900 or year > max_year:
            return {}, f"year must be between 1900 and {max_year}"
        clean["year"] = year
    if "price" in data:
        price = to_float(data.get("price"))
        if price is None or not math.isfinite(price) or price < 0:
            return {}, "price must be a non-negative number"
        clean["price"] = price
    if "mileage" in data:
        raw_mileage = data.get("mileage")
        mileage = 0 if raw_mileage in (None, "") else to_int(raw_mileage)
        if mileage is None or mileage < 0:
            return {}, "mileage must be a non-negative integer"
        clean["mileage"] = mileage
    if "category_id" in data:
        category_id = to_int(data.get("category_id"))
        if category_id is not None and not db.session.get(Category, category_id):
            return {}, "Category not found"
        clean["category_id"] = category_id
    for field in ("features", "images"):
        if field in data:
            value = data.get(field) or []
            if not isinstance(value, list):
                return {}, f"{field} must be a list"
            clean[field] = value
    if "is_negotiable" in data:
        clean["is_negotiable"] = bool(data.get("is_negotiable"))
    return clean, None


def _apply_fields(listing: Listing, clean: dict) -> None:
    for key, value in clean.items():
        setattr(listing, key, value)


def _listing_or_404(listing_id: int):
    row = db.session.get(Listing, int(listing_id))
    if not row:
        return None, not_found("Listing")
    return row, None


def _seller_summary(user_id: int) -> dict | None:
    seller = db.session.get(User, int(user_id))
    if not seller:
        return None
    data = seller.public_dict()
    data["phone"] = seller.phone or ""
    return data


@listings_bp.get("")
def list_listings():
    now = datetime.utcnow()
    q = Listing.query.filter(Listing.status == "active", or_(Listing.expires_at.is_(None), Listing.expires_at > now))
    args = request.args
    for field in ("make", "model", "location"):
        value = (args.get(field) or "").strip()
        if value:
            q = q.filter(getattr(Listing, field).ilike(f"%{value}%"))
    for field in ("body_type", "fuel_type", "transmission", "condition"):
        value = (args.get(field) or "").strip()
        if value:
            q = q.filter(getattr(Listing, field).ilike(value))
    category_id = to_int(args.get("category_id"))
    if category_id is not None:
        q = q.filter(Listing.category_id == category_id)
    min_price = to_float(args.get("min_price"))
    max_price = to_float(args.get("max_price"))
    min_year = to_int(args.get("min_year"))
    max_year = to_int(args.get("max_year"))
    if min_price is not None:
        q = q.filter(Listing.price >= min_price)
    if max_price is not None:
        q = q.filter(Listing.price <= max_price)
    if min_year is not None:
        q = q.filter(Listing.year >= min_year)
    if max_year is not None:
        q = q.filter(Listing.year <= max_year)

    column = _SORT_COLUMNS.get((args.get("sort_by") or "created_at").strip(), Listing.created_at)
    direction = (args.get("sort_order") or "desc").strip().lower()
    q = q.order_by(column.asc() if direction == "asc" else column.desc(), Listing.id.desc())

    page, limit = pagination_args()
    rows, meta = paginate(q, page, limit)
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows], "pagination": meta}), 200


@listings_bp.post("")
def create_listing():
    user = current_user()
    if not user:
        return unauthorized()
    clean, problem = validate_listing_payload(json_body())
    if problem:
        return error_response(problem, 400)
    if not is_admin(user):
        allowed, used, limit = can_create_listing(user.id)
        if not allowed:
            return error_response(
                "Active listing limit reached for your plan",
                403,
                error="LISTING_LIMIT_REACHED",
                used=used,
                limit=limit,
            )

    now = datetime.utcnow()
    listing = Listing(user_id=int(user.id), listing_type="free", status="active", created_at=now, updated_at=now)
    _apply_fields(listing, clean)
    listing.expires_at = compute_expiry(listing.listing_type, now)
    db.session.add(listing)
    db.session.flush()
    log_event("listing_created", actor_user_id=user.id, subject_type="listing", subject_id=listing.id)
    db.session.commit()
    return jsonify({"ok": True, "listing": listing.to_dict()}), 201


@listings_bp.get("/<int:listing_id>")
def get_listing(listing_id: int):
    listing, err = _listing_or_404(listing_id)
    if err is not None:
        return err
    if listing.status != "active":
        user = current_user()
        if not (owns(user, listing.user_id) or is_admin(user)):
            return not_found("Listing")
    data = listing.to_dict()
    data["seller"] = _seller_summary(listing.user_id)
    return jsonify({"ok": True, "listing": data}), 200


@listings_bp.patch("/<int:listing_id>")
def update_listing(listing_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    listing, err = _listing_or_404(listing_id)
    if err is not None:
        return err
    if not (owns(user, listing.user_id) or is_admin(user)):
        return forbidden()
    data = json_body()
    clean, problem = validate_listing_payload(data, partial=True)
    if problem:
        return error_response(problem, 400)
    if "status" in data:
        status = (data.get("status") or "").strip().lower()
        allowed = LISTING_STATUSES if is_admin(user) else _OWNER_STATUSES
        if status not in allowed:
            return error_response("Invalid status", 400)
        clean["status"] = status
    _apply_fields(listing, clean)
    listing.updated_at = datetime.utcnow()
    db.session.commit()
    return jsonify({"ok": True, "listing": listing.to_dict()}), 200


@listings_bp.delete("/<int:listing_id>")
def delete_listing(listing_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    listing, err = _listing_or_404(listing_id)
    if err is not None:
        return err
    if not (owns(user, listing.user_id) or is_admin(user)):
        return forbidden()
    log_event("listing_deleted", actor_user_id=user.id, subject_type="listing", subject_id=listing.id)
    delete_listing_rows(listing)
    db.session.commit()
    return jsonify({"ok": True}), 200


@listings_bp.post("/<int:listing_id>/view")
def record_view(listing_id: int):
    listing, err = _listing_or_404(listing_id)
    if err is not None:
        return err
    Listing.query.filter_by(id=listing.id).update({"views": Listing.views + 1}, synchronize_session=False)
    db.session.commit()
    db.session.refresh(listing)
    return jsonify({"ok": True, "views": int(listing.views or 0)}), 200


@listings_bp.post("/<int:listing_id>/contact")
@rate_limit("listing_contact", 60, 20)
def record_contact(listing_id: int):
    listing, err = _listing_or_404(listing_id)
    if err is not None:
        return err
    Listing.query.filter_by(id=listing.id).update({"contact_count": Listing.contact_count + 1}, synchronize_session=False)
    db.session.commit()
    db.session.refresh(listing)
    return jsonify({"ok": True, "contact_count": int(listing.contact_count or 0), "seller": _seller_summary(listing.user_id)}), 200


@listings_bp.post("/<int:listing_id>/extend")
def extend_listing(listing_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    listing, err = _listing_or_404(listing_id)
    if err is not None:
        return err
    if not owns(user, listing.user_id):
        return forbidden()
    days = to_int(json_body().get("days"), 30)
    try:
        new_expiry = extend_expiry(listing, days if days is not None else 30)
    except ValueError as e:
        return error_response(str(e), 400)
    log_event("listing_extended", actor_user_id=user.id, subject_type="listing", subject_id=listing.id, metadata={"days": days})
    db.session.commit()
    return jsonify({"ok": True, "expires_at": new_expiry.isoformat(), "listing": listing.to_dict()}), 200


@listings_bp.get("/<int:listing_id>/upgrade")
def upgrade_options(listing_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    listing, err = _listing_or_404(listing_id)
    if err is not None:
        return err
    if not (owns(user, listing.user_id) or is_admin(user)):
        return forbidden()
    current_tier = (listing.listing_type or "free").upper()
    tiers = list(UPGRADE_PRICING.keys())
    available = []
    for tier in tiers:
        if tiers.index(tier) <= (tiers.index(current_tier) if current_tier in tiers else -1):
            continue
        available.append(
            {
                "listing_type": tier,
                **UPGRADE_FEATURES[tier],
                "pricing": {str(d): display_amounts(UPGRADE_PRICING[tier][d] * 100) for d in UPGRADE_DURATIONS},
            }
        )
    return jsonify(
        {
            "ok": True,
            "listing_id": int(listing.id),
            "current_type": listing.listing_type or "free",
            "premium_expires_at": listing.premium_expires_at.isoformat() if listing.premium_expires_at else None,
            "pricing": UPGRADE_PRICING,
            "features": UPGRADE_FEATURES,
            "available_upgrades": available,
        }
    ), 200


@listings_bp.post("/<int:listing_id>/upgrade")
def upgrade_listing(listing_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    listing, err = _listing_or_404(listing_id)
    if err is not None:
        return err
    if not owns(user, listing.user_id):
        return forbidden()
    data = json_body()
    tier = (data.get("listing_type") or "").strip().upper()
    duration = to_int(data.get("duration"), 30)
    provider = (data.get("provider") or "stripe").strip().lower()
    phone_number = (data.get("phone_number") or "").strip() or None

    if tier not in UPGRADE_PRICING:
        return error_response("Invalid listing_type", 400)
    price = upgrade_price_usd(tier, duration or 0)
    if price is None:
        return error_response(f"duration must be one of {', '.join(str(d) for d in UPGRADE_DURATIONS)}", 400)
    if provider not in ("stripe", "mpesa"):
        return error_response("provider must be stripe or mpesa", 400)
    if provider == "mpesa":
        if not phone_number:
            return error_response("phone_number is required for M-Pesa payments", 400)
        if not is_valid_kenyan_phone(phone_number):
            return error_response("Invalid Kenyan phone number", 400)
    if listing.status != "active":
        return error_response("Only active listings can be upgraded", 400)

    try:
        payment, init = create_payment(
            user=user,
            listing_type=tier,
            provider_name=provider,
            usd_cents=price * 100,
            description=f"{tier.title()} upgrade for {duration} days",
            listing_id=listing.id,
            phone_number=phone_number,
            metadata={"upgrade_duration_days": duration, "purpose": "upgrade"},
        )
        db.session.commit()
    except (IntegrationDisabledError, IntegrationMisconfiguredError, RuntimeError, ValueError) as e:
        db.session.rollback()
        return provider_error_response(e, action="listing_upgrade")

    current_app.logger.info("listing_upgrade_started listing_id=%s tier=%s payment=%s", listing.id, tier, payment.payment_intent_id)
    body = {
        "ok": True,
        "payment": payment.to_dict(),
        "client_secret": init.client_secret or None,
        "checkout_request_id": payment.payment_intent_id if provider == "mpesa" else None,
        "merchant_request_id": init.merchant_request_id or None,
        "customer_message": init.customer_message or None,
        "price": display_amounts(price * 100),
    }
    return jsonify(body), 201


@listings_bp.delete("/<int:listing_id>/upgrade")
def downgrade_listing(listing_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    listing, err = _listing_or_404(listing_id)
    if err is not None:
        return err
    if not (owns(user, listing.user_id) or is_admin(user)):
        return forbidden()
    previous = listing.listing_type or "free"
    listing.listing_type = "free"
    listing.premium_expires_at = None
    listing.updated_at = datetime.utcnow()
    log_event("listing_downgraded", actor_user_id=user.id, subject_type="listing", subject_id=listing.id, metadata={"from": previous})
    db.session.commit()
    return jsonify({"ok": True, "listing": listing.to_dict()}), 200


def _apply_price_update(listing: Listing, data: dict) -> str | None:
    kind = (data.get("price_update_type") or "").strip()
    value = to_float(data.get("value"))
    if kind not in PRICE_UPDATE_TYPES or value is None or not math.isfinite(value) or value < 0:
        return "price_update_type and a non-negative value are required"
    price = float(listing.price or 0.0)
    if kind == "set_fixed":
        price = value
    elif kind == "increase_percent":
        price = price * (1 + value / 100.0)
    elif kind == "decrease_percent":
        price = price * (1 - value / 100.0)
    elif kind == "increase_amount":
        price = price + value
    elif kind == "decrease_amount":
        price = price - value
    listing.price = round(max(0.0, price), 2)
    return None


@listings_bp.post("/bulk")
def bulk_listings():
    user = current_user()
    if not user:
        return unauthorized()
    data = json_body()
    ids = data.get("listing_ids") or []
    action = (data.get("action") or "").strip()
    params = data.get("data") or {}
    if not isinstance(ids, list) or not ids:
        return error_response("listing_ids must be a non-empty list", 400)
    if action not in BULK_ACTIONS:
        return error_response("Invalid action", 400)
    if not isinstance(params, dict):
        return error_response("data must be an object", 400)

    wanted = {to_int(x) for x in ids if to_int(x) is not None}
    rows = Listing.query.filter(Listing.id.in_(wanted), Listing.user_id == int(user.id)).all() if wanted else []
    found = {int(r.id) for r in rows}
    errors = [{"listing_id": lid, "error": "Listing not found or not owned"} for lid in sorted(wanted - found)]
    success = 0
    now = datetime.utcnow()

    for listing in rows:
        if action == "activate":
            listing.status = "active"
        elif action == "deactivate":
            listing.status = "inactive"
        elif action == "mark_sold":
            listing.status = "sold"
        elif action == "delete":
            delete_listing_rows(listing)
            success += 1
            continue
        elif action == "update_price":
            problem = _apply_price_update(listing, params)
            if problem:
                errors.append({"listing_id": int(listing.id), "error": problem})
                continue
        elif action == "update_location":
            location = (params.get("location") or "").strip()
            if not location:
                errors.append({"listing_id": int(listing.id), "error": "location is required"})
                continue
            listing.location = location
        elif action == "extend_expiry":
            try:
                extend_expiry(listing, to_int(params.get("days"), 30) or 0, now)
            except ValueError as e:
                errors.append({"listing_id": int(listing.id), "error": str(e)})
                continue
        listing.updated_at = now
        success += 1

    log_event("listings_bulk_action", actor_user_id=user.id, subject_type="listing", metadata={"action": action, "count": success})
    db.session.commit()
    return jsonify({"ok": True, "action": action, "success_count": success, "error_count": len(errors), "errors": errors}), 200


@listings_bp.post("/expire")
def run_expiry():
    _admin, err = require_admin()
    if err is not None:
        return err
    result = expire_listings()
    return jsonify({"ok": True, **result}), 200

