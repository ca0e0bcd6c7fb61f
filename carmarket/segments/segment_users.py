from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify, request
from sqlalchemy import func

from carmarket.extensions import db
from carmarket.models import (
    Favorite,
    Listing,
    Notification,
    RentalBooking,
    RentalCompany,
    RentalListing,
    User,
)
from carmarket.services.notification_service import get_settings
from carmarket.services.rating_service import rating_summary
from carmarket.services.subscription_service import current_subscription, usage_summary
from carmarket.services.user_service import deactivate_account
from carmarket.utils.auth import current_user
from carmarket.utils.events import log_event
from carmarket.utils.http import error_response, json_body, not_found, paginate, pagination_args, to_int, unauthorized
from carmarket.utils.phone import is_valid_kenyan_phone, to_international


users_bp = Blueprint("users_bp", __name__, url_prefix="/api")

_PROFILE_FIELDS = ("name", "location", "bio", "image_url")


@users_bp.get("/user/profile")
def get_profile():
    user = current_user()
    if not user:
        return unauthorized()
    return jsonify({"ok": True, "user": user.to_dict()}), 200


@users_bp.patch("/user/profile")
def update_profile():
    user = current_user()
    if not user:
        return unauthorized()
    data = json_body()
    if "name" in data and not (str(data.get("name") or "")).strip():
        return error_response("Name cannot be empty", 400)
    for field in _PROFILE_FIELDS:
        if field in data:
            setattr(user, field, (str(data.get(field) or "")).strip() or None)
    if "phone" in data:
        phone = (data.get("phone") or "").strip()
        if phone:
            if not is_valid_kenyan_phone(phone):
                return error_response("Invalid Kenyan phone number", 400)
            phone = to_international(phone)
            if User.query.filter(User.phone == phone, User.id != int(user.id)).first():
                return error_response("Phone already in use", 409)
        if (phone or None) != user.phone:
            user.phone = phone or None
            user.phone_verified = False
    user.updated_at = datetime.utcnow()
    db.session.commit()
    return jsonify({"ok": True, "user": user.to_dict()}), 200


@users_bp.post("/user/change-password")
def change_password():
    user = current_user()
    if not user:
        return unauthorized()
    data = json_body()
    current = data.get("current_password") or ""
    new = data.get("new_password") or ""
    if not current or not new:
        return error_response("current_password and new_password are required", 400)
    if not user.check_password(current):
        return error_response("Current password is incorrect", 400)
    if len(new) < 8:
        return error_response("Password must be at least 8 characters", 400)
    user.set_password(new)
    user.updated_at = datetime.utcnow()
    log_event("password_changed", actor_user_id=user.id, subject_type="user", subject_id=user.id, severity="WARN")
    db.session.commit()
    return jsonify({"ok": True, "message": "Password updated"}), 200


@users_bp.delete("/user/account")
def delete_account():
    user = current_user()
    if not user:
        return unauthorized()
    deactivate_account(user)
    log_event("account_deactivated", actor_user_id=user.id, subject_type="user", subject_id=user.id, severity="WARN")
    db.session.commit()
    return jsonify({"ok": True, "message": "Account deactivated"}), 200


@users_bp.get("/user/listings")
def my_listings():
    user = current_user()
    if not user:
        return unauthorized()
    page, limit = pagination_args()
    q = Listing.query.filter(Listing.user_id == int(user.id))
    status = (request.args.get("status") or "").strip().lower()
    if status:
        q = q.filter(Listing.status == status)
    rows, meta = paginate(q.order_by(Listing.created_at.desc()), page, limit)
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows], "pagination": meta}), 200


@users_bp.get("/user/bookings")
def my_bookings():
    user = current_user()
    if not user:
        return unauthorized()
    page, limit = pagination_args()
    q = RentalBooking.query.filter(RentalBooking.user_id == int(user.id))
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(RentalBooking.status == status)
    rows, meta = paginate(q.order_by(RentalBooking.created_at.desc()), page, limit)
    items = []
    for row in rows:
        data = row.to_dict()
        rental = db.session.get(RentalListing, int(row.rental_listing_id))
        data["rental_listing"] = {"id": rental.id, "title": rental.title, "images": rental.images} if rental else None
        items.append(data)
    return jsonify({"ok": True, "items": items, "pagination": meta}), 200


@users_bp.get("/user/dashboard")
def dashboard():
    user = current_user()
    if not user:
        return unauthorized()
    uid = int(user.id)
    by_status = dict(
        db.session.query(Listing.status, func.count(Listing.id)).filter(Listing.user_id == uid).group_by(Listing.status).all()
    )
    views, contacts = (
        db.session.query(func.coalesce(func.sum(Listing.views), 0), func.coalesce(func.sum(Listing.contact_count), 0))
        .filter(Listing.user_id == uid)
        .one()
    )
    owned_rental_ids = [r.id for r in RentalListing.query.with_entities(RentalListing.id).filter_by(user_id=uid).all()]
    received = 0
    if owned_rental_ids:
        received = RentalBooking.query.filter(RentalBooking.rental_listing_id.in_(owned_rental_ids)).count()
    unread = Notification.query.filter_by(user_id=uid, channel="in_app", is_read=False).count()
    sub = current_subscription(uid)
    return jsonify(
        {
            "ok": True,
            "listings": {
                "total": int(sum(by_status.values())),
                "by_status": {str(k): int(v) for k, v in by_status.items()},
                "views": int(views or 0),
                "contacts": int(contacts or 0),
            },
            "rentals": {"total": len(owned_rental_ids), "bookings_received": int(received)},
            "bookings": {"made": RentalBooking.query.filter_by(user_id=uid).count()},
            "favorites": Favorite.query.filter_by(user_id=uid).count(),
            "unread_notifications": int(unread),
            "subscription": sub.to_dict() if sub else None,
            "usage": usage_summary(uid),
        }
    ), 200


@users_bp.get("/user/favorites")
def list_favorites():
    user = current_user()
    if not user:
        return unauthorized()
    rows = Favorite.query.filter_by(user_id=int(user.id)).order_by(Favorite.created_at.desc()).all()
    items = []
    for row in rows:
        data = row.to_dict()
        if row.listing_id is not None:
            listing = db.session.get(Listing, int(row.listing_id))
            data["listing"] = listing.to_dict() if listing else None
        if row.rental_listing_id is not None:
            rental = db.session.get(RentalListing, int(row.rental_listing_id))
            data["rental_listing"] = rental.to_dict() if rental else None
        items.append(data)
    return jsonify({"ok": True, "items": items}), 200


@users_bp.post("/user/favorites")
def add_favorite():
    user = current_user()
    if not user:
        return unauthorized()
    data = json_body()
    listing_id = to_int(data.get("listing_id"))
    rental_listing_id = to_int(data.get("rental_listing_id"))
    if (listing_id is None) == (rental_listing_id is None):
        return error_response("Provide exactly one of listing_id or rental_listing_id", 400)
    if listing_id is not None and not db.session.get(Listing, listing_id):
        return not_found("Listing")
    if rental_listing_id is not None and not db.session.get(RentalListing, rental_listing_id):
        return not_found("Rental listing")
    existing = Favorite.query.filter_by(user_id=int(user.id), listing_id=listing_id, rental_listing_id=rental_listing_id).first()
    if existing:
        return error_response("Already in favorites", 409)
    row = Favorite(user_id=int(user.id), listing_id=listing_id, rental_listing_id=rental_listing_id)
    db.session.add(row)
    db.session.commit()
    return jsonify({"ok": True, "favorite": row.to_dict()}), 201


@users_bp.delete("/user/favorites/<int:favorite_id>")
def remove_favorite(favorite_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    row = Favorite.query.filter_by(id=int(favorite_id), user_id=int(user.id)).first()
    if not row:
        return not_found("Favorite")
    db.session.delete(row)
    db.session.commit()
    return jsonify({"ok": True}), 200


@users_bp.get("/user/notification-settings")
def get_notification_settings():
    user = current_user()
    if not user:
        return unauthorized()
    settings = get_settings(user.id)
    db.session.commit()
    return jsonify({"ok": True, "settings": settings.to_dict()}), 200


@users_bp.put("/user/notification-settings")
def update_notification_settings():
    user = current_user()
    if not user:
        return unauthorized()
    data = json_body()
    settings = get_settings(user.id)
    for name in settings.TOGGLES:
        if name in data:
            value = data.get(name)
            if not isinstance(value, bool):
                return error_response(f"{name} must be a boolean", 400)
            setattr(settings, name, value)
    settings.updated_at = datetime.utcnow()
    db.session.commit()
    return jsonify({"ok": True, "settings": settings.to_dict()}), 200


@users_bp.get("/user/verification")
def verification_status():
    user = current_user()
    if not user:
        return unauthorized()
    company = RentalCompany.query.filter_by(user_id=int(user.id)).first()
    return jsonify(
        {
            "ok": True,
            "email_verified": bool(user.is_verified),
            "phone_verified": bool(user.phone_verified),
            "company": company.to_dict() if company else None,
        }
    ), 200


@users_bp.post("/user/verification")
def submit_verification():
    user = current_user()
    if not user:
        return unauthorized()
    if (user.role or "") != "rental_company":
        return error_response("Only rental companies can submit business verification", 403)
    data = json_body()
    company_name = (data.get("company_name") or "").strip()
    if not company_name:
        return error_response("company_name is required", 400)
    company = RentalCompany.query.filter_by(user_id=int(user.id)).first()
    created = company is None
    if created:
        company = RentalCompany(user_id=int(user.id), company_name=company_name)
        db.session.add(company)
    for field in ("company_name", "business_registration", "kra_pin", "phone", "email", "address"):
        if field in data:
            setattr(company, field, (str(data.get(field) or "")).strip() or None)
    company.verification_status = "PENDING"
    company.is_verified = False
    company.updated_at = datetime.utcnow()
    db.session.flush()
    log_event("company_verification_submitted", actor_user_id=user.id, subject_type="rental_company", subject_id=company.id)
    db.session.commit()
    return jsonify({"ok": True, "company": company.to_dict()}), 201 if created else 200


@users_bp.get("/users/<int:user_id>/ratings")
def user_ratings(user_id: int):
    target = db.session.get(User, int(user_id))
    if not target:
        return not_found("User")
    summary = rating_summary(int(user_id))
    summary["user"] = target.public_dict()
    return jsonify({"ok": True, **summary}), 200
