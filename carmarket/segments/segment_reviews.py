from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify, request

from carmarket.extensions import db
from carmarket.models import Listing, RentalListing, Review, User
from carmarket.services.notification_service import notify
from carmarket.services.rating_service import average_rating
from carmarket.utils.auth import current_user, is_admin, owns
from carmarket.utils.http import error_response, forbidden, json_body, not_found, paginate, pagination_args, to_int, unauthorized


reviews_bp = Blueprint("reviews_bp", __name__, url_prefix="/api/reviews")


def _valid_rating(value) -> int | None:
    rating = to_int(value)
    if rating is None or rating < 1 or rating > 5:
        return None
    return rating


def _with_reviewer(row: Review) -> dict:
    return row.to_dict(reviewer=db.session.get(User, int(row.reviewer_id)))


@reviews_bp.post("")
def create_review():
    user = current_user()
    if not user:
        return unauthorized()
    data = json_body()
    target_id = to_int(data.get("target_id"))
    rating = _valid_rating(data.get("rating"))
    listing_id = to_int(data.get("listing_id"))
    rental_listing_id = to_int(data.get("rental_listing_id"))
    if target_id is None:
        return error_response("target_id is required", 400)
    if rating is None:
        return error_response("rating must be an integer between 1 and 5", 400)
    if int(target_id) == int(user.id):
        return error_response("You cannot review yourself", 400)
    target = db.session.get(User, target_id)
    if not target:
        return not_found("User")
    if listing_id is not None and not db.session.get(Listing, listing_id):
        return not_found("Listing")
    if rental_listing_id is not None and not db.session.get(RentalListing, rental_listing_id):
        return not_found("Rental listing")

    duplicate = Review.query.filter_by(
        reviewer_id=int(user.id), target_id=target_id, listing_id=listing_id, rental_listing_id=rental_listing_id
    ).first()
    if duplicate:
        return error_response("You have already reviewed this", 400)

    row = Review(
        reviewer_id=int(user.id),
        target_id=target_id,
        listing_id=listing_id,
        rental_listing_id=rental_listing_id,
        rating=rating,
        comment=(data.get("comment") or "").strip() or None,
    )
    db.session.add(row)
    db.session.flush()
    notify(target_id, "social", "New review", f"{user.name or 'Someone'} left you a {rating}-star review.", meta={"review_id": int(row.id)})
    db.session.commit()
    return jsonify({"ok": True, "review": _with_reviewer(row)}), 201


@reviews_bp.get("")
def list_reviews():
    target_id = to_int(request.args.get("target_id"))
    listing_id = to_int(request.args.get("listing_id"))
    rental_listing_id = to_int(request.args.get("rental_listing_id"))
    q = Review.query
    if target_id is not None:
        q = q.filter(Review.target_id == target_id)
    if listing_id is not None:
        q = q.filter(Review.listing_id == listing_id)
    if rental_listing_id is not None:
        q = q.filter(Review.rental_listing_id == rental_listing_id)
    page, limit = pagination_args(default_limit=10)
    rows, meta = paginate(q.order_by(Review.created_at.desc(), Review.id.desc()), page, limit)
    body = {"ok": True, "items": [_with_reviewer(r) for r in rows], "pagination": meta}
    if target_id is not None:
        body["average_rating"] = average_rating(target_id)
    return jsonify(body), 200


@reviews_bp.get("/<int:review_id>")
def get_review(review_id: int):
    row = db.session.get(Review, int(review_id))
    if not row:
        return not_found("Review")
    return jsonify({"ok": True, "review": _with_reviewer(row)}), 200


@reviews_bp.patch("/<int:review_id>")
def update_review(review_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    row = db.session.get(Review, int(review_id))
    if not row:
        return not_found("Review")
    if not owns(user, row.reviewer_id):
        return forbidden()
    data = json_body()
    if "rating" in data:
        rating = _valid_rating(data.get("rating"))
        if rating is None:
            return error_response("rating must be an integer between 1 and 5", 400)
        row.rating = rating
    if "comment" in data:
        row.comment = (data.get("comment") or "").strip() or None
    row.updated_at = datetime.utcnow()
    db.session.commit()
    return jsonify({"ok": True, "review": _with_reviewer(row)}), 200


@reviews_bp.delete("/<int:review_id>")
def delete_review(review_id: int):
    user = current_user()
    if not user:
        return unauthorized()
    row = db.session.get(Review, int(review_id))
    if not row:
        return not_found("Review")
    if not (owns(user, row.reviewer_id) or is_admin(user)):
        return forbidden()
    db.session.delete(row)
    db.session.commit()
    return jsonify({"ok": True}), 200
