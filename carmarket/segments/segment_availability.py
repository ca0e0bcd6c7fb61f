from __future__ import annotations

import calendar as month_calendar
from datetime import date, datetime

from flask import Blueprint, jsonify, request

from carmarket.extensions import db
from carmarket.models import PricingRule, RentalListing
from carmarket.services.availability_service import active_rules, booked_dates, calendar, check_availability, quote
from carmarket.utils.auth import current_user, is_admin, owns
from carmarket.utils.events import log_event
from carmarket.utils.http import error_response, forbidden, json_body, not_found, parse_date, to_float, to_int, unauthorized


availability_bp = Blueprint("availability_bp", __name__, url_prefix="/api/rental/availability")

MAX_RANGE_DAYS = 366


def _month_bounds(today: date) -> tuple[date, date]:
    last = month_calendar.monthrange(today.year, today.month)[1]
    return today.replace(day=1), today.replace(day=last)


def _parse_rules(raw) -> tuple[list[dict], str | None]:
    if not isinstance(raw, list):
        return [], "pricing_rules must be a list"
    rules = []
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            return [], f"pricing_rules[{idx}] must be an object"
        start = parse_date(item.get("start_date"))
        end = parse_date(item.get("end_date"))
        if start is None or end is None or end < start:
            return [], f"pricing_rules[{idx}] needs a valid start_date and end_date"
        price = to_float(item.get("price_per_day"))
        multiplier = to_float(item.get("multiplier"))
        if price is None and multiplier is None:
            return [], f"pricing_rules[{idx}] needs price_per_day or multiplier"
        if (price is not None and price <= 0) or (multiplier is not None and multiplier <= 0):
            return [], f"pricing_rules[{idx}] values must be positive"
        rules.append(
            {
                "name": (item.get("name") or "").strip()[:120],
                "start_date": start,
                "end_date": end,
                "price_per_day": price,
                "multiplier": multiplier,
                "priority": to_int(item.get("priority"), 0) or 0,
                "is_active": bool(item.get("is_active", True)),
            }
        )
    return rules, None


@availability_bp.get("/sync")
def get_availability():
    rental_id = to_int(request.args.get("rental_listing_id"))
    if rental_id is None:
        return error_response("rental_listing_id is required", 400)
    rental = db.session.get(RentalListing, rental_id)
    if not rental:
        return not_found("Rental listing")
    default_start, default_end = _month_bounds(date.today())
    start = parse_date(request.args.get("start")) or default_start
    end = parse_date(request.args.get("end")) or default_end
    if end < start:
        return error_response("end must be on or after start", 400)
    if (end - start).days > MAX_RANGE_DAYS:
        return error_response(f"Range cannot exceed {MAX_RANGE_DAYS} days", 400)
    return jsonify(
        {
            "ok": True,
            "rental_listing_id": int(rental.id),
            "start": start.isoformat(),
            "end": end.isoformat(),
            "booked_dates": booked_dates(rental.id, start, end),
            "blocked_dates": [d for d in rental.blocked_dates if start.isoformat() <= d <= end.isoformat()],
            "pricing_rules": [r.to_dict() for r in active_rules(rental.id, start, end)],
            "days": calendar(rental, start, end),
            "sync_time": datetime.utcnow().isoformat(),
        }
    ), 200


@availability_bp.post("/sync")
def sync_availability():
    user = current_user()
    if not user:
        return unauthorized()
    data = json_body()
    rental_id = to_int(data.get("rental_listing_id"))
    if rental_id is None:
        return error_response("rental_listing_id is required", 400)
    rental = db.session.get(RentalListing, rental_id)
    if not rental:
        return not_found("Rental listing")
    if not (owns(user, rental.user_id) or is_admin(user)):
        return forbidden()

    if "blocked_dates" in data:
        raw = data.get("blocked_dates")
        if not isinstance(raw, list):
            return error_response("blocked_dates must be a list", 400)
        parsed = [parse_date(x) for x in raw]
        if any(p is None for p in parsed):
            return error_response("blocked_dates must contain YYYY-MM-DD dates", 400)
        rental.blocked_dates = [p.isoformat() for p in parsed]

    if "pricing_rules" in data:
        rules, problem = _parse_rules(data.get("pricing_rules"))
        if problem:
            return error_response(problem, 400)
        PricingRule.query.filter_by(rental_listing_id=rental.id).delete(synchronize_session=False)
        for rule in rules:
            db.session.add(PricingRule(rental_listing_id=int(rental.id), **rule))

    rental.updated_at = datetime.utcnow()
    log_event("availability_synced", actor_user_id=user.id, subject_type="rental_listing", subject_id=rental.id)
    db.session.commit()
    return jsonify(
        {
            "ok": True,
            "rental_listing_id": int(rental.id),
            "blocked_dates": rental.blocked_dates,
            "pricing_rules": [r.to_dict() for r in active_rules(rental.id)],
        }
    ), 200


@availability_bp.post("/check")
def check():
    data = json_body()
    rental_id = to_int(data.get("rental_listing_id"))
    if rental_id is None:
        return error_response("rental_listing_id is required", 400)
    rental = db.session.get(RentalListing, rental_id)
    if not rental:
        return not_found("Rental listing")
    start = parse_date(data.get("start_date"))
    end = parse_date(data.get("end_date"))
    if start is None or end is None or end <= start:
        return error_response("start_date must be before end_date", 400)
    result = check_availability(rental, start, end)
    priced = quote(rental, start, end)
    return jsonify({"ok": True, **result, "days": priced["days"], "total_price": priced["total_price"], "breakdown": priced["breakdown"]}), 200
