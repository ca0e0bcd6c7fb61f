from __future__ import annotations

import math
from datetime import date, datetime

from flask import Blueprint, Response, jsonify, request

from carmarket.extensions import db
from carmarket.models import RentalBooking, RentalListing
from carmarket.segments.segment_rentals import RENTAL_CATEGORIES
from carmarket.services.fleet_service import blocking_bookings, fleet_csv, fleet_stats, vehicle_summaries
from carmarket.services.listing_service import delete_listing_rows
from carmarket.utils.auth import current_user, is_admin, owns
from carmarket.utils.events import log_event
from carmarket.utils.http import error_response, forbidden, json_body, paginate, pagination_args, to_float, to_int, unauthorized


fleet_bp = Blueprint("fleet_bp", __name__, url_prefix="/api/rental/fleet")

FLEET_BULK_ACTIONS = ("activate", "deactivate", "delete", "update_rates", "update_location", "update_category")
FLEET_STATUSES = ("all", "active", "inactive")
_SORT_COLUMNS = {
    "created_at": RentalListing.created_at,
    "updated_at": RentalListing.updated_at,
    "price_per_day": RentalListing.price_per_day,
    "year": RentalListing.year,
    "title": RentalListing.title,
}


def _fleet_owner():
    """Resolve whose fleet is requested. Admins may pass ``owner_id``."""
    user = current_user()
    if not user:
        return None, unauthorized()
    owner_id = to_int(request.args.get("owner_id"))
    if owner_id is None or owns(user, owner_id):
        return int(user.id), None
    if not is_admin(user):
        return None, forbidden()
    return owner_id, None


def _fleet_query(owner_id: int):
    q = RentalListing.query.filter(RentalListing.user_id == int(owner_id))
    status = (request.args.get("status") or "all").strip().lower()
    if status == "active":
        q = q.filter(RentalListing.is_active.is_(True))
    elif status == "inactive":
        q = q.filter(RentalListing.is_active.is_(False))
    category = (request.args.get("category") or "").strip().lower()
    if category and category != "all":
        q = q.filter(RentalListing.category == category)
    location = (request.args.get("location") or "").strip()
    if location and location.lower() != "all":
        q = q.filter(RentalListing.location.ilike(f"%{location}%"))
    return q


@fleet_bp.get("")
def list_fleet():
    owner_id, err = _fleet_owner()
    if err is not None:
        return err
    status = (request.args.get("status") or "all").strip().lower()
    if status not in FLEET_STATUSES:
        return error_response(f"status must be one of {', '.join(FLEET_STATUSES)}", 400)
    column = _SORT_COLUMNS.get((request.args.get("sort_by") or "updated_at").strip(), RentalListing.updated_at)
    direction = (request.args.get("sort_order") or "desc").strip().lower()
    q = _fleet_query(owner_id).order_by(column.asc() if direction == "asc" else column.desc(), RentalListing.id.desc())
    page, limit = pagination_args(default_limit=20)
    rows, meta = paginate(q, page, limit)
    summaries = vehicle_summaries([int(r.id) for r in rows])
    items = []
    for row in rows:
        data = row.to_dict()
        data.update(summaries.get(int(row.id)) or {})
        items.append(data)
    return jsonify({"ok": True, "items": items, "pagination": meta}), 200


@fleet_bp.get("/stats")
def stats():
    owner_id, err = _fleet_owner()
    if err is not None:
        return err
    return jsonify({"ok": True, "stats": fleet_stats(owner_id)}), 200


@fleet_bp.get("/export")
def export_fleet():
    owner_id, err = _fleet_owner()
    if err is not None:
        return err
    fmt = (request.args.get("format") or "csv").strip().lower()
    if fmt != "csv":
        return error_response("format must be csv", 400)
    rows = _fleet_query(owner_id).order_by(RentalListing.id.asc()).all()
    body = fleet_csv(rows, vehicle_summaries([int(r.id) for r in rows]))
    stamp = datetime.utcnow().strftime("%Y%m%d")
    return Response(
        body,
        mimetype="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="fleet-{stamp}.csv"',
            "Cache-Control": "no-store",
        },
    )


def _bulk_changes(action: str, params: dict) -> tuple[dict, str | None]:
    if action == "update_rates":
        price = to_float(params.get("price_per_day"))
        if price is None or not math.isfinite(price) or price <= 0:
            return {}, "price_per_day must be greater than 0"
        return {"price_per_day": price}, None
    if action == "update_location":
        location = (str(params.get("location") or "")).strip()
        if not location:
            return {}, "location is required"
        return {"location": location[:120]}, None
    if action == "update_category":
        category = (str(params.get("category") or "")).strip().lower()
        if category not in RENTAL_CATEGORIES:
            return {}, f"category must be one of {', '.join(RENTAL_CATEGORIES)}"
        return {"category": category}, None
    if action == "activate":
        return {"is_active": True}, None
    return {"is_active": False}, None


@fleet_bp.post("/bulk")
def bulk_fleet():
    user = current_user()
    if not user:
        return unauthorized()
    data = json_body()
    action = (data.get("action") or "").strip().lower()
    raw_ids = data.get("vehicle_ids")
    if action not in FLEET_BULK_ACTIONS:
        return error_response(f"action must be one of {', '.join(FLEET_BULK_ACTIONS)}", 400)
    if not isinstance(raw_ids, list) or not raw_ids:
        return error_response("vehicle_ids must be a non-empty list", 400)
    ids = {to_int(x) for x in raw_ids}
    if None in ids:
        return error_response("vehicle_ids must be integers", 400)
    params = data.get("data") if isinstance(data.get("data"), dict) else {}
    changes, problem = _bulk_changes(action, params)
    if problem:
        return error_response(problem, 400)

    rows = RentalListing.query.filter(RentalListing.id.in_(ids)).all()
    if len(rows) != len(ids) or not all(owns(user, r.user_id) or is_admin(user) for r in rows):
        return error_response("Some vehicles were not found or are not yours", 403)
    rental_ids = sorted(int(r.id) for r in rows)
    if action in ("deactivate", "delete"):
        on_hire = blocking_bookings(rental_ids, date.today())
        if on_hire:
            return error_response(f"Cannot {action} vehicles with {on_hire} active bookings", 400, error="ACTIVE_BOOKINGS")

    now = datetime.utcnow()
    body = {"ok": True, "action": action, "updated": len(rows)}
    if action == "delete":
        with_history = {
            int(rid) for (rid,) in db.session.query(RentalBooking.rental_listing_id).filter(RentalBooking.rental_listing_id.in_(rental_ids)).distinct()
        }
        deleted = 0
        for row in rows:
            # Booking history keeps the vehicle row; hide it instead.
            if int(row.id) in with_history:
                row.is_active = False
                row.updated_at = now
            else:
                delete_listing_rows(row)
                deleted += 1
        body.update(deleted=deleted, deactivated=len(rows) - deleted)
    else:
        for row in rows:
            for key, value in changes.items():
                setattr(row, key, value)
            row.updated_at = now
    log_event(
        f"fleet_bulk_{action}",
        actor_user_id=user.id,
        subject_type="rental_listing",
        metadata={"vehicle_ids": rental_ids, "changes": changes if action != "delete" else {}},
    )
    db.session.commit()
    return jsonify(body), 200
