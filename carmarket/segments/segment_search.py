from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta

from flask import Blueprint, jsonify, request
from sqlalchemy import and_, case, func, or_

from carmarket.extensions import db
from carmarket.models import Listing, PlatformEvent, RentalListing
from carmarket.utils.auth import current_user
from carmarket.utils.events import log_event
from carmarket.utils.http import csv_arg, error_response, paginate, pagination_args, to_bool, to_float, to_int


search_bp = Blueprint("search_bp", __name__, url_prefix="/api/search")

_SEARCH_FIELDS = ("title", "make", "model", "description", "location")
_TIER_RANK = case(
    (Listing.listing_type == "spotlight", 4),
    (Listing.listing_type == "premium", 3),
    (Listing.listing_type == "featured", 2),
    else_=1,
)
_SORTS = {
    "price": Listing.price,
    "year": Listing.year,
    "mileage": Listing.mileage,
    "created_at": Listing.created_at,
    "views": Listing.views,
}
SUGGESTION_TYPES = ("all", "makes", "models", "locations")
TRENDING_WINDOW_DAYS = 7


def _terms(raw: str) -> list[str]:
    return [t for t in (raw or "").strip().split() if t]


def _term_filter(model, term: str):
    like = f"%{term}%"
    return or_(*[getattr(model, field).ilike(like) for field in _SEARCH_FIELDS])


def _live_listings(now: datetime):
    return Listing.query.filter(Listing.status == "active", or_(Listing.expires_at.is_(None), Listing.expires_at > now))


def _range(q, column, low, high):
    if low is not None:
        q = q.filter(column >= low)
    if high is not None:
        q = q.filter(column <= high)
    return q


def _facet(q, column) -> list[dict]:
    rows = (
        q.with_entities(column, func.count(Listing.id))
        .filter(column.isnot(None))
        .group_by(column)
        .order_by(func.count(Listing.id).desc())
        .limit(20)
        .all()
    )
    return [{"value": value, "count": int(count)} for value, count in rows if value]


@search_bp.get("")
def search():
    now = datetime.utcnow()
    args = request.args
    query_text = (args.get("q") or "").strip()
    terms = _terms(query_text)

    q = _live_listings(now)
    if terms:
        q = q.filter(and_(*[_term_filter(Listing, t) for t in terms]))
    for field in ("make", "model"):
        value = (args.get(field) or "").strip()
        if value:
            q = q.filter(getattr(Listing, field).ilike(f"%{value}%"))
    location = (args.get("location") or "").strip()
    if location:
        q = q.filter(Listing.location.ilike(f"%{location}%"))
    for field in ("body_type", "fuel_type", "transmission", "condition", "listing_type"):
        values = [v.lower() for v in csv_arg(field)]
        if values:
            q = q.filter(func.lower(getattr(Listing, field)).in_(values))
    q = _range(q, Listing.price, to_float(args.get("min_price")), to_float(args.get("max_price")))
    q = _range(q, Listing.year, to_int(args.get("min_year")), to_int(args.get("max_year")))
    q = _range(q, Listing.mileage, to_int(args.get("min_mileage")), to_int(args.get("max_mileage")))

    facets = {
        "make": _facet(q, Listing.make),
        "body_type": _facet(q, Listing.body_type),
        "fuel_type": _facet(q, Listing.fuel_type),
    }

    sort_by = (args.get("sort_by") or "relevance").strip().lower()
    direction = (args.get("sort_order") or "desc").strip().lower()
    if sort_by in _SORTS:
        column = _SORTS[sort_by]
        q = q.order_by(column.asc() if direction == "asc" else column.desc(), Listing.id.desc())
    else:
        sort_by = "relevance"
        q = q.order_by(_TIER_RANK.desc(), Listing.views.desc(), Listing.created_at.desc(), Listing.id.desc())

    page, limit = pagination_args(default_limit=20)
    rows, meta = paginate(q, page, limit)
    results = [dict(r.to_dict(), kind="sale") for r in rows]

    rentals = []
    if to_bool(args.get("include_rentals")):
        rq = RentalListing.query.filter(
            RentalListing.is_active.is_(True), or_(RentalListing.expires_at.is_(None), RentalListing.expires_at > now)
        )
        if terms:
            rq = rq.filter(and_(*[_term_filter(RentalListing, t) for t in terms]))
        if location:
            rq = rq.filter(RentalListing.location.ilike(f"%{location}%"))
        rentals = [dict(r.to_dict(), kind="rental") for r in rq.order_by(RentalListing.created_at.desc()).limit(limit).all()]

    user = current_user()
    log_event(
        "search_performed",
        actor_user_id=user.id if user else None,
        subject_type="search",
        metadata={"query": query_text.lower(), "results": meta["total"], "sort_by": sort_by},
    )
    db.session.commit()

    return jsonify(
        {
            "ok": True,
            "results": results,
            "rentals": rentals,
            "pagination": meta,
            "facets": facets,
            "search_info": {"query": query_text, "terms": terms, "sort_by": sort_by, "total_results": meta["total"]},
        }
    ), 200


@search_bp.get("/suggestions")
def suggestions():
    query_text = (request.args.get("q") or "").strip()
    if not query_text:
        return error_response("q is required", 400)
    kind = (request.args.get("type") or "all").strip().lower()
    if kind not in SUGGESTION_TYPES:
        return error_response(f"type must be one of {', '.join(SUGGESTION_TYPES)}", 400)
    limit = max(1, min(20, to_int(request.args.get("limit"), 10) or 10))

    now = datetime.utcnow()
    like = f"%{query_text}%"
    out: dict = {}
    columns = {"makes": Listing.make, "models": Listing.model, "locations": Listing.location}
    for key, column in columns.items():
        if kind not in ("all", key):
            continue
        rows = (
            _live_listings(now)
            .with_entities(column, func.count(Listing.id))
            .filter(column.ilike(like))
            .group_by(column)
            .order_by(func.count(Listing.id).desc(), column.asc())
            .limit(limit)
            .all()
        )
        out[key] = [{"value": value, "count": int(count)} for value, count in rows if value]
    return jsonify({"ok": True, "query": query_text, "suggestions": out}), 200


@search_bp.get("/trending")
def trending():
    since = datetime.utcnow() - timedelta(days=TRENDING_WINDOW_DAYS)
    events = (
        PlatformEvent.query.filter(PlatformEvent.event_type == "search_performed", PlatformEvent.created_at >= since)
        .order_by(PlatformEvent.created_at.desc())
        .limit(5000)
        .all()
    )
    counts: Counter = Counter()
    for event in events:
        query_text = str(event.metadata_dict().get("query") or "").strip()
        if query_text:
            counts[query_text] += 1

    now = datetime.utcnow()
    makes = (
        _live_listings(now)
        .with_entities(Listing.make, func.count(Listing.id))
        .group_by(Listing.make)
        .order_by(func.count(Listing.id).desc())
        .limit(10)
        .all()
    )
    return jsonify(
        {
            "ok": True,
            "window_days": TRENDING_WINDOW_DAYS,
            "searches": [{"query": q, "count": c} for q, c in counts.most_common(10)],
            "makes": [{"make": m, "count": int(c)} for m, c in makes if m],
        }
    ), 200
