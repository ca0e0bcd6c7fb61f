from __future__ import annotations

import csv
import io
from datetime import date, datetime, timedelta

from sqlalchemy import func

from carmarket.extensions import db
from carmarket.models import Commission, RentalBooking, RentalListing, Review
from carmarket.models._json import iso


# Bookings that count towards fleet revenue.
EARNING_BOOKING_STATUSES = ("CONFIRMED", "ACTIVE", "COMPLETED")
# Bookings that keep a vehicle on the road.
ON_HIRE_STATUSES = ("CONFIRMED", "ACTIVE")
TOP_PERFORMERS = 5

EXPORT_COLUMNS = [
    "id",
    "title",
    "make",
    "model",
    "year",
    "category",
    "location",
    "price_per_day",
    "seats",
    "is_active",
    "expires_at",
    "total_bookings",
    "total_revenue",
    "average_rating",
    "created_at",
]


def _booking_brief(booking: RentalBooking) -> dict:
    return {
        "id": int(booking.id),
        "user_id": int(booking.user_id),
        "start_date": iso(booking.start_date),
        "end_date": iso(booking.end_date),
        "total_price": float(booking.total_price or 0.0),
        "status": booking.status,
    }


def _percent_change(current: int, previous: int) -> float:
    if previous <= 0:
        return 100.0 if current > 0 else 0.0
    return round((current - previous) * 100.0 / previous, 1)


def vehicle_summaries(rental_ids: list[int], today: date | None = None) -> dict[int, dict]:
    """Booking, revenue and rating figures per rental id."""
    today = today or date.today()
    out = {
        int(rid): {"total_bookings": 0, "total_revenue": 0.0, "average_rating": 0.0, "current_booking": None, "upcoming_bookings": []}
        for rid in rental_ids
    }
    if not out:
        return out

    bookings = (
        RentalBooking.query.filter(RentalBooking.rental_listing_id.in_(list(out)), RentalBooking.status.in_(EARNING_BOOKING_STATUSES))
        .order_by(RentalBooking.start_date.asc(), RentalBooking.id.asc())
        .all()
    )
    for booking in bookings:
        summary = out[int(booking.rental_listing_id)]
        summary["total_bookings"] += 1
        summary["total_revenue"] += float(booking.total_price or 0.0)
        if booking.status not in ON_HIRE_STATUSES:
            continue
        if booking.start_date <= today <= booking.end_date:
            summary["current_booking"] = summary["current_booking"] or _booking_brief(booking)
        elif booking.start_date > today:
            summary["upcoming_bookings"].append(_booking_brief(booking))

    ratings = (
        db.session.query(Review.rental_listing_id, func.avg(Review.rating))
        .filter(Review.rental_listing_id.in_(list(out)))
        .group_by(Review.rental_listing_id)
        .all()
    )
    for rental_id, avg in ratings:
        out[int(rental_id)]["average_rating"] = round(float(avg or 0.0), 1)
    for summary in out.values():
        summary["total_revenue"] = round(summary["total_revenue"], 2)
    return out


def blocking_bookings(rental_ids: list[int], today: date | None = None) -> int:
    """Confirmed or active bookings that have not ended yet."""
    if not rental_ids:
        return 0
    today = today or date.today()
    return int(
        RentalBooking.query.filter(
            RentalBooking.rental_listing_id.in_(rental_ids),
            RentalBooking.status.in_(ON_HIRE_STATUSES),
            RentalBooking.end_date >= today,
        ).count()
    )


def _booking_count(rental_ids: list[int], start: datetime, end: datetime) -> int:
    if not rental_ids:
        return 0
    return int(
        RentalBooking.query.filter(
            RentalBooking.rental_listing_id.in_(rental_ids),
            RentalBooking.created_at >= start,
            RentalBooking.created_at < end,
        ).count()
    )


def fleet_stats(owner_id: int, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    rentals = RentalListing.query.filter_by(user_id=int(owner_id)).all()
    ids = [int(r.id) for r in rentals]
    summaries = vehicle_summaries(ids, now.date())

    total = len(rentals)
    live = sum(1 for r in rentals if r.is_live(now))
    on_hire = sum(1 for s in summaries.values() if s["current_booking"])

    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    monthly_revenue = 0.0
    if ids:
        monthly_revenue = float(
            db.session.query(func.coalesce(func.sum(RentalBooking.total_price), 0.0))
            .filter(
                RentalBooking.rental_listing_id.in_(ids),
                RentalBooking.status.in_(EARNING_BOOKING_STATUSES),
                RentalBooking.created_at >= month_start,
            )
            .scalar()
            or 0.0
        )

    recent = _booking_count(ids, now - timedelta(days=30), now + timedelta(seconds=1))
    previous = _booking_count(ids, now - timedelta(days=60), now - timedelta(days=30))

    average_rating = 0.0
    if ids:
        avg = db.session.query(func.avg(Review.rating)).filter(Review.rental_listing_id.in_(ids)).scalar()
        average_rating = round(float(avg or 0.0), 1)

    commission_rows = (
        db.session.query(Commission.status, func.coalesce(func.sum(Commission.commission_minor), 0))
        .filter(Commission.user_id == int(owner_id), Commission.type == "rental")
        .group_by(Commission.status)
        .all()
    )
    commissions = {str(status): round(int(total or 0) / 100.0, 2) for status, total in commission_rows}

    by_title = {int(r.id): r.title or "" for r in rentals}
    top = sorted(summaries.items(), key=lambda item: (-item[1]["total_revenue"], item[0]))[:TOP_PERFORMERS]
    return {
        "total_vehicles": total,
        "active_vehicles": live,
        "inactive_vehicles": total - live,
        "rented_vehicles": on_hire,
        "utilization_rate": round(on_hire * 100.0 / total, 1) if total else 0.0,
        "total_bookings": sum(s["total_bookings"] for s in summaries.values()),
        "total_revenue": round(sum(s["total_revenue"] for s in summaries.values()), 2),
        "monthly_revenue": round(monthly_revenue, 2),
        "average_rating": average_rating,
        "bookings_last_30_days": recent,
        "booking_growth_rate": _percent_change(recent, previous),
        "commissions": commissions,
        "top_performers": [
            {
                "id": rental_id,
                "title": by_title.get(rental_id, ""),
                "total_revenue": summary["total_revenue"],
                "total_bookings": summary["total_bookings"],
                "average_rating": summary["average_rating"],
            }
            for rental_id, summary in top
        ],
        "last_updated": now.isoformat(),
    }


def fleet_csv(rentals: list[RentalListing], summaries: dict[int, dict]) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_COLUMNS)
    for rental in rentals:
        summary = summaries.get(int(rental.id)) or {}
        writer.writerow(
            [
                rental.id,
                rental.title or "",
                rental.make or "",
                rental.model or "",
                int(rental.year or 0),
                rental.category or "",
                rental.location or "",
                f"{float(rental.price_per_day or 0.0):.2f}",
                int(rental.seats or 0),
                int(bool(rental.is_active)),
                rental.expires_at.isoformat() if rental.expires_at else "",
                summary.get("total_bookings", 0),
                f"{float(summary.get('total_revenue', 0.0)):.2f}",
                summary.get("average_rating", 0.0),
                rental.created_at.isoformat() if rental.created_at else "",
            ]
        )
    return output.getvalue()
