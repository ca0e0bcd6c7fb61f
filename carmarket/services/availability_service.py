from __future__ import annotations

from datetime import date, timedelta

from carmarket.models import PricingRule, RentalBooking, RentalListing
from carmarket.models.rental import BLOCKING_BOOKING_STATUSES


def daterange(start: date, end: date):
    """Yield every day from start to end inclusive."""
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)


def rental_days(start: date, end: date) -> int:
    return max(1, (end - start).days)


def overlapping_bookings(rental_listing_id: int, start: date, end: date, *, exclude_id: int | None = None) -> list[RentalBooking]:
    q = RentalBooking.query.filter(
        RentalBooking.rental_listing_id == int(rental_listing_id),
        RentalBooking.status.in_(BLOCKING_BOOKING_STATUSES),
        RentalBooking.start_date <= end,
        RentalBooking.end_date >= start,
    )
    if exclude_id is not None:
        q = q.filter(RentalBooking.id != int(exclude_id))
    return q.order_by(RentalBooking.start_date.asc()).all()


def booked_dates(rental_listing_id: int, start: date, end: date) -> list[dict]:
    rows = []
    for booking in overlapping_bookings(rental_listing_id, start, end):
        for day in daterange(booking.start_date, booking.end_date):
            if start <= day <= end:
                rows.append({"date": day.isoformat(), "booking_id": int(booking.id), "status": booking.status})
    return rows


def active_rules(rental_listing_id: int, start: date | None = None, end: date | None = None) -> list[PricingRule]:
    q = PricingRule.query.filter(PricingRule.rental_listing_id == int(rental_listing_id), PricingRule.is_active.is_(True))
    if start is not None and end is not None:
        q = q.filter(PricingRule.start_date <= end, PricingRule.end_date >= start)
    return q.order_by(PricingRule.priority.asc(), PricingRule.id.asc()).all()


def price_for_day(base_price: float, rules: list[PricingRule], day: date) -> float:
    """Highest-priority covering rule wins; a fixed price beats a multiplier."""
    covering = [r for r in rules if r.covers(day)]
    if not covering:
        return round(float(base_price), 2)
    top = max(int(r.priority or 0) for r in covering)
    winners = [r for r in covering if int(r.priority or 0) == top]
    fixed = [r for r in winners if r.price_per_day is not None]
    if fixed:
        return round(float(fixed[-1].price_per_day), 2)
    multiplied = [r for r in winners if r.multiplier is not None]
    if multiplied:
        return round(float(base_price) * float(multiplied[-1].multiplier), 2)
    return round(float(base_price), 2)


def quote(rental: RentalListing, start: date, end: date) -> dict:
    rules = active_rules(rental.id, start, end)
    days = rental_days(start, end)
    breakdown = []
    total = 0.0
    for offset in range(days):
        day = start + timedelta(days=offset)
        price = price_for_day(rental.price_per_day, rules, day)
        breakdown.append({"date": day.isoformat(), "price": price})
        total += price
    return {"days": days, "total_price": round(total, 2), "breakdown": breakdown}


def blocked_conflicts(rental: RentalListing, start: date, end: date) -> list[str]:
    blocked = set(rental.blocked_dates)
    return [d.isoformat() for d in daterange(start, end) if d.isoformat() in blocked]


def check_availability(rental: RentalListing, start: date, end: date, *, exclude_id: int | None = None) -> dict:
    bookings = overlapping_bookings(rental.id, start, end, exclude_id=exclude_id)
    blocked = blocked_conflicts(rental, start, end)
    outside_window = bool(
        (rental.available_from and start < rental.available_from) or (rental.available_to and end > rental.available_to)
    )
    return {
        "available": not bookings and not blocked and not outside_window,
        "conflicts": [
            {"booking_id": int(b.id), "start_date": b.start_date.isoformat(), "end_date": b.end_date.isoformat(), "status": b.status}
            for b in bookings
        ],
        "blocked_dates": blocked,
        "outside_window": outside_window,
    }


def calendar(rental: RentalListing, start: date, end: date) -> list[dict]:
    rules = active_rules(rental.id, start, end)
    booked = {row["date"] for row in booked_dates(rental.id, start, end)}
    blocked = set(rental.blocked_dates)
    days = []
    for day in daterange(start, end):
        key = day.isoformat()
        in_window = not ((rental.available_from and day < rental.available_from) or (rental.available_to and day > rental.available_to))
        days.append(
            {
                "date": key,
                "available": in_window and key not in booked and key not in blocked,
                "booked": key in booked,
                "blocked": key in blocked,
                "price": price_for_day(rental.price_per_day, rules, day),
            }
        )
    return days
