from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from carmarket.extensions import db
from carmarket.models import Favorite, Listing, Payment, PricingRule, RentalListing, Review
from carmarket.services.notification_service import notify
from carmarket.services.pricing import expiry_days
from carmarket.services.subscription_service import expire_subscriptions
from carmarket.utils.events import log_event


MAX_EXTEND_DAYS = 365


def compute_expiry(listing_type: str, now: datetime | None = None) -> datetime:
    now = now or datetime.utcnow()
    return now + timedelta(days=expiry_days(listing_type))


def extend_expiry(item, days: int, now: datetime | None = None) -> datetime:
    """Push expiry out from max(current expiry, now); revives expired items."""
    days = int(days)
    if days < 1 or days > MAX_EXTEND_DAYS:
        raise ValueError(f"days must be between 1 and {MAX_EXTEND_DAYS}")
    now = now or datetime.utcnow()
    base = item.expires_at if item.expires_at and item.expires_at > now else now
    item.expires_at = base + timedelta(days=days)
    if isinstance(item, Listing):
        if item.status == "expired":
            item.status = "active"
    elif isinstance(item, RentalListing):
        item.is_active = True
    item.updated_at = now
    db.session.add(item)
    return item.expires_at


def expire_listings(now: datetime | None = None) -> dict:
    """Mark lapsed listings and rentals expired and drop lapsed paid tiers."""
    now = now or datetime.utcnow()
    expired_listings = 0
    expired_rentals = 0
    downgraded = 0

    rows = Listing.query.filter(Listing.status == "active", Listing.expires_at.isnot(None), Listing.expires_at <= now).all()
    for row in rows:
        row.status = "expired"
        row.updated_at = now
        notify(
            row.user_id,
            "listing",
            "Listing expired",
            f"Your listing '{row.title}' has expired. Extend it to make it visible again.",
            meta={"listing_id": int(row.id)},
            email=True,
        )
        log_event("listing_expired", actor_user_id=row.user_id, subject_type="listing", subject_id=row.id)
        expired_listings += 1

    rentals = RentalListing.query.filter(
        RentalListing.is_active.is_(True), RentalListing.expires_at.isnot(None), RentalListing.expires_at <= now
    ).all()
    for row in rentals:
        row.is_active = False
        row.updated_at = now
        notify(
            row.user_id,
            "listing",
            "Rental listing expired",
            f"Your rental listing '{row.title}' has expired.",
            meta={"rental_listing_id": int(row.id)},
            email=True,
        )
        log_event("rental_listing_expired", actor_user_id=row.user_id, subject_type="rental_listing", subject_id=row.id)
        expired_rentals += 1

    for model in (Listing, RentalListing):
        lapsed = model.query.filter(
            model.listing_type != "free", model.premium_expires_at.isnot(None), model.premium_expires_at <= now
        ).all()
        for row in lapsed:
            row.listing_type = "free"
            row.premium_expires_at = None
            row.updated_at = now
            downgraded += 1

    expired_subscriptions = expire_subscriptions(now)

    db.session.commit()
    result = {
        "expired_listings": expired_listings,
        "expired_rentals": expired_rentals,
        "downgraded": downgraded,
        "expired_subscriptions": expired_subscriptions,
    }
    current_app.logger.info("expire_listings_done %s", result)
    return result


def delete_listing_rows(item) -> None:
    """Delete a listing or rental and detach rows that reference it."""
    if isinstance(item, Listing):
        Favorite.query.filter_by(listing_id=item.id).delete(synchronize_session=False)
        Payment.query.filter_by(listing_id=item.id).update({"listing_id": None}, synchronize_session=False)
        Review.query.filter_by(listing_id=item.id).update({"listing_id": None}, synchronize_session=False)
    else:
        Favorite.query.filter_by(rental_listing_id=item.id).delete(synchronize_session=False)
        Payment.query.filter_by(rental_listing_id=item.id).update({"rental_listing_id": None}, synchronize_session=False)
        Review.query.filter_by(rental_listing_id=item.id).update({"rental_listing_id": None}, synchronize_session=False)
        PricingRule.query.filter_by(rental_listing_id=item.id).delete(synchronize_session=False)
    db.session.delete(item)
