from datetime import datetime

import sqlalchemy as sa

from carmarket.extensions import db
from carmarket.models._json import load_json, dump_json, iso


BOOKING_STATUSES = ("PENDING", "CONFIRMED", "ACTIVE", "COMPLETED", "CANCELLED", "DISPUTED")
BOOKING_PAYMENT_STATUSES = ("PENDING", "PAID", "FAILED", "REFUNDED", "PARTIALLY_REFUNDED")
# Bookings in these states hold the vehicle.
BLOCKING_BOOKING_STATUSES = ("PENDING", "CONFIRMED", "ACTIVE")


class RentalListing(db.Model):
    __tablename__ = "rental_listings"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    title = db.Column(db.String(160), nullable=False)
    description = db.Column(db.Text, nullable=True)
    make = db.Column(db.String(80), nullable=False, index=True)
    model = db.Column(db.String(80), nullable=False, index=True)
    year = db.Column(db.Integer, nullable=False)
    category = db.Column(db.String(32), nullable=False, default="economy", server_default="economy", index=True)

    price_per_day = db.Column(db.Float, nullable=False)
    seats = db.Column(db.Integer, nullable=False, default=5)
    transmission = db.Column(db.String(32), nullable=True)
    fuel_type = db.Column(db.String(32), nullable=True)
    location = db.Column(db.String(120), nullable=True, index=True)

    features_json = db.Column(db.Text, nullable=True)
    images_json = db.Column(db.Text, nullable=True)

    min_rental_days = db.Column(db.Integer, nullable=False, default=1)
    max_rental_days = db.Column(db.Integer, nullable=True)
    available_from = db.Column(db.Date, nullable=True)
    available_to = db.Column(db.Date, nullable=True)
    blocked_dates_json = db.Column(db.Text, nullable=True)

    listing_type = db.Column(db.String(24), nullable=False, default="free", server_default="free")
    is_active = db.Column(db.Boolean, nullable=False, default=True, server_default=sa.text("true"), index=True)
    views = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    expires_at = db.Column(db.DateTime, nullable=True, index=True)
    premium_expires_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def features(self) -> list:
        return load_json(self.features_json, [])

    @features.setter
    def features(self, value) -> None:
        self.features_json = dump_json([str(x) for x in (value or [])])

    @property
    def images(self) -> list:
        return load_json(self.images_json, [])

    @images.setter
    def images(self, value) -> None:
        self.images_json = dump_json([str(x) for x in (value or [])])

    @property
    def blocked_dates(self) -> list:
        return load_json(self.blocked_dates_json, [])

    @blocked_dates.setter
    def blocked_dates(self, value) -> None:
        self.blocked_dates_json = dump_json(sorted({str(x) for x in (value or [])}))

    def is_live(self, now: datetime | None = None) -> bool:
        now = now or datetime.utcnow()
        if not self.is_active:
            return False
        return self.expires_at is None or self.expires_at > now

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "title": self.title or "",
            "description": self.description or "",
            "make": self.make or "",
            "model": self.model or "",
            "year": int(self.year or 0),
            "category": self.category or "economy",
            "price_per_day": float(self.price_per_day or 0.0),
            "seats": int(self.seats or 0),
            "transmission": self.transmission or "",
            "fuel_type": self.fuel_type or "",
            "location": self.location or "",
            "features": self.features,
            "images": self.images,
            "min_rental_days": int(self.min_rental_days or 1),
            "max_rental_days": int(self.max_rental_days) if self.max_rental_days else None,
            "available_from": iso(self.available_from),
            "available_to": iso(self.available_to),
            "listing_type": self.listing_type or "free",
            "is_active": bool(self.is_active),
            "views": int(self.views or 0),
            "expires_at": iso(self.expires_at),
            "premium_expires_at": iso(self.premium_expires_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class RentalBooking(db.Model):
    __tablename__ = "rental_bookings"

    id = db.Column(db.Integer, primary_key=True)
    rental_listing_id = db.Column(db.Integer, db.ForeignKey("rental_listings.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    start_date = db.Column(db.Date, nullable=False, index=True)
    end_date = db.Column(db.Date, nullable=False, index=True)
    total_days = db.Column(db.Integer, nullable=False, default=1)
    total_price = db.Column(db.Float, nullable=False, default=0.0)

    status = db.Column(db.String(24), nullable=False, default="PENDING", server_default="PENDING", index=True)
    payment_status = db.Column(db.String(24), nullable=False, default="PENDING", server_default="PENDING", index=True)

    notes = db.Column(db.Text, nullable=True)
    admin_notes = db.Column(db.Text, nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "rental_listing_id": int(self.rental_listing_id),
            "user_id": int(self.user_id),
            "start_date": iso(self.start_date),
            "end_date": iso(self.end_date),
            "total_days": int(self.total_days or 0),
            "total_price": float(self.total_price or 0.0),
            "status": self.status or "PENDING",
            "payment_status": self.payment_status or "PENDING",
            "notes": self.notes or "",
            "admin_notes": self.admin_notes or "",
            "cancellation_reason": self.cancellation_reason or "",
            "cancelled_at": iso(self.cancelled_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class PricingRule(db.Model):
    __tablename__ = "rental_pricing_rules"

    id = db.Column(db.Integer, primary_key=True)
    rental_listing_id = db.Column(db.Integer, db.ForeignKey("rental_listings.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False, default="")
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    price_per_day = db.Column(db.Float, nullable=True)
    multiplier = db.Column(db.Float, nullable=True)
    priority = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def covers(self, day) -> bool:
        return bool(self.is_active) and self.start_date <= day <= self.end_date

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "rental_listing_id": int(self.rental_listing_id),
            "name": self.name or "",
            "start_date": iso(self.start_date),
            "end_date": iso(self.end_date),
            "price_per_day": float(self.price_per_day) if self.price_per_day is not None else None,
            "multiplier": float(self.multiplier) if self.multiplier is not None else None,
            "priority": int(self.priority or 0),
            "is_active": bool(self.is_active),
        }
