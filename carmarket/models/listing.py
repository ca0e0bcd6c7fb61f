from datetime import datetime

import sqlalchemy as sa

from carmarket.extensions import db
from carmarket.models._json import load_json, dump_json, iso


LISTING_TYPES = ("free", "featured", "premium", "spotlight")
LISTING_STATUSES = ("active", "inactive", "sold", "expired", "pending", "rejected", "flagged")


class Listing(db.Model):
    __tablename__ = "listings"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)

    title = db.Column(db.String(160), nullable=False)
    description = db.Column(db.Text, nullable=True)

    make = db.Column(db.String(80), nullable=False, index=True)
    model = db.Column(db.String(80), nullable=False, index=True)
    year = db.Column(db.Integer, nullable=False, index=True)
    price = db.Column(db.Float, nullable=False, default=0.0)
    mileage = db.Column(db.Integer, nullable=False, default=0)

    fuel_type = db.Column(db.String(32), nullable=True, index=True)
    transmission = db.Column(db.String(32), nullable=True, index=True)
    body_type = db.Column(db.String(32), nullable=True, index=True)
    color = db.Column(db.String(40), nullable=True)
    condition = db.Column(db.String(32), nullable=True)
    engine_size = db.Column(db.String(32), nullable=True)
    location = db.Column(db.String(120), nullable=True, index=True)

    features_json = db.Column(db.Text, nullable=True)
    images_json = db.Column(db.Text, nullable=True)

    listing_type = db.Column(db.String(24), nullable=False, default="free", server_default="free", index=True)
    status = db.Column(db.String(24), nullable=False, default="active", server_default="active", index=True)

    views = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    contact_count = db.Column(db.Integer, nullable=False, default=0, server_default="0")

    expires_at = db.Column(db.DateTime, nullable=True, index=True)
    premium_expires_at = db.Column(db.DateTime, nullable=True)

    rejection_reason = db.Column(db.Text, nullable=True)
    moderated_at = db.Column(db.DateTime, nullable=True)
    moderated_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    is_negotiable = db.Column(db.Boolean, nullable=False, default=True, server_default=sa.text("true"))

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

    def is_live(self, now: datetime | None = None) -> bool:
        now = now or datetime.utcnow()
        if (self.status or "") != "active":
            return False
        return self.expires_at is None or self.expires_at > now

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "category_id": int(self.category_id) if self.category_id is not None else None,
            "title": self.title or "",
            "description": self.description or "",
            "make": self.make or "",
            "model": self.model or "",
            "year": int(self.year or 0),
            "price": float(self.price or 0.0),
            "mileage": int(self.mileage or 0),
            "fuel_type": self.fuel_type or "",
            "transmission": self.transmission or "",
            "body_type": self.body_type or "",
            "color": self.color or "",
            "condition": self.condition or "",
            "engine_size": self.engine_size or "",
            "location": self.location or "",
            "features": self.features,
            "images": self.images,
            "listing_type": self.listing_type or "free",
            "status": self.status or "active",
            "views": int(self.views or 0),
            "contact_count": int(self.contact_count or 0),
            "is_negotiable": bool(self.is_negotiable),
            "expires_at": iso(self.expires_at),
            "premium_expires_at": iso(self.premium_expires_at),
            "rejection_reason": self.rejection_reason or "",
            "moderated_at": iso(self.moderated_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
