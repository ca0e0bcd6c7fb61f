from datetime import datetime

from carmarket.extensions import db


class Favorite(db.Model):
    __tablename__ = "favorites"
    __table_args__ = (
        db.UniqueConstraint("user_id", "listing_id", "rental_listing_id", name="uq_favorite_target"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=True, index=True)
    rental_listing_id = db.Column(db.Integer, db.ForeignKey("rental_listings.id"), nullable=True, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "listing_id": int(self.listing_id) if self.listing_id is not None else None,
            "rental_listing_id": int(self.rental_listing_id) if self.rental_listing_id is not None else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
