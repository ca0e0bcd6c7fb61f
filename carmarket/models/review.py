from datetime import datetime

from carmarket.extensions import db


class Review(db.Model):
    __tablename__ = "reviews"

    id = db.Column(db.Integer, primary_key=True)
    reviewer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    target_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=True, index=True)
    rental_listing_id = db.Column(db.Integer, db.ForeignKey("rental_listings.id"), nullable=True, index=True)

    rating = db.Column(db.Integer, nullable=False)
    comment = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self, reviewer=None) -> dict:
        data = {
            "id": int(self.id),
            "reviewer_id": int(self.reviewer_id),
            "target_id": int(self.target_id),
            "listing_id": int(self.listing_id) if self.listing_id is not None else None,
            "rental_listing_id": int(self.rental_listing_id) if self.rental_listing_id is not None else None,
            "rating": int(self.rating or 0),
            "comment": self.comment or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if reviewer is not None:
            data["reviewer"] = {"id": int(reviewer.id), "name": reviewer.name or "", "image_url": reviewer.image_url or ""}
        return data
