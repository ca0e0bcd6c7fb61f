from datetime import datetime

from carmarket.extensions import db
from carmarket.models._json import iso


COMMISSION_TYPES = ("rental", "sale", "subscription", "ad")
COMMISSION_STATUSES = ("pending", "paid", "cancelled")


class Commission(db.Model):
    __tablename__ = "commissions"
    __table_args__ = (
        db.UniqueConstraint("type", "source_id", name="uq_commission_source"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    type = db.Column(db.String(16), nullable=False, index=True)
    # Booking id for rentals, payment id otherwise.
    source_id = db.Column(db.Integer, nullable=False)
    amount_minor = db.Column(db.Integer, nullable=False, default=0)
    rate_bps = db.Column(db.Integer, nullable=False, default=0)
    commission_minor = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "type": self.type or "",
            "source_id": int(self.source_id),
            "amount": round(int(self.amount_minor or 0) / 100.0, 2),
            "rate": round(int(self.rate_bps or 0) / 100.0, 2),
            "commission_amount": round(int(self.commission_minor or 0) / 100.0, 2),
            "status": self.status or "pending",
            "paid_at": iso(self.paid_at),
            "created_at": iso(self.created_at),
        }
