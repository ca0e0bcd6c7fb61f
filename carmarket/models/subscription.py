from datetime import datetime

import sqlalchemy as sa

from carmarket.extensions import db
from carmarket.models._json import iso


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)
    plan = db.Column(db.String(24), nullable=False)
    billing_cycle = db.Column(db.String(16), nullable=False, default="monthly")
    # pending | active | cancelled | expired
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    current_period_start = db.Column(db.DateTime, nullable=True)
    current_period_end = db.Column(db.DateTime, nullable=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False, server_default=sa.text("false"))
    last_payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def is_current(self, now: datetime | None = None) -> bool:
        now = now or datetime.utcnow()
        if (self.status or "") != "active":
            return False
        return self.current_period_end is None or self.current_period_end > now

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "plan": self.plan or "",
            "billing_cycle": self.billing_cycle or "monthly",
            "status": self.status or "pending",
            "current_period_start": iso(self.current_period_start),
            "current_period_end": iso(self.current_period_end),
            "cancel_at_period_end": bool(self.cancel_at_period_end),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
