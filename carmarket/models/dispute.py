from datetime import datetime

from carmarket.extensions import db
from carmarket.models._json import iso


DISPUTE_STATUSES = ("OPEN", "IN_PROGRESS", "RESOLVED", "CLOSED", "ESCALATED")
DISPUTE_PRIORITIES = ("LOW", "MEDIUM", "HIGH", "URGENT")


class Dispute(db.Model):
    __tablename__ = "disputes"

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("rental_bookings.id"), nullable=False, index=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    assigned_to = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(40), nullable=False, default="other")
    status = db.Column(db.String(16), nullable=False, default="OPEN", index=True)
    priority = db.Column(db.String(16), nullable=False, default="MEDIUM", index=True)

    resolution = db.Column(db.Text, nullable=True)
    admin_notes = db.Column(db.Text, nullable=True)
    refund_amount = db.Column(db.Float, nullable=True)
    compensation_amount = db.Column(db.Float, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    resolved_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "booking_id": int(self.booking_id),
            "created_by": int(self.created_by),
            "assigned_to": int(self.assigned_to) if self.assigned_to is not None else None,
            "title": self.title or "",
            "description": self.description or "",
            "type": self.type or "other",
            "status": self.status or "OPEN",
            "priority": self.priority or "MEDIUM",
            "resolution": self.resolution or "",
            "admin_notes": self.admin_notes or "",
            "refund_amount": float(self.refund_amount) if self.refund_amount is not None else None,
            "compensation_amount": float(self.compensation_amount) if self.compensation_amount is not None else None,
            "resolved_at": iso(self.resolved_at),
            "resolved_by": int(self.resolved_by) if self.resolved_by is not None else None,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class DisputeMessage(db.Model):
    __tablename__ = "dispute_messages"

    id = db.Column(db.Integer, primary_key=True)
    dispute_id = db.Column(db.Integer, db.ForeignKey("disputes.id"), nullable=False, index=True)
    sender_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    message = db.Column(db.Text, nullable=False)
    is_internal = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "dispute_id": int(self.dispute_id),
            "sender_id": int(self.sender_id),
            "message": self.message or "",
            "is_internal": bool(self.is_internal),
            "created_at": iso(self.created_at),
        }
