from datetime import datetime

from carmarket.extensions import db
from carmarket.models._json import iso


class WebhookEvent(db.Model):
    """One inbound provider delivery (Stripe event or M-Pesa STK callback), keyed for replay detection."""

    __tablename__ = "webhook_events"

    SETTLED = ("processed", "ignored")

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False, default="stripe")
    event_id = db.Column(db.String(128), nullable=False, unique=True)
    event_type = db.Column(db.String(64), nullable=True)
    reference = db.Column(db.String(128), nullable=True)
    status = db.Column(db.String(32), nullable=False, default="received")
    processed_at = db.Column(db.DateTime, nullable=True)
    request_id = db.Column(db.String(64), nullable=True)
    payload_hash = db.Column(db.String(128), nullable=True)
    error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def is_settled(self) -> bool:
        return self.status in self.SETTLED

    def settle(self, status: str, error: str | None = None) -> None:
        self.status = status
        self.error = error or None
        self.processed_at = datetime.utcnow()

    def to_dict(self):
        data = {
            key: getattr(self, key) or ""
            for key in ("provider", "event_id", "event_type", "reference", "status", "request_id", "payload_hash", "error")
        }
        data.update(id=int(self.id), processed_at=iso(self.processed_at), created_at=iso(self.created_at))
        return data
