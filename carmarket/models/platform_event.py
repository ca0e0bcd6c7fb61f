from datetime import datetime

from carmarket.extensions import db
from carmarket.models._json import iso, load_json


class PlatformEvent(db.Model):
    """Append-only audit trail: searches, payments, listing lifecycle, account changes."""

    __tablename__ = "platform_events"

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(80), nullable=False, index=True)
    actor_user_id = db.Column(db.Integer, nullable=True, index=True)
    subject_type = db.Column(db.String(80), nullable=True, index=True)
    subject_id = db.Column(db.String(120), nullable=True, index=True)
    request_id = db.Column(db.String(80), nullable=True)
    idempotency_key = db.Column(db.String(180), nullable=True, unique=True, index=True)
    severity = db.Column(db.String(16), nullable=False, default="INFO")
    metadata_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def metadata_dict(self) -> dict:
        return load_json(self.metadata_json, {})

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "event_type": self.event_type or "",
            "actor_user_id": int(self.actor_user_id) if self.actor_user_id is not None else None,
            "subject_type": self.subject_type or "",
            "subject_id": self.subject_id or "",
            "severity": self.severity or "INFO",
            "metadata": self.metadata_dict(),
            "created_at": iso(self.created_at),
        }
