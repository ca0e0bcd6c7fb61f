from datetime import datetime

from carmarket.extensions import db
from carmarket.models._json import dump_json, iso, load_json


NOTIFICATION_TYPES = ("booking", "payment", "listing", "marketing", "system", "reminder", "social", "security")


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    type = db.Column(db.String(24), nullable=False, default="system", index=True)
    channel = db.Column(db.String(16), nullable=False, default="in_app")  # in_app | email | sms
    title = db.Column(db.String(160), nullable=True)
    message = db.Column(db.Text, nullable=False)

    status = db.Column(db.String(16), nullable=False, default="queued")  # queued | sent | failed
    provider = db.Column(db.String(64), nullable=True)
    provider_ref = db.Column(db.String(120), nullable=True)

    is_read = db.Column(db.Boolean, nullable=False, default=False, index=True)
    read_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    sent_at = db.Column(db.DateTime, nullable=True)

    meta = db.Column(db.Text, nullable=True)  # JSON string

    @property
    def meta_data(self) -> dict:
        return load_json(self.meta, {})

    @meta_data.setter
    def meta_data(self, value: dict) -> None:
        self.meta = dump_json(value or {})

    def mark_read(self, read_at: datetime | None = None) -> datetime:
        if not self.is_read:
            self.is_read = True
            self.read_at = read_at or datetime.utcnow()
        return self.read_at

    def to_dict(self):
        data = {key: getattr(self, key) or "" for key in ("title", "message", "provider")}
        data.update(
            id=self.id,
            user_id=self.user_id,
            type=self.type or "system",
            channel=self.channel or "in_app",
            status=self.status or "queued",
            created_at=iso(self.created_at),
            sent_at=iso(self.sent_at),
            is_read=bool(self.is_read),
            read_at=iso(self.read_at),
            meta=self.meta_data,
        )
        return data
