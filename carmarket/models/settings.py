from datetime import datetime

from carmarket.extensions import db


class NotificationSettings(db.Model):
    __tablename__ = "notification_settings"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)

    email_enabled = db.Column(db.Boolean, nullable=False, default=True)
    sms_enabled = db.Column(db.Boolean, nullable=False, default=False)
    push_enabled = db.Column(db.Boolean, nullable=False, default=True)

    booking_updates = db.Column(db.Boolean, nullable=False, default=True)
    payment_updates = db.Column(db.Boolean, nullable=False, default=True)
    listing_updates = db.Column(db.Boolean, nullable=False, default=True)
    marketing = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    TOGGLES = (
        "email_enabled",
        "sms_enabled",
        "push_enabled",
        "booking_updates",
        "payment_updates",
        "listing_updates",
        "marketing",
    )

    def allows(self, topic: str) -> bool:
        key = {
            "booking": "booking_updates",
            "payment": "payment_updates",
            "listing": "listing_updates",
            "marketing": "marketing",
        }.get((topic or "").strip().lower())
        if not key:
            return True
        return bool(getattr(self, key, True))

    def to_dict(self):
        return {name: bool(getattr(self, name)) for name in self.TOGGLES}
