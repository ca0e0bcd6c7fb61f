from __future__ import annotations

from datetime import datetime

from carmarket.extensions import db


class RefreshToken(db.Model):
    """Opaque refresh credential. Only the keyed hash is stored; each use rotates it."""

    __tablename__ = "refresh_tokens"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    token_hash = db.Column(db.String(128), nullable=False, unique=True, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    revoked_at = db.Column(db.DateTime, nullable=True, index=True)
    device_id = db.Column(db.String(128), nullable=True)

    def rejection_reason(self, now: datetime | None = None) -> str | None:
        now = now or datetime.utcnow()
        if self.revoked_at is not None:
            return "Refresh token revoked"
        if self.expires_at and self.expires_at <= now:
            return "Refresh token expired"
        return None

    def revoke(self, when: datetime | None = None) -> bool:
        if self.revoked_at is not None:
            return False
        self.revoked_at = when or datetime.utcnow()
        return True

    @classmethod
    def revoke_all_for_user(cls, user_id: int, when: datetime | None = None) -> int:
        live = cls.query.filter(cls.user_id == int(user_id), cls.revoked_at.is_(None))
        return int(live.update({"revoked_at": when or datetime.utcnow()}, synchronize_session=False) or 0)
