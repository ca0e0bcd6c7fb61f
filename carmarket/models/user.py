from datetime import datetime

import sqlalchemy as sa
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

from carmarket.extensions import db


ROLES = ("buyer", "seller", "rental_company", "admin")


class User(db.Model, UserMixin):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)

    phone = db.Column(db.String(32), unique=True, index=True, nullable=True)
    image_url = db.Column(db.String(1024), nullable=True)
    location = db.Column(db.String(120), nullable=True)
    bio = db.Column(db.Text, nullable=True)

    password_hash = db.Column(db.String(255), nullable=False)

    # buyer | seller | rental_company | admin
    role = db.Column(db.String(32), nullable=False, default="buyer", server_default="buyer", index=True)

    is_verified = db.Column(db.Boolean, nullable=False, default=False, server_default=sa.text("false"))
    phone_verified = db.Column(db.Boolean, nullable=False, default=False, server_default=sa.text("false"))
    is_active = db.Column(db.Boolean, nullable=False, default=True, server_default=sa.text("true"))

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    last_login_at = db.Column(db.DateTime, nullable=True)

    def set_password(self, raw_password: str) -> None:
        self.password_hash = generate_password_hash(raw_password)

    def check_password(self, raw_password: str) -> bool:
        return check_password_hash(self.password_hash, raw_password)

    @property
    def is_admin(self) -> bool:
        return (self.role or "").strip().lower() == "admin"

    def public_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "image_url": self.image_url or "",
            "location": self.location or "",
            "role": self.role or "buyer",
            "is_verified": bool(self.is_verified),
            "member_since": self.created_at.isoformat() if self.created_at else None,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": getattr(self, "phone", None),
            "image_url": (getattr(self, "image_url", None) or ""),
            "location": self.location or "",
            "bio": self.bio or "",
            "role": self.role or "buyer",
            "is_verified": bool(self.is_verified),
            "phone_verified": bool(self.phone_verified),
            "is_active": bool(self.is_active),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
        }
