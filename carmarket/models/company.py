from datetime import datetime

import sqlalchemy as sa

from carmarket.extensions import db
from carmarket.models._json import iso


COMPANY_VERIFICATION_STATUSES = ("PENDING", "APPROVED", "REJECTED", "SUSPENDED")


class RentalCompany(db.Model):
    __tablename__ = "rental_companies"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)
    company_name = db.Column(db.String(160), nullable=False)
    business_registration = db.Column(db.String(80), nullable=True)
    kra_pin = db.Column(db.String(32), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    address = db.Column(db.String(255), nullable=True)

    verification_status = db.Column(db.String(16), nullable=False, default="PENDING", server_default="PENDING", index=True)
    is_verified = db.Column(db.Boolean, nullable=False, default=False, server_default=sa.text("false"))
    verified_at = db.Column(db.DateTime, nullable=True)
    verified_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "company_name": self.company_name or "",
            "business_registration": self.business_registration or "",
            "kra_pin": self.kra_pin or "",
            "phone": self.phone or "",
            "email": self.email or "",
            "address": self.address or "",
            "verification_status": self.verification_status or "PENDING",
            "is_verified": bool(self.is_verified),
            "verified_at": iso(self.verified_at),
            "verified_by": int(self.verified_by) if self.verified_by is not None else None,
            "notes": self.notes or "",
            "created_at": iso(self.created_at),
        }
