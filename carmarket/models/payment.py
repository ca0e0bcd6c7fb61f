from datetime import datetime

from carmarket.extensions import db
from carmarket.models._json import load_json, dump_json, iso


PAYMENT_STATUSES = ("pending", "succeeded", "failed", "cancelled")
PAYMENT_PROVIDERS = ("stripe", "mpesa", "mock")


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    # Stripe PaymentIntent id, M-Pesa CheckoutRequestID or mock reference.
    payment_intent_id = db.Column(db.String(128), nullable=False, unique=True, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=True, index=True)
    rental_listing_id = db.Column(db.Integer, db.ForeignKey("rental_listings.id"), nullable=True, index=True)

    amount_minor = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(8), nullable=False, default="usd")
    provider = db.Column(db.String(16), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    listing_type = db.Column(db.String(32), nullable=True, index=True)

    merchant_request_id = db.Column(db.String(128), nullable=True)
    receipt_number = db.Column(db.String(64), nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)

    paid_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def meta_dict(self) -> dict:
        return load_json(self.metadata_json, {})

    def merge_meta(self, extra: dict) -> None:
        meta = self.meta_dict()
        meta.update(extra or {})
        self.metadata_json = dump_json(meta)

    @property
    def amount(self) -> float:
        return round(int(self.amount_minor or 0) / 100.0, 2)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "reference": self.payment_intent_id,
            "payment_intent_id": self.payment_intent_id,
            "user_id": int(self.user_id),
            "listing_id": int(self.listing_id) if self.listing_id is not None else None,
            "rental_listing_id": int(self.rental_listing_id) if self.rental_listing_id is not None else None,
            "amount": self.amount,
            "amount_minor": int(self.amount_minor or 0),
            "currency": self.currency or "usd",
            "provider": self.provider or "",
            "status": self.status or "pending",
            "listing_type": self.listing_type or "",
            "merchant_request_id": self.merchant_request_id or "",
            "receipt_number": self.receipt_number or "",
            "failure_reason": self.failure_reason or "",
            "metadata": self.meta_dict(),
            "paid_at": iso(self.paid_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class PaymentTransition(db.Model):
    __tablename__ = "payment_transitions"
    __table_args__ = (
        db.UniqueConstraint("payment_id", "idempotency_key", name="uq_payment_transition_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)
    from_status = db.Column(db.String(16), nullable=False, default="")
    to_status = db.Column(db.String(16), nullable=False)
    actor_type = db.Column(db.String(32), nullable=False, default="system")
    actor_id = db.Column(db.Integer, nullable=True)
    idempotency_key = db.Column(db.String(160), nullable=False)
    reason = db.Column(db.String(240), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "payment_id": int(self.payment_id),
            "from_status": self.from_status or "",
            "to_status": self.to_status or "",
            "actor_type": self.actor_type or "",
            "actor_id": int(self.actor_id) if self.actor_id is not None else None,
            "idempotency_key": self.idempotency_key or "",
            "reason": self.reason or "",
            "created_at": iso(self.created_at),
        }
