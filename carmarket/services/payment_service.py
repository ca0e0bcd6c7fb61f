from __future__ import annotations

import hashlib
import json
from datetime import datetime, timedelta

from flask import current_app

from carmarket.extensions import db
from carmarket.integrations.payments.factory import build_payments_provider
from carmarket.integrations.payments.mpesa_provider import parse_stk_callback
from carmarket.models import Listing, Payment, PaymentTransition, RentalListing, Subscription, WebhookEvent
from carmarket.services.notification_service import notify
from carmarket.services.pricing import tier_for_listing_type, usd_cents_to_kes
from carmarket.services.subscription_service import activate_subscription
from carmarket.utils.events import log_event
from carmarket.utils.observability import get_request_id
from carmarket.utils.money import format_kes, format_usd_cents


class PaymentStatus:
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ALL = (PENDING, SUCCEEDED, FAILED, CANCELLED)
    TERMINAL = {SUCCEEDED, FAILED, CANCELLED}
    ALLOWED = {
        PENDING: {PENDING, SUCCEEDED, FAILED, CANCELLED},
        SUCCEEDED: {SUCCEEDED},
        FAILED: {FAILED},
        CANCELLED: {CANCELLED},
    }


SUBSCRIPTION_LISTING_TYPE = "SUBSCRIPTION"


def _normalize_status(value: str | None) -> str:
    status = (value or "").strip().lower()
    if status == "canceled":
        return PaymentStatus.CANCELLED
    if status in PaymentStatus.ALL:
        return status
    return ""


def _parse_actor(actor) -> tuple[str, int | None]:
    if isinstance(actor, dict):
        actor_type = str(actor.get("type") or "system")
        try:
            actor_id = int(actor["id"]) if actor.get("id") is not None else None
        except (TypeError, ValueError):
            actor_id = None
        return actor_type, actor_id
    return "system", None


def is_terminal(payment: Payment | None) -> bool:
    if not payment:
        return False
    return _normalize_status(payment.status) in PaymentStatus.TERMINAL


def transition_payment(
    payment: Payment,
    to_state: str,
    *,
    actor=None,
    idempotency_key: str,
    reason: str = "",
) -> PaymentTransition:
    """Move a payment to a new status exactly once per idempotency key.

    Terminal statuses never change. Entering ``succeeded`` applies the
    purchase (tier upgrade or subscription). Rows are flushed, not committed.
    """
    if payment is None:
        raise ValueError("payment required")
    key = (idempotency_key or "").strip()[:160]
    if not key:
        raise ValueError("idempotency_key required")

    existing = PaymentTransition.query.filter_by(payment_id=int(payment.id), idempotency_key=key).first()
    if existing:
        return existing

    current = _normalize_status(payment.status) or PaymentStatus.PENDING
    target = _normalize_status(to_state)
    if not target:
        raise ValueError(f"invalid_payment_status {to_state}")
    if target not in PaymentStatus.ALLOWED.get(current, {current}):
        raise ValueError(f"invalid_payment_transition {current}->{target}")

    actor_type, actor_id = _parse_actor(actor)
    now = datetime.utcnow()
    row = PaymentTransition(
        payment_id=int(payment.id),
        from_status=current,
        to_status=target,
        actor_type=actor_type[:32],
        actor_id=actor_id,
        idempotency_key=key,
        reason=(reason or "")[:240],
        created_at=now,
    )
    payment.status = target
    payment.updated_at = now
    if target == PaymentStatus.FAILED and reason:
        payment.failure_reason = reason[:255]
    db.session.add(row)
    db.session.add(payment)

    if target != current:
        if target == PaymentStatus.SUCCEEDED:
            if not payment.paid_at:
                payment.paid_at = now
            apply_success(payment)
        elif target in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
            _apply_failure(payment, target)
    db.session.flush()
    return row


def _target_item(payment: Payment):
    if payment.rental_listing_id is not None:
        return db.session.get(RentalListing, int(payment.rental_listing_id))
    if payment.listing_id is not None:
        return db.session.get(Listing, int(payment.listing_id))
    return None


def apply_success(payment: Payment) -> None:
    meta = payment.meta_dict()
    now = datetime.utcnow()
    listing_type = (payment.listing_type or "").strip().upper()

    if listing_type == SUBSCRIPTION_LISTING_TYPE:
        sub = Subscription.query.filter_by(user_id=int(payment.user_id)).first()
        if sub is not None:
            activate_subscription(sub, plan=meta.get("plan"), billing_cycle=meta.get("billing_cycle"), payment_id=payment.id)
        title = "Subscription active"
        plan_name = meta.get("plan") or "plan"
        message = f"Your {plan_name} subscription is now active."
    else:
        item = _target_item(payment)
        if item is not None:
            item.listing_type = tier_for_listing_type(listing_type)
            duration = meta.get("upgrade_duration_days")
            if duration:
                item.premium_expires_at = now + timedelta(days=int(duration))
            item.updated_at = now
            db.session.add(item)
        title = "Payment successful"
        message = f"Your {tier_for_listing_type(listing_type)} listing payment was received."

    notify(
        payment.user_id,
        "payment",
        title,
        message,
        meta={"payment_id": int(payment.id), "reference": payment.payment_intent_id},
        email=True,
    )
    log_event(
        "payment_succeeded",
        actor_user_id=payment.user_id,
        subject_type="payment",
        subject_id=payment.id,
        idempotency_key=f"payment_succeeded:{payment.id}",
        metadata={"provider": payment.provider, "amount_minor": payment.amount_minor, "currency": payment.currency, "listing_type": listing_type},
    )


def _apply_failure(payment: Payment, status: str) -> None:
    if (payment.listing_type or "").upper() == SUBSCRIPTION_LISTING_TYPE:
        sub = Subscription.query.filter_by(user_id=int(payment.user_id), last_payment_id=None, status="pending").first()
        if sub is not None:
            sub.status = "cancelled"
            db.session.add(sub)
    notify(
        payment.user_id,
        "payment",
        "Payment failed" if status == PaymentStatus.FAILED else "Payment cancelled",
        payment.failure_reason or f"Payment {payment.payment_intent_id} was {status}.",
        meta={"payment_id": int(payment.id), "reference": payment.payment_intent_id},
    )
    log_event(f"payment_{status}", actor_user_id=payment.user_id, subject_type="payment", subject_id=payment.id)


def create_payment(
    *,
    user,
    listing_type: str,
    provider_name: str,
    usd_cents: int,
    description: str,
    listing_id: int | None = None,
    rental_listing_id: int | None = None,
    phone_number: str | None = None,
    metadata: dict | None = None,
):
    """Start a checkout with the provider and persist the pending payment.

    Returns ``(payment, init_result)``; the caller commits.
    """
    provider = build_payments_provider(provider_name)
    if provider.currency == "kes":
        amount_minor = usd_cents_to_kes(usd_cents) * 100
    else:
        amount_minor = int(usd_cents)

    ts = int(datetime.utcnow().timestamp() * 1000)
    reference_hint = f"LISTING_{(listing_type or '').upper()}_{ts}"
    init = provider.initialize(
        amount_minor=amount_minor,
        reference_hint=reference_hint,
        description=description,
        phone_number=phone_number,
        metadata={"user_id": user.id, "listing_type": listing_type, "listing_id": listing_id, "rental_listing_id": rental_listing_id},
    )
    if not init.reference:
        raise RuntimeError(f"{provider_name.upper()}_INIT_FAILED:missing reference")

    payment = Payment(
        payment_intent_id=init.reference,
        user_id=int(user.id),
        listing_id=listing_id,
        rental_listing_id=rental_listing_id,
        amount_minor=int(init.amount_minor),
        currency=init.currency,
        provider=(provider_name or "").strip().lower(),
        status=PaymentStatus.PENDING,
        listing_type=(listing_type or "").upper(),
        merchant_request_id=init.merchant_request_id or None,
    )
    meta = dict(metadata or {})
    meta.update({"gateway": provider.name, "usd_cents": int(usd_cents), "reference_hint": reference_hint})
    if phone_number:
        meta["phone_number"] = phone_number
    payment.merge_meta(meta)
    db.session.add(payment)
    db.session.flush()
    log_event(
        "payment_created",
        actor_user_id=user.id,
        subject_type="payment",
        subject_id=payment.id,
        metadata={"provider": payment.provider, "gateway": provider.name, "listing_type": payment.listing_type, "amount_minor": payment.amount_minor},
    )
    return payment, init


def display_amounts(usd_cents: int) -> dict:
    kes = usd_cents_to_kes(usd_cents)
    return {"usd_cents": int(usd_cents), "usd": format_usd_cents(usd_cents), "kes": kes, "kes_formatted": format_kes(kes)}


def reconcile_payment(payment: Payment) -> Payment:
    """Ask the provider for the latest status of a pending payment."""
    if is_terminal(payment):
        return payment
    provider = build_payments_provider(payment.provider)
    result = provider.verify(payment.payment_intent_id)
    status = _normalize_status(result.status)
    if status and status != PaymentStatus.PENDING:
        transition_payment(
            payment,
            status,
            actor={"type": "reconcile"},
            idempotency_key=f"reconcile:{payment.payment_intent_id}:{status}",
            reason=result.detail or "",
        )
    return payment


def reconcile_pending_payments(*, older_than_minutes: int = 10, limit: int = 200) -> dict:
    cutoff = datetime.utcnow() - timedelta(minutes=int(older_than_minutes))
    rows = (
        Payment.query.filter(Payment.status == PaymentStatus.PENDING, Payment.created_at <= cutoff)
        .order_by(Payment.created_at.asc())
        .limit(int(limit))
        .all()
    )
    updated = 0
    errors = 0
    for row in rows:
        try:
            before = row.status
            reconcile_payment(row)
            db.session.commit()
            if row.status != before:
                updated += 1
        except (RuntimeError, ValueError):
            db.session.rollback()
            errors += 1
            current_app.logger.warning("payment_reconcile_failed reference=%s", row.payment_intent_id, exc_info=True)
    return {"checked": len(rows), "updated": updated, "errors": errors}


def _record_webhook(provider: str, event_id: str, event_type: str, reference: str, raw: bytes) -> tuple[WebhookEvent, bool]:
    """Returns (event, is_new). Duplicate deliveries come back with is_new False."""
    existing = WebhookEvent.query.filter_by(event_id=event_id).first()
    if existing is not None and existing.is_settled:
        return existing, False
    if existing is not None:
        return existing, True
    event = WebhookEvent(
        provider=provider,
        event_id=event_id[:128],
        event_type=(event_type or "")[:64],
        reference=(reference or "")[:128],
        status="received",
        request_id=(get_request_id() or "")[:64] or None,
        payload_hash=hashlib.sha256(raw or b"").hexdigest(),
    )
    db.session.add(event)
    db.session.flush()
    return event, True


_STRIPE_EVENT_STATUS = {
    "payment_intent.succeeded": PaymentStatus.SUCCEEDED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.CANCELLED,
}


def process_stripe_event(event: dict, raw: bytes = b"") -> dict:
    event_type = str(event.get("type") or "")
    obj = ((event.get("data") or {}).get("object")) or {}
    reference = str(obj.get("id") or "")
    event_id = str(event.get("id") or "") or f"stripe:{hashlib.sha256(raw or json.dumps(event, sort_keys=True).encode()).hexdigest()}"

    record, is_new = _record_webhook("stripe", event_id, event_type, reference, raw)
    if not is_new:
        return {"received": True, "duplicate": True}

    target = _STRIPE_EVENT_STATUS.get(event_type)
    payment = Payment.query.filter_by(payment_intent_id=reference).first() if reference else None
    if target is None or payment is None:
        record.settle("ignored")
        db.session.commit()
        return {"received": True, "ignored": True}

    if is_terminal(payment) and payment.status != target:
        outcome = "ignored"
    else:
        reason = ""
        if target == PaymentStatus.FAILED:
            reason = str(((obj.get("last_payment_error") or {}).get("message")) or "payment_failed")
        transition_payment(
            payment,
            target,
            actor={"type": "webhook"},
            idempotency_key=f"stripe:{event_id}",
            reason=reason,
        )
        outcome = "processed"
    record.settle(outcome)
    db.session.commit()
    return {"received": True}


def process_mpesa_callback(payload: dict, raw: bytes = b"") -> tuple[dict, int]:
    data = parse_stk_callback(payload)
    checkout_id = data["checkout_request_id"]
    if not checkout_id:
        return {"ResultCode": 1, "ResultDesc": "Missing CheckoutRequestID"}, 400

    payment = Payment.query.filter_by(payment_intent_id=checkout_id).first()
    if payment is None:
        return {"ResultCode": 1, "ResultDesc": "Payment not found"}, 404

    event_id = f"mpesa:{checkout_id}:{data['result_code']}"
    record, is_new = _record_webhook("mpesa", event_id, "stk_callback", checkout_id, raw)
    if not is_new:
        return {"ResultCode": 0, "ResultDesc": "Success"}, 200

    target = PaymentStatus.SUCCEEDED if data["result_code"] == "0" else PaymentStatus.FAILED
    # A late callback for a finished payment is recorded but never touches the row.
    if is_terminal(payment):
        record.settle("processed" if payment.status == target else "ignored")
        db.session.commit()
        return {"ResultCode": 0, "ResultDesc": "Success"}, 200

    if target == PaymentStatus.SUCCEEDED:
        payment.receipt_number = str(data["receipt_number"]) if data["receipt_number"] is not None else None
        payment.merge_meta(
            {
                "mpesa_amount": data["amount"],
                "mpesa_receipt_number": data["receipt_number"],
                "mpesa_transaction_date": data["transaction_date"],
                "mpesa_phone_number": data["phone_number"],
            }
        )
    else:
        payment.merge_meta({"mpesa_result_code": data["result_code"], "mpesa_result_desc": data["result_desc"]})
    transition_payment(
        payment,
        target,
        actor={"type": "webhook"},
        idempotency_key=event_id,
        reason=data["result_desc"] if target == PaymentStatus.FAILED else "",
    )
    record.settle("processed")
    db.session.commit()
    return {"ResultCode": 0, "ResultDesc": "Success"}, 200
