from __future__ import annotations

import json
import os
from datetime import datetime, timedelta

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from carmarket.extensions import db
from carmarket.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from carmarket.integrations.payments.stripe_provider import verify_stripe_signature
from carmarket.models import Listing, Payment, RentalListing
from carmarket.segments._payment_errors import provider_error_response
from carmarket.services.payment_service import (
    PaymentStatus,
    create_payment,
    display_amounts,
    process_mpesa_callback,
    process_stripe_event,
    reconcile_payment,
    transition_payment,
)
from carmarket.services.pricing import LISTING_PRICES, price_row, pricing_table
from carmarket.utils.auth import current_user, is_admin, owns
from carmarket.utils.http import error_response, forbidden, json_body, not_found, paginate, pagination_args, to_int, unauthorized
from carmarket.utils.phone import is_valid_kenyan_phone


payments_bp = Blueprint("payments_bp", __name__, url_prefix="/api/payments")

PROVIDERS = ("stripe", "mpesa")


@payments_bp.get("/pricing")
def pricing():
    listing_type = (request.args.get("listing_type") or "").strip().upper()
    if listing_type:
        row = price_row(listing_type)
        if row is None:
            return error_response("Invalid listing_type", 400)
        return jsonify({"ok": True, "pricing": row}), 200
    return jsonify({"ok": True, "pricing": pricing_table()}), 200


@payments_bp.post("/create")
def create():
    user = current_user()
    if not user:
        return unauthorized()
    data = json_body()
    listing_type = (data.get("listing_type") or "").strip().upper()
    provider = (data.get("provider") or "stripe").strip().lower()
    listing_id = to_int(data.get("listing_id"))
    rental_listing_id = to_int(data.get("rental_listing_id"))
    phone_number = (data.get("phone_number") or "").strip() or None

    if listing_type not in LISTING_PRICES:
        return error_response("Invalid listing_type", 400)
    if provider not in PROVIDERS:
        return error_response("provider must be stripe or mpesa", 400)
    if provider == "mpesa":
        if not phone_number:
            return error_response("phone_number is required for M-Pesa payments", 400)
        if not is_valid_kenyan_phone(phone_number):
            return error_response("Invalid Kenyan phone number", 400)

    if listing_id is not None:
        listing = db.session.get(Listing, listing_id)
        if not listing:
            return not_found("Listing")
        if not owns(user, listing.user_id):
            return forbidden()
    if rental_listing_id is not None:
        rental = db.session.get(RentalListing, rental_listing_id)
        if not rental:
            return not_found("Rental listing")
        if not owns(user, rental.user_id):
            return forbidden()

    usd_cents = LISTING_PRICES[listing_type]
    try:
        payment, init = create_payment(
            user=user,
            listing_type=listing_type,
            provider_name=provider,
            usd_cents=usd_cents,
            description=f"{listing_type.replace('_', ' ').title()} listing",
            listing_id=listing_id,
            rental_listing_id=rental_listing_id,
            phone_number=phone_number,
            metadata={"purpose": "listing"},
        )
        db.session.commit()
    except (IntegrationDisabledError, IntegrationMisconfiguredError, RuntimeError, ValueError) as e:
        db.session.rollback()
        return provider_error_response(e, action="payment_create")

    body = {
        "ok": True,
        "payment": payment.to_dict(),
        "reference": payment.payment_intent_id,
        "price": display_amounts(usd_cents),
    }
    if provider == "stripe":
        body["client_secret"] = init.client_secret or None
        body["payment_intent_id"] = payment.payment_intent_id
    else:
        body["checkout_request_id"] = payment.payment_intent_id
        body["merchant_request_id"] = init.merchant_request_id or None
        body["customer_message"] = init.customer_message or None
    return jsonify(body), 201


def _payment_for(user, reference: str):
    payment = Payment.query.filter_by(payment_intent_id=(reference or "").strip()).first()
    if not payment:
        return None, not_found("Payment")
    if not (owns(user, payment.user_id) or is_admin(user)):
        return None, forbidden()
    return payment, None


@payments_bp.get("/status/<reference>")
def payment_status(reference: str):
    user = current_user()
    if not user:
        return unauthorized()
    payment, err = _payment_for(user, reference)
    if err is not None:
        return err
    if payment.status == PaymentStatus.PENDING:
        try:
            reconcile_payment(payment)
            db.session.commit()
        except (RuntimeError, ValueError):
            db.session.rollback()
            current_app.logger.warning("payment_status_reconcile_failed reference=%s", reference, exc_info=True)
            payment = Payment.query.filter_by(payment_intent_id=reference).first()
    return jsonify({"ok": True, "payment": payment.to_dict(), "status": payment.status}), 200


@payments_bp.patch("/status/<reference>")
def update_payment_status(reference: str):
    user = current_user()
    if not user:
        return unauthorized()
    payment, err = _payment_for(user, reference)
    if err is not None:
        return err
    data = json_body()
    status = (data.get("status") or "").strip().lower()
    if status not in PaymentStatus.ALL:
        return error_response("Invalid status", 400)
    # Only admins may mark a payment as succeeded by hand.
    if status == PaymentStatus.SUCCEEDED and not is_admin(user):
        return forbidden()
    try:
        transition_payment(
            payment,
            status,
            actor={"type": "admin" if is_admin(user) else "user", "id": user.id},
            idempotency_key=(data.get("idempotency_key") or f"manual:{payment.payment_intent_id}:{status}"),
            reason=(data.get("reason") or "").strip(),
        )
        db.session.commit()
    except ValueError as e:
        db.session.rollback()
        return error_response(str(e), 400)
    return jsonify({"ok": True, "payment": payment.to_dict()}), 200


@payments_bp.get("/history")
def history():
    user = current_user()
    if not user:
        return unauthorized()
    q = Payment.query.filter(Payment.user_id == int(user.id))
    status = (request.args.get("status") or "").strip().lower()
    provider = (request.args.get("provider") or "").strip().lower()
    if status:
        q = q.filter(Payment.status == status)
    if provider:
        q = q.filter(Payment.provider == provider)
    page, limit = pagination_args(default_limit=10)
    rows, meta = paginate(q.order_by(Payment.created_at.desc()), page, limit)
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows], "pagination": meta}), 200


@payments_bp.get("/stats")
def stats():
    user = current_user()
    if not user:
        return unauthorized()
    base = Payment.query.filter(Payment.user_id == int(user.id))
    by_status = dict(
        db.session.query(Payment.status, func.count(Payment.id)).filter(Payment.user_id == int(user.id)).group_by(Payment.status).all()
    )
    by_provider = {}
    rows = (
        db.session.query(Payment.provider, Payment.currency, func.count(Payment.id), func.coalesce(func.sum(Payment.amount_minor), 0))
        .filter(Payment.user_id == int(user.id), Payment.status == PaymentStatus.SUCCEEDED)
        .group_by(Payment.provider, Payment.currency)
        .all()
    )
    for provider, currency, count, total in rows:
        by_provider[f"{provider}:{currency}"] = {"count": int(count), "amount": round(int(total) / 100.0, 2)}
    since = datetime.utcnow() - timedelta(days=30)
    recent = (
        db.session.query(Payment.currency, func.coalesce(func.sum(Payment.amount_minor), 0))
        .filter(Payment.user_id == int(user.id), Payment.status == PaymentStatus.SUCCEEDED, Payment.paid_at >= since)
        .group_by(Payment.currency)
        .all()
    )
    return jsonify(
        {
            "ok": True,
            "total_payments": base.count(),
            "by_status": {str(k): int(v) for k, v in by_status.items()},
            "succeeded_by_provider": by_provider,
            "revenue_last_30_days": {str(cur): round(int(total) / 100.0, 2) for cur, total in recent},
        }
    ), 200


@payments_bp.post("/stripe/webhook")
def stripe_webhook():
    raw = request.get_data() or b""
    signature = request.headers.get("Stripe-Signature", "")
    secret = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()
    if not signature:
        return error_response("Missing Stripe-Signature header", 400)
    if not secret or not verify_stripe_signature(raw, signature, secret):
        current_app.logger.warning("stripe_webhook_bad_signature")
        return error_response("Invalid signature", 400)
    try:
        event = json.loads(raw.decode("utf-8") or "{}")
    except ValueError:
        return error_response("Invalid payload", 400)
    if not isinstance(event, dict):
        return error_response("Invalid payload", 400)
    try:
        body = process_stripe_event(event, raw)
    except (ValueError, SQLAlchemyError):
        db.session.rollback()
        current_app.logger.exception("stripe_webhook_failed event_id=%s", event.get("id"))
        return error_response("Webhook processing failed", 500)
    return jsonify(body), 200


@payments_bp.post("/mpesa/callback")
def mpesa_callback():
    raw = request.get_data() or b""
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"ResultCode": 1, "ResultDesc": "Invalid payload"}), 400
    try:
        body, status = process_mpesa_callback(payload, raw)
    except (ValueError, SQLAlchemyError):
        db.session.rollback()
        current_app.logger.exception("mpesa_callback_failed")
        return jsonify({"ResultCode": 1, "ResultDesc": "Processing failed"}), 500
    return jsonify(body), status
