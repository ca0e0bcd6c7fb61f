from __future__ import annotations

from datetime import datetime

from flask import Blueprint, current_app, jsonify

from carmarket.extensions import db
from carmarket.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from carmarket.models import Subscription
from carmarket.segments._payment_errors import provider_error_response
from carmarket.services.payment_service import (
    SUBSCRIPTION_LISTING_TYPE,
    PaymentStatus,
    create_payment,
    display_amounts,
    transition_payment,
)
from carmarket.services.pricing import BILLING_CYCLES, SUBSCRIPTION_PLANS, plan_price_usd
from carmarket.services.subscription_service import usage_summary
from carmarket.utils.auth import current_user
from carmarket.utils.events import log_event
from carmarket.utils.http import error_response, json_body, not_found, unauthorized
from carmarket.utils.phone import is_valid_kenyan_phone


subscriptions_bp = Blueprint("subscriptions_bp", __name__, url_prefix="/api/subscriptions")


def _plans() -> list[dict]:
    out = []
    for key, plan in SUBSCRIPTION_PLANS.items():
        out.append(
            {
                "id": key,
                "name": plan["name"],
                "price": plan["price"],
                "features": plan["features"],
                "display": {cycle: display_amounts(plan["price"][cycle] * 100) for cycle in BILLING_CYCLES},
            }
        )
    return out


@subscriptions_bp.get("")
def get_subscription():
    user = current_user()
    if not user:
        return unauthorized()
    sub = Subscription.query.filter_by(user_id=int(user.id)).first()
    return jsonify(
        {
            "ok": True,
            "subscription": sub.to_dict() if sub else None,
            "usage": usage_summary(user.id),
            "plans": _plans(),
        }
    ), 200


@subscriptions_bp.post("")
def subscribe():
    user = current_user()
    if not user:
        return unauthorized()
    data = json_body()
    plan = (data.get("plan") or "").strip().lower()
    billing_cycle = (data.get("billing_cycle") or "monthly").strip().lower()
    provider = (data.get("provider") or "stripe").strip().lower()
    phone_number = (data.get("phone_number") or "").strip() or None

    if plan not in SUBSCRIPTION_PLANS:
        return error_response(f"plan must be one of {', '.join(SUBSCRIPTION_PLANS)}", 400)
    if billing_cycle not in BILLING_CYCLES:
        return error_response("billing_cycle must be monthly or yearly", 400)
    if provider not in ("stripe", "mpesa"):
        return error_response("provider must be stripe or mpesa", 400)
    if provider == "mpesa" and not (phone_number and is_valid_kenyan_phone(phone_number)):
        return error_response("A valid Kenyan phone_number is required for M-Pesa payments", 400)

    price = plan_price_usd(plan, billing_cycle)
    now = datetime.utcnow()
    sub = Subscription.query.filter_by(user_id=int(user.id)).first()
    if sub is None:
        sub = Subscription(user_id=int(user.id), plan=plan, billing_cycle=billing_cycle, status="pending", created_at=now)
        db.session.add(sub)
    elif not sub.is_current(now):
        # A lapsed or cancelled row is reused for the new attempt.
        sub.plan = plan
        sub.billing_cycle = billing_cycle
        sub.status = "pending"
        sub.last_payment_id = None
    sub.updated_at = now

    try:
        payment, init = create_payment(
            user=user,
            listing_type=SUBSCRIPTION_LISTING_TYPE,
            provider_name=provider,
            usd_cents=price * 100,
            description=f"{SUBSCRIPTION_PLANS[plan]['name']} plan ({billing_cycle})",
            phone_number=phone_number,
            metadata={"plan": plan, "billing_cycle": billing_cycle, "purpose": "subscription"},
        )
        if payment.meta_dict().get("gateway") == "mock":
            transition_payment(
                payment,
                PaymentStatus.SUCCEEDED,
                actor={"type": "user", "id": user.id},
                idempotency_key=f"subscription_mock:{payment.payment_intent_id}",
                reason="mock checkout",
            )
        db.session.commit()
    except (IntegrationDisabledError, IntegrationMisconfiguredError, RuntimeError, ValueError) as e:
        db.session.rollback()
        return provider_error_response(e, action="subscription_create")

    current_app.logger.info("subscription_checkout user_id=%s plan=%s cycle=%s status=%s", user.id, plan, billing_cycle, payment.status)
    return jsonify(
        {
            "ok": True,
            "subscription": sub.to_dict(),
            "payment": payment.to_dict(),
            "client_secret": init.client_secret or None,
            "checkout_request_id": payment.payment_intent_id if provider == "mpesa" else None,
            "customer_message": init.customer_message or None,
            "price": display_amounts(price * 100),
        }
    ), 201


@subscriptions_bp.delete("")
def cancel_subscription():
    user = current_user()
    if not user:
        return unauthorized()
    sub = Subscription.query.filter_by(user_id=int(user.id)).first()
    if sub is None or (sub.status or "") != "active":
        return not_found("Active subscription")
    sub.cancel_at_period_end = True
    sub.updated_at = datetime.utcnow()
    log_event("subscription_cancel_requested", actor_user_id=user.id, subject_type="subscription", subject_id=sub.id)
    db.session.commit()
    return jsonify({"ok": True, "subscription": sub.to_dict()}), 200
