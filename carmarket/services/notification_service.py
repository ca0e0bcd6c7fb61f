from __future__ import annotations

import os
import smtplib
from datetime import datetime
from email.message import EmailMessage

from flask import current_app, g, has_request_context
from sqlalchemy import inspect as sa_inspect

from carmarket.extensions import db
from carmarket.integrations.common import IntegrationError, integrations_mode
from carmarket.integrations.messaging.base import MessageResult
from carmarket.integrations.messaging.factory import build_messaging_provider
from carmarket.models import Notification, NotificationSettings, User
from carmarket.models.notification import NOTIFICATION_TYPES


# Always delivered in-app regardless of topic toggles.
_MANDATORY_TYPES = ("system", "security")
DELIVERY_MAX_ATTEMPTS = 5


def queue_enabled() -> bool:
    return (os.getenv("NOTIFICATION_QUEUE") or "").strip().lower() in ("1", "true", "yes", "on")


def _remember_queued(row: Notification) -> None:
    if has_request_context():
        g.setdefault("_queued_notifications", []).append(row)


def get_settings(user_id: int) -> NotificationSettings:
    row = NotificationSettings.query.filter_by(user_id=int(user_id)).first()
    if row is None:
        row = NotificationSettings(user_id=int(user_id))
        db.session.add(row)
        db.session.flush()
    return row


def notify(
    user_id: int,
    kind: str,
    title: str,
    message: str,
    *,
    meta: dict | None = None,
    email: bool = False,
    sms: bool = False,
) -> Notification | None:
    """Queue an in-app notification plus optional email/SMS copies.

    Rows are added to the session; the caller owns the commit. Email and SMS
    rows stay ``queued`` until ``deliver_queued`` picks them up.
    """
    kind = (kind or "system").strip().lower()
    if kind not in NOTIFICATION_TYPES:
        kind = "system"
    settings = get_settings(user_id)
    if kind not in _MANDATORY_TYPES and not settings.allows(kind):
        return None

    now = datetime.utcnow()
    row = Notification(
        user_id=int(user_id),
        type=kind,
        channel="in_app",
        title=(title or "")[:160],
        message=message or "",
        status="sent",
        sent_at=now,
    )
    row.meta_data = meta
    db.session.add(row)

    if email and bool(settings.email_enabled):
        copy = Notification(user_id=int(user_id), type=kind, channel="email", title=(title or "")[:160], message=message or "", status="queued", is_read=True)
        copy.meta_data = meta
        db.session.add(copy)
        _remember_queued(copy)
    if sms and bool(settings.sms_enabled):
        copy = Notification(user_id=int(user_id), type=kind, channel="sms", title=(title or "")[:160], message=message or "", status="queued", is_read=True)
        copy.meta_data = meta
        db.session.add(copy)
        _remember_queued(copy)
    return row


def send_email(to: str, subject: str, body: str) -> dict:
    """Send through SMTP in live mode; log the message everywhere else."""
    mode = integrations_mode()
    smtp_host = (os.getenv("SMTP_HOST") or "").strip()
    if mode != "live" or not smtp_host:
        current_app.logger.info("email_logged to=%s subject=%s body=%s", to, subject, body)
        return {"ok": True, "mode": mode, "delivery": "log"}

    smtp_port = int(os.getenv("SMTP_PORT") or 587)
    smtp_user = (os.getenv("SMTP_USER") or "").strip()
    smtp_pass = (os.getenv("SMTP_PASSWORD") or "").strip()
    smtp_from = (os.getenv("SMTP_FROM") or smtp_user or "no-reply@localhost").strip()

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = smtp_from
    msg["To"] = to
    msg.set_content(body)
    try:
        with smtplib.SMTP(smtp_host, smtp_port, timeout=10) as server:
            server.ehlo()
            try:
                server.starttls()
            except smtplib.SMTPException:
                current_app.logger.warning("smtp_starttls_unavailable host=%s", smtp_host)
            if smtp_user and smtp_pass:
                server.login(smtp_user, smtp_pass)
            server.send_message(msg)
        current_app.logger.info("email_sent to=%s subject=%s", to, subject)
        return {"ok": True, "mode": mode, "delivery": "smtp"}
    except (smtplib.SMTPException, OSError):
        current_app.logger.exception("email_send_failed to=%s", to)
        return {"ok": False, "mode": mode, "delivery": "smtp", "error": "EMAIL_SEND_FAILED"}


def send_sms(to: str, message: str, *, reference: str = "") -> MessageResult:
    try:
        provider = build_messaging_provider()
    except IntegrationError as e:
        current_app.logger.warning("sms_unavailable to=%s reason=%s", to, str(e))
        return MessageResult.failed(e.code, str(e))
    result = provider.send_sms(to=to, message=message, reference=reference)
    if not result.ok:
        current_app.logger.warning("sms_send_failed to=%s code=%s", to, result.code)
    return result


def deliver_notification(row: Notification) -> bool:
    """Deliver one queued email/SMS row. Returns True when sent."""
    if row.channel == "in_app" or row.status == "sent":
        return True
    user = db.session.get(User, int(row.user_id))
    if user is None:
        row.status = "failed"
        return False

    if row.channel == "email":
        result = send_email(user.email, row.title or "Notification", row.message or "")
        ok = bool(result.get("ok"))
        row.provider = result.get("delivery") or "smtp"
    elif row.channel == "sms":
        if not user.phone:
            row.status = "failed"
            return False
        sms_result = send_sms(user.phone, row.message or "", reference=f"notif:{row.id}")
        ok = bool(sms_result.ok)
        row.provider = "sms"
        row.provider_ref = (sms_result.code or "")[:120]
    else:
        row.status = "failed"
        return False

    if ok:
        row.status = "sent"
        row.sent_at = datetime.utcnow()
    else:
        _record_failed_attempt(row)
    db.session.add(row)
    return ok


def _record_failed_attempt(row: Notification) -> None:
    """Keep the row queued until it has used up its delivery attempts."""
    meta = row.meta_data
    attempts = int(meta.get("delivery_attempts") or 0) + 1
    meta["delivery_attempts"] = attempts
    row.meta_data = meta
    row.status = "failed" if attempts >= DELIVERY_MAX_ATTEMPTS else "queued"


def deliver_queued(limit: int = 100) -> dict:
    rows = (
        Notification.query.filter(Notification.status == "queued", Notification.channel.in_(("email", "sms")))
        .order_by(Notification.created_at.asc())
        .limit(int(limit))
        .all()
    )
    sent = 0
    failed = 0
    retrying = 0
    for row in rows:
        if deliver_notification(row):
            sent += 1
        elif row.status == "queued":
            retrying += 1
        else:
            failed += 1
    db.session.commit()
    return {"processed": len(rows), "sent": sent, "failed": failed, "retrying": retrying}


def enqueue_request_deliveries() -> int:
    """Hand email/SMS rows committed during this request to the worker."""
    rows = g.pop("_queued_notifications", [])
    if not rows or not queue_enabled():
        return 0
    from carmarket.tasks.notification_tasks import send_notification
    from carmarket.utils.observability import get_request_id

    enqueued = 0
    for row in rows:
        if not sa_inspect(row).persistent:
            continue
        try:
            send_notification.delay(notification_id=int(row.id), trace_id=get_request_id())
            enqueued += 1
        except Exception:
            # Beat delivery picks the row up later.
            current_app.logger.exception("notification_enqueue_failed id=%s", row.id)
    return enqueued
