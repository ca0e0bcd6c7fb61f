from __future__ import annotations

from celery import shared_task

from carmarket.extensions import db
from carmarket.models import Notification
from carmarket.services.notification_service import deliver_notification, deliver_queued
from carmarket.tasks._common import TaskRun


@shared_task(bind=True, name="carmarket.tasks.notification_tasks.send_notification", max_retries=5)
def send_notification(self, *, notification_id: int, trace_id: str = ""):
    """Deliver one queued email/SMS row, retrying with backoff on failure."""
    run = TaskRun(self, trace_id)
    row = db.session.get(Notification, int(notification_id))
    if row is None:
        run.log("missing", notification_id=notification_id)
        return {"ok": False, "detail": "not_found"}
    if row.status == "sent":
        return {"ok": True, "detail": "already_sent"}

    if deliver_notification(row):
        db.session.commit()
        run.log("ok", notification_id=row.id, channel=row.channel)
        return {"ok": True, "detail": "sent"}

    db.session.commit()
    if row.status == "queued" and run.can_retry():
        raise run.retry(RuntimeError(f"notification_delivery_failed:{row.id}"), notification_id=row.id)

    run.log("failed", notification_id=row.id, channel=row.channel)
    return {"ok": False, "detail": "failed"}


@shared_task(bind=True, name="carmarket.tasks.notification_tasks.deliver_queued_notifications", max_retries=0)
def deliver_queued_notifications(self, *, limit: int = 100, trace_id: str = ""):
    run = TaskRun(self, trace_id)
    result = deliver_queued(limit=max(1, min(int(limit), 500)))
    run.log("ok", **result)
    return result
