from __future__ import annotations

from celery import shared_task
from sqlalchemy.exc import SQLAlchemyError

from carmarket.extensions import db
from carmarket.services.listing_service import expire_listings as run_expire_listings
from carmarket.services.payment_service import reconcile_pending_payments as run_reconcile
from carmarket.tasks._common import TaskRun


def _sweep(task, trace_id: str, sweep, **kwargs) -> dict:
    run = TaskRun(task, trace_id)
    try:
        result = sweep(**kwargs)
    except SQLAlchemyError as exc:
        db.session.rollback()
        if run.can_retry():
            raise run.retry(exc)
        run.log("failed", detail=str(exc))
        raise
    run.log("ok", **result)
    return result


@shared_task(bind=True, name="carmarket.tasks.listing_tasks.expire_listings", max_retries=3)
def expire_listings(self, *, trace_id: str = ""):
    """Hourly sweep over listings, rentals and subscriptions past their end dates."""
    return _sweep(self, trace_id, run_expire_listings)


@shared_task(bind=True, name="carmarket.tasks.listing_tasks.reconcile_pending_payments", max_retries=3)
def reconcile_pending_payments(self, *, older_than_minutes: int = 10, trace_id: str = ""):
    return _sweep(self, trace_id, run_reconcile, older_than_minutes=int(older_than_minutes))
