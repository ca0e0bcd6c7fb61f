from __future__ import annotations

import json
import os
from datetime import datetime

from celery import Celery
from celery.signals import task_failure, task_retry


DEFAULT_BROKER = "redis://localhost:6379/0"

# beat entry -> (task path, interval env var, default seconds, minimum seconds)
BEAT_JOBS = {
    "expire-listings": ("carmarket.tasks.listing_tasks.expire_listings", "EXPIRE_LISTINGS_INTERVAL_SECONDS", 3600, 60),
    "reconcile-pending-payments": (
        "carmarket.tasks.listing_tasks.reconcile_pending_payments",
        "PAYMENT_RECONCILE_INTERVAL_SECONDS",
        900,
        30,
    ),
    "deliver-queued-notifications": (
        "carmarket.tasks.notification_tasks.deliver_queued_notifications",
        "NOTIFICATION_DELIVERY_INTERVAL_SECONDS",
        60,
        30,
    ),
}

_observers = {"bound": False}


def _env(*names: str) -> str:
    for name in names:
        value = (os.getenv(name) or "").strip()
        if value:
            return value
    return ""


def _interval(env_name: str, default: int, minimum: int) -> float:
    try:
        seconds = int(_env(env_name) or default)
    except ValueError:
        seconds = default
    return float(max(minimum, seconds))


def beat_schedule() -> dict:
    return {
        name: {"task": task, "schedule": _interval(env_name, default, minimum)}
        for name, (task, env_name, default, minimum) in BEAT_JOBS.items()
    }


def _task_line(event: str, task_name: str, task_id, kwargs, **extra) -> str:
    trace_id = (kwargs or {}).get("trace_id") if isinstance(kwargs, dict) else ""
    payload = {
        "event": event,
        "task_name": task_name or "",
        "task_id": str(task_id or ""),
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra)
    return json.dumps(payload, default=str)


def _bind_task_observers(flask_app) -> None:
    if _observers["bound"]:
        return

    @task_failure.connect(weak=False)
    def _log_failure(sender=None, task_id=None, exception=None, kwargs=None, einfo=None, **_):
        flask_app.logger.error(
            _task_line("celery_task_failure", getattr(sender, "name", ""), task_id, kwargs, exception=str(exception or ""), einfo=str(einfo or ""))
        )

    @task_retry.connect(weak=False)
    def _log_retry(request=None, reason=None, **_):
        flask_app.logger.warning(
            _task_line(
                "celery_task_retry",
                str(getattr(request, "task", "") or ""),
                getattr(request, "id", ""),
                getattr(request, "kwargs", None),
                reason=str(reason or ""),
                retry_count=int(getattr(request, "retries", 0) or 0),
            )
        )

    _observers["bound"] = True


def create_celery_app(flask_app) -> Celery:
    """Celery bound to the Flask app: every task body runs inside an app context."""
    broker = _env("CELERY_BROKER_URL", "REDIS_URL") or DEFAULT_BROKER
    celery = Celery(flask_app.import_name, broker=broker, backend=_env("CELERY_RESULT_BACKEND", "REDIS_URL") or broker)
    celery.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        task_acks_late=True,
        task_track_started=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        timezone="UTC",
        enable_utc=True,
        beat_schedule=beat_schedule(),
    )
    celery.conf.update(flask_app.config)

    class AppContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = AppContextTask
    for module in ("listing_tasks", "notification_tasks"):
        celery.autodiscover_tasks(["carmarket.tasks"], related_name=module)
    _bind_task_observers(flask_app)
    return celery
