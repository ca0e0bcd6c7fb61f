from __future__ import annotations

import json
import time
from datetime import datetime

from flask import current_app


RETRY_BASE_SECONDS = 5
RETRY_CAP_SECONDS = 900


def retry_countdown(retries: int) -> int:
    """5s, 10s, 20s ... capped at 15 minutes."""
    return min(RETRY_CAP_SECONDS, RETRY_BASE_SECONDS * 2 ** max(0, int(retries)))


class TaskRun:
    """Timing and JSON log lines for one task invocation."""

    def __init__(self, task, trace_id: str = ""):
        self.task = task
        self.trace_id = str(trace_id or "")
        self.started = time.perf_counter()

    @property
    def name(self) -> str:
        return str(self.task.name or "").rsplit(".", 1)[-1]

    def log(self, status: str, **extra) -> None:
        line = {
            "task_name": self.name,
            "status": status,
            "duration_ms": int((time.perf_counter() - self.started) * 1000),
            "trace_id": self.trace_id,
            "timestamp": datetime.utcnow().isoformat(),
        }
        line.update(extra)
        current_app.logger.info(json.dumps(line, default=str))

    def can_retry(self) -> bool:
        return int(self.task.request.retries or 0) < int(self.task.max_retries or 0)

    def retry(self, exc: Exception, **extra):
        """Log and raise the Celery retry for ``exc``."""
        countdown = retry_countdown(int(self.task.request.retries or 0))
        self.log("retrying", detail=str(exc), countdown=countdown, **extra)
        return self.task.retry(exc=exc, countdown=countdown)
