"""
Celery tasks for the sync worker.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from .orchestrator import SyncOrchestrator

RUN_TASK_NAME = "sync.run_scheduled_task"


@shared_task(name="sync.healthcheck", bind=True)
def sync_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by ``flask sync worker ping``."""
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name=RUN_TASK_NAME, bind=True)
def run_scheduled_task(
    self,
    task_type: str,
    triggered_by_user_id: int | None = None,
    config: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Execute one scheduled task. Failures are already recorded on the task
    row and run ledger by the orchestrator; they are re-raised so Celery
    marks the task failed.
    """
    try:
        result = SyncOrchestrator().run_task(
            task_type,
            config=config,
            triggered_by_user_id=triggered_by_user_id,
        )
    except Exception as exc:
        current_app.logger.exception(
            "Scheduled sync task failed",
            extra={"sync_task_type": task_type, "sync_celery_task_id": self.request.id, "sync_error": str(exc)},
        )
        raise
    return result.to_dict()


@shared_task(name="sync.scheduler_tick", bind=True)
def scheduler_tick(self) -> dict[str, Any]:
    """Enqueue every due task on the sync queue."""

    def _enqueue(task_type: str) -> str:
        return run_scheduled_task.apply_async(kwargs={"task_type": task_type}).id

    queued = SyncOrchestrator().tick(dispatch=_enqueue)
    return {"queued": queued}
