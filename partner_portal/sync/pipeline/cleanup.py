"""
Retention cleanup for the sync ledger tables.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from partner_portal.models import SyncFailure, SyncRun, TaskLock, TaskRunHistory, db

from ..utils import utcnow


@dataclass
class CleanupResult:
    runs_deleted: int = 0
    history_deleted: int = 0
    failures_deleted: int = 0
    locks_cleared: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def cleanup_sync_history(
    *,
    retention_days: int = 30,
    session: Session | None = None,
    now: datetime | None = None,
) -> CleanupResult:
    """
    Delete closed runs, finished task history and resolved failures older
    than ``retention_days``, and clear expired task locks.
    """
    if retention_days < 1:
        raise ValueError("retention_days must be at least 1.")
    session = session or db.session
    now = now or utcnow()
    cutoff = now - timedelta(days=retention_days)
    result = CleanupResult()

    result.failures_deleted = (
        session.query(SyncFailure)
        .filter(SyncFailure.is_resolved.is_(True), SyncFailure.resolved_at < cutoff)
        .delete(synchronize_session=False)
    )
    result.history_deleted = (
        session.query(TaskRunHistory)
        .filter(TaskRunHistory.completed_at.isnot(None), TaskRunHistory.completed_at < cutoff)
        .delete(synchronize_session=False)
    )
    # Runs with unresolved failures are kept for triage.
    open_failure_runs = select(SyncFailure.run_id).where(
        SyncFailure.is_resolved.is_(False), SyncFailure.run_id.isnot(None)
    )
    result.runs_deleted = (
        session.query(SyncRun)
        .filter(
            SyncRun.finished_at.isnot(None),
            SyncRun.finished_at < cutoff,
            SyncRun.id.notin_(open_failure_runs),
        )
        .delete(synchronize_session=False)
    )
    result.locks_cleared = session.query(TaskLock).filter(TaskLock.expires_at < now).delete(
        synchronize_session="fetch"
    )
    session.commit()
    return result
