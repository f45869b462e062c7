"""
SQLAlchemy models backing the synchronization engine: run ledger, cursors,
checkpoints, failures, schedules, single-flight locks and the schema version
row owned by the migration runner.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint, event, select
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncRunStatus(str, enum.Enum):
    """Lifecycle states for a sync run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {
        SyncRunStatus.SUCCEEDED,
        SyncRunStatus.PARTIALLY_FAILED,
        SyncRunStatus.FAILED,
        SyncRunStatus.CANCELLED,
    }
)

RUN_COUNTER_FIELDS = (
    "records_processed",
    "records_created",
    "records_updated",
    "records_deleted",
    "records_skipped",
    "records_failed",
    "fk_errors",
    "api_calls_made",
    "api_calls_saved",
    "cache_hits",
)


class RunLedgerClosedError(RuntimeError):
    """Raised when a closed run record is modified."""


class SyncRun(BaseModel):
    """Ledger entry for one entity sync executed by a task."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    sync_type: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    task_type: Mapped[str | None] = mapped_column(db.String(50), nullable=True, index=True)
    mode: Mapped[str] = mapped_column(db.String(20), nullable=False, default="incremental")
    status: Mapped[SyncRunStatus] = mapped_column(
        Enum(SyncRunStatus, name="sync_run_status_enum"),
        nullable=False,
        default=SyncRunStatus.PENDING,
        index=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    triggered_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    records_processed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_created: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_updated: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_deleted: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_skipped: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_failed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    fk_errors: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    api_calls_made: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    api_calls_saved: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    cache_hits: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    counts_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    max_source_updated_at: Mapped[datetime | None] = mapped_column(
        db.DateTime(timezone=True),
        nullable=True,
        comment="Latest upstream updated-at observed during the run.",
    )

    triggered_by_user = relationship("User", foreign_keys=[triggered_by_user_id])
    failures = relationship("SyncFailure", back_populates="run", passive_deletes=True)

    __table_args__ = (Index("idx_sync_runs_type_status", "sync_type", "status"),)

    @property
    def is_closed(self) -> bool:
        return self.finished_at is not None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (_as_utc(self.finished_at) - _as_utc(self.started_at)).total_seconds()

    def close(
        self,
        status: SyncRunStatus,
        *,
        error_summary: str | None = None,
        finished_at: datetime | None = None,
    ) -> None:
        """Move the run into a terminal state; the row is read-only afterwards."""
        if self.is_closed:
            raise RunLedgerClosedError(f"Sync run {self.id} is already closed.")
        if not status.is_terminal:
            raise ValueError(f"Cannot close a run with non-terminal status '{status.value}'.")
        self.status = status
        self.error_summary = error_summary
        self.finished_at = finished_at or _utcnow()

    def counters(self) -> dict[str, int]:
        return {name: int(getattr(self, name) or 0) for name in RUN_COUNTER_FIELDS}


@event.listens_for(SyncRun, "before_update")
def _reject_closed_run_updates(mapper, connection, target: SyncRun) -> None:
    persisted_finished_at = connection.execute(
        select(SyncRun.__table__.c.finished_at).where(SyncRun.__table__.c.id == target.id)
    ).scalar()
    if persisted_finished_at is not None:
        raise RunLedgerClosedError(f"Sync run {target.id} is closed and cannot be modified.")


class SyncCursor(BaseModel):
    """Incremental watermark per source/entity (optionally per entity instance)."""

    __tablename__ = "sync_cursors"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    scope_key: Mapped[str] = mapped_column(db.String(100), nullable=False, default="")
    last_synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    last_full_sync_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    last_run_id: Mapped[int | None] = mapped_column(
        ForeignKey("sync_runs.id", ondelete="SET NULL"),
        nullable=True,
    )
    metadata_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("source", "entity_type", "scope_key", name="uq_sync_cursors_scope"),
    )


class SyncCheckpoint(BaseModel):
    """Durable progress record for resumable batch jobs."""

    __tablename__ = "sync_checkpoints"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(100), unique=True, nullable=False)
    offset: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_synced: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    fk_errors: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    payload_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)


class SchemaInfo(db.Model):
    """Single-row record of the highest applied migration version."""

    __tablename__ = "schema_info"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=False)
    version: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    updated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)


class SyncFailure(BaseModel):
    """Granular record of one entity that failed to sync, triaged independently of its run."""

    __tablename__ = "sync_failures"

    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[int | None] = mapped_column(
        ForeignKey("sync_runs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    sync_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    entity_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    failure_reason: Mapped[str] = mapped_column(db.String(50), nullable=False)
    http_status: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    error_details: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    is_resolved: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    resolved_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    resolution_notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    run = relationship("SyncRun", back_populates="failures")

    __table_args__ = (
        Index("idx_sync_failures_entity", "entity_type", "entity_id"),
        Index("idx_sync_failures_resolved", "is_resolved"),
    )


class ScheduledTask(BaseModel):
    """Scheduler definition for one named sync task."""

    __tablename__ = "scheduled_tasks"

    id: Mapped[int] = mapped_column(primary_key=True)
    task_type: Mapped[str] = mapped_column(db.String(50), unique=True, nullable=False)
    task_name: Mapped[str] = mapped_column(db.String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    interval_minutes: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    schedule_days: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    schedule_time: Mapped[str | None] = mapped_column(db.String(5), nullable=True)
    config: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    next_run_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    last_status: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    last_error: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    last_duration_seconds: Mapped[float | None] = mapped_column(db.Float, nullable=True)
    run_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    fail_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)

    history = relationship("TaskRunHistory", back_populates="task", passive_deletes=True)


class TaskRunHistory(BaseModel):
    """One execution of a scheduled task."""

    __tablename__ = "task_run_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    task_id: Mapped[int | None] = mapped_column(
        ForeignKey("scheduled_tasks.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    task_type: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    status: Mapped[str] = mapped_column(db.String(20), nullable=False, default="running")
    started_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(db.Float, nullable=True)
    result_summary: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    triggered_by_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    task = relationship("ScheduledTask", back_populates="history")


class TaskLock(db.Model):
    """Single-flight lock row; at most one holder per task type or entity key."""

    __tablename__ = "sync_task_locks"

    task_type: Mapped[str] = mapped_column(db.String(50), primary_key=True)
    holder: Mapped[str] = mapped_column(db.String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
