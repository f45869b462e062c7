"""
Scheduler-driven dispatch of named sync tasks.

The orchestrator only decides whether a task is due and hands its typed
configuration to the matching entity job; the jobs own the sync internals.
Every execution holds a single-flight lock for its task type and one for each
``<source>_<entity>`` it writes, so two task types never write the same
table at once. It records one ``task_run_history`` row and updates the
schedule bookkeeping on the ``scheduled_tasks`` row.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Any, Callable, Mapping

from flask import current_app, has_app_context
from sqlalchemy.orm import Session

from partner_portal.models import ScheduledTask, SyncRun, SyncRunStatus, TaskRunHistory, db

from .adapters.crm.fetcher import CrmFetcher
from .adapters.lms.fetcher import LmsFetcher
from .errors import TaskConfigurationError
from .locks import TaskLockManager
from .pipeline.base import EntitySyncJob, SyncOutcome
from .pipeline.cleanup import cleanup_sync_history
from .pipeline.crm_sync import ContactsSync, LeadsSync, PartnersSync
from .pipeline.lms_sync import CoursesSync, EnrollmentsSync, GroupsSync, UsersSync
from .pipeline.run_service import summarize_error
from .registry import TaskDescriptor, resolve_task
from .task_config import ChainSyncConfig, CleanupConfig, EnrollmentSyncConfig, TaskConfig, parse_task_config
from .utils import ensure_utc, utcnow

FAILURE_RETRY_MINUTES = 30
RESTART_ERROR = "Server restart during execution"

STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_PARTIAL = "partially_failed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

JOB_CLASSES: Mapping[tuple[str, str], type[EntitySyncJob]] = {
    ("lms", "users"): UsersSync,
    ("lms", "groups"): GroupsSync,
    ("lms", "courses"): CoursesSync,
    ("lms", "enrollments"): EnrollmentsSync,
    ("crm", "partners"): PartnersSync,
    ("crm", "contacts"): ContactsSync,
    ("crm", "leads"): LeadsSync,
}

FetcherFactory = Callable[[Mapping[str, Any]], Any]

DEFAULT_FETCHER_FACTORIES: Mapping[str, FetcherFactory] = {
    "lms": LmsFetcher.from_config,
    "crm": CrmFetcher.from_config,
}


@dataclass
class TaskResult:
    task_type: str
    status: str
    history_id: int | None = None
    duration_seconds: float | None = None
    runs: list[dict[str, Any]] = field(default_factory=list)
    summary: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_type": self.task_type,
            "status": self.status,
            "history_id": self.history_id,
            "duration_seconds": self.duration_seconds,
            "runs": self.runs,
            "summary": self.summary,
        }


@dataclass
class RecoveryResult:
    tasks_failed: int = 0
    history_cancelled: int = 0
    runs_failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "tasks_failed": self.tasks_failed,
            "history_cancelled": self.history_cancelled,
            "runs_failed": self.runs_failed,
        }


# Schedule helpers ---------------------------------------------------------------


def parse_schedule_days(raw: str | None) -> frozenset[int]:
    """``"mon,wed,fri"`` -> weekday numbers (Monday is 0). ``daily`` means every day."""
    if not raw:
        return frozenset()
    days: set[int] = set()
    for token in raw.split(","):
        name = token.strip().lower()
        if not name:
            continue
        if name in ("daily", "*"):
            return frozenset(range(7))
        key = name[:3]
        if key not in WEEKDAYS:
            raise TaskConfigurationError(f"Unknown schedule day '{token.strip()}'.")
        days.add(WEEKDAYS.index(key))
    return frozenset(days)


def parse_schedule_time(raw: str | None) -> time | None:
    if not raw:
        return None
    try:
        hours, minutes = (int(part) for part in raw.strip().split(":", 1))
        return time(hour=hours, minute=minutes)
    except ValueError as exc:
        raise TaskConfigurationError(f"schedule_time must be HH:MM; got {raw!r}.") from exc


def _slot_on(day: datetime, at: time) -> datetime:
    return day.replace(hour=at.hour, minute=at.minute, second=0, microsecond=0)


def next_slot(days: frozenset[int], at: time, now: datetime) -> datetime | None:
    """First listed weekday at ``at`` strictly after ``now`` (UTC)."""
    if not days:
        return None
    for offset in range(8):
        candidate = _slot_on(now + timedelta(days=offset), at)
        if candidate.weekday() in days and candidate > now:
            return candidate
    return None


def is_task_due(task: ScheduledTask, now: datetime) -> bool:
    """
    Interval tasks are due when ``next_run_at`` is unset or has passed.
    Day/time tasks are due once per listed day at or after ``schedule_time``,
    and again at ``next_run_at`` after a failure. A queued task is held off
    until ``next_run_at``.
    """
    if not task.enabled or task.last_status == STATUS_RUNNING:
        return False
    next_run_at = ensure_utc(task.next_run_at)
    if task.last_status == STATUS_QUEUED and next_run_at is not None and next_run_at > now:
        return False
    if task.interval_minutes:
        return next_run_at is None or next_run_at <= now

    days = parse_schedule_days(task.schedule_days)
    at = parse_schedule_time(task.schedule_time)
    if not days or at is None:
        return False
    if task.last_status == STATUS_FAILED and next_run_at is not None and next_run_at <= now:
        return True
    if now.weekday() not in days:
        return False
    slot = _slot_on(now, at)
    if now < slot:
        return False
    last_run_at = ensure_utc(task.last_run_at)
    return last_run_at is None or last_run_at < slot


def compute_next_run(task: ScheduledTask, now: datetime, *, succeeded: bool) -> datetime | None:
    if not succeeded:
        retry = min(task.interval_minutes or FAILURE_RETRY_MINUTES, FAILURE_RETRY_MINUTES)
        return now + timedelta(minutes=retry)
    if task.interval_minutes:
        return now + timedelta(minutes=task.interval_minutes)
    at = parse_schedule_time(task.schedule_time)
    if at is None:
        return None
    return next_slot(parse_schedule_days(task.schedule_days), at, now)


# Orchestrator -----------------------------------------------------------------


class SyncOrchestrator:
    def __init__(
        self,
        *,
        session: Session | None = None,
        config: Mapping[str, Any] | None = None,
        fetcher_factories: Mapping[str, FetcherFactory] | None = None,
        locks: TaskLockManager | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session = session or db.session
        if config is None:
            config = current_app.config if has_app_context() else {}
        self.config = config
        if fetcher_factories is None and has_app_context():
            fetcher_factories = current_app.extensions.get("sync", {}).get("fetcher_factories")
        self.fetcher_factories = dict(DEFAULT_FETCHER_FACTORIES)
        self.fetcher_factories.update(fetcher_factories or {})
        self.locks = locks or TaskLockManager(
            self.session,
            ttl=timedelta(minutes=int(config.get("SYNC_TASK_LOCK_TTL_MINUTES", 120))),
            clock=clock,
        )
        self.logger = logger or (current_app.logger if has_app_context() else logging.getLogger(__name__))
        self.clock = clock

    # Scheduling -------------------------------------------------------------------

    def due_tasks(self, now: datetime | None = None) -> list[ScheduledTask]:
        now = now or self.clock()
        tasks = self.session.query(ScheduledTask).filter(ScheduledTask.enabled.is_(True)).order_by(ScheduledTask.id)
        return [task for task in tasks if is_task_due(task, now)]

    def tick(
        self,
        now: datetime | None = None,
        *,
        dispatch: Callable[[str], Any] | None = None,
    ) -> dict[str, Any]:
        """
        Dispatch every due task. ``dispatch`` defaults to running the task
        inline; the worker passes a function that enqueues it instead. An
        enqueued task is marked ``queued`` and held off for the lock TTL so
        later ticks do not enqueue it again before a worker picks it up.
        """
        now = now or self.clock()
        due_tasks = self.due_tasks(now)
        due = [task.task_type for task in due_tasks]
        outcomes: dict[str, Any] = {}
        if dispatch is not None:
            for task in due_tasks:
                outcomes[task.task_type] = dispatch(task.task_type)
                task.last_status = STATUS_QUEUED
                task.next_run_at = now + self.locks.ttl
            self.session.commit()
        else:
            for task_type in due:
                try:
                    outcomes[task_type] = self.run_task(task_type).to_dict()
                except Exception as exc:
                    self.logger.warning(
                        "Scheduled task did not complete",
                        extra={"sync_task_type": task_type, "sync_error": str(exc)},
                    )
                    outcomes[task_type] = {"status": STATUS_FAILED, "error": summarize_error(exc)}
        if due:
            self.logger.info("Scheduler tick dispatched tasks", extra={"sync_due_tasks": due})
        return outcomes

    # Execution ----------------------------------------------------------------------

    def run_task(
        self,
        task_type: str,
        *,
        config: Mapping[str, Any] | None = None,
        triggered_by_user_id: int | None = None,
    ) -> TaskResult:
        try:
            descriptor = resolve_task(task_type)
        except KeyError as exc:
            raise TaskConfigurationError(f"Unknown task type '{task_type}'.") from exc

        task = self.session.query(ScheduledTask).filter_by(task_type=task_type).one_or_none()
        if task is not None and not task.enabled:
            raise TaskConfigurationError(f"Task '{task_type}' is disabled.")
        payload = config if config is not None else (task.config if task is not None else None)
        parsed = parse_task_config(descriptor, payload, defaults=self._config_defaults(descriptor))

        with ExitStack() as held:
            for lock_key in self.lock_keys(descriptor, parsed):
                held.enter_context(self.locks.hold(lock_key))
            return self._execute(descriptor, task, parsed, triggered_by_user_id)

    def lock_keys(self, descriptor: TaskDescriptor, parsed: TaskConfig) -> list[str]:
        """The task type, then one ``<source>_<entity>`` key per entity the task writes."""
        return [descriptor.task_type] + [
            f"{descriptor.source}_{entity}" for entity in self._entities(descriptor, parsed)
        ]

    @staticmethod
    def _entities(descriptor: TaskDescriptor, parsed: TaskConfig) -> tuple[str, ...]:
        if isinstance(parsed, CleanupConfig):
            return ()
        if isinstance(parsed, ChainSyncConfig):
            return tuple(parsed.sync_types)
        return (descriptor.entity,)

    def _execute(
        self,
        descriptor: TaskDescriptor,
        task: ScheduledTask | None,
        parsed: TaskConfig,
        triggered_by_user_id: int | None,
    ) -> TaskResult:
        started_at = self.clock()
        history = TaskRunHistory(
            task_id=task.id if task is not None else None,
            task_type=descriptor.task_type,
            status=STATUS_RUNNING,
            started_at=started_at,
            triggered_by_user_id=triggered_by_user_id,
        )
        self.session.add(history)
        if task is not None:
            task.last_status = STATUS_RUNNING
        self.session.commit()
        history_id = history.id
        task_id = task.id if task is not None else None
        log_extra = {"sync_task_type": descriptor.task_type, "sync_history_id": history_id}
        self.logger.info("Sync task started", extra=log_extra)

        try:
            result = self._dispatch(descriptor, parsed, triggered_by_user_id)
        except Exception as exc:
            self.session.rollback()
            self._finish(task_id, history_id, started_at, status=STATUS_FAILED, error=summarize_error(exc))
            self.logger.exception("Sync task failed", extra={**log_extra, "sync_error": str(exc)})
            raise

        result.history_id = history_id
        result.duration_seconds = self._finish(
            task_id, history_id, started_at, status=result.status, summary=result.summary
        )
        self.logger.info(
            "Sync task finished",
            extra={**log_extra, "sync_status": result.status, "sync_summary": result.summary},
        )
        return result

    def _finish(
        self,
        task_id: int | None,
        history_id: int,
        started_at: datetime,
        *,
        status: str,
        summary: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> float:
        now = self.clock()
        duration = (now - started_at).total_seconds()
        history = self.session.get(TaskRunHistory, history_id)
        history.status = status
        history.completed_at = now
        history.duration_seconds = duration
        history.result_summary = summary
        history.error_message = error

        task = self.session.get(ScheduledTask, task_id) if task_id is not None else None
        if task is not None:
            succeeded = status != STATUS_FAILED
            task.last_status = status
            task.last_run_at = now
            task.last_duration_seconds = duration
            task.next_run_at = compute_next_run(task, now, succeeded=succeeded)
            if succeeded:
                task.run_count = (task.run_count or 0) + 1
                task.last_error = None
            else:
                task.fail_count = (task.fail_count or 0) + 1
                task.last_error = error
        self.session.commit()
        return duration

    def _dispatch(
        self, descriptor: TaskDescriptor, parsed: TaskConfig, triggered_by_user_id: int | None
    ) -> TaskResult:
        if isinstance(parsed, CleanupConfig):
            cleaned = cleanup_sync_history(
                retention_days=parsed.retention_days, session=self.session, now=self.clock()
            )
            return TaskResult(descriptor.task_type, STATUS_COMPLETED, summary=cleaned.to_dict())

        fetcher = self._fetcher(descriptor.source)
        outcomes: list[SyncOutcome] = []
        for entity in self._entities(descriptor, parsed):
            job = self._build_job(descriptor, entity, parsed, fetcher, triggered_by_user_id)
            outcomes.append(job.run())

        status = STATUS_COMPLETED
        if any(outcome.run.status is SyncRunStatus.PARTIALLY_FAILED for outcome in outcomes):
            status = STATUS_PARTIAL
        runs = [outcome.to_dict() for outcome in outcomes]
        summary = {
            "runs": [run["run_id"] for run in runs],
            "records_processed": sum(run["records_processed"] for run in runs),
            "records_failed": sum(run["records_failed"] for run in runs),
            "api_calls_made": sum(run["api_calls_made"] for run in runs),
            "api_calls_saved": sum(run["api_calls_saved"] for run in runs),
        }
        return TaskResult(descriptor.task_type, status, runs=runs, summary=summary)

    def _build_job(
        self,
        descriptor: TaskDescriptor,
        entity: str,
        parsed: TaskConfig,
        fetcher,
        triggered_by_user_id: int | None,
    ) -> EntitySyncJob:
        job_class = JOB_CLASSES.get((descriptor.source, entity))
        if job_class is None:
            raise TaskConfigurationError(f"No sync job for {descriptor.source} {entity}.")
        kwargs: dict[str, Any] = {
            "mode": parsed.mode,
            "task_type": descriptor.task_type,
            "triggered_by_user_id": triggered_by_user_id,
            "session": self.session,
            "config": self.config,
            "logger": self.logger,
            "clock": self.clock,
        }
        if job_class is EnrollmentsSync:
            kwargs["max_age_days"] = parsed.max_age_days
            kwargs["batch_size"] = parsed.batch_size
            if isinstance(parsed, EnrollmentSyncConfig):
                kwargs["partner_users_only"] = parsed.partner_users_only
        return job_class(fetcher, **kwargs)

    def _fetcher(self, source: str | None):
        factory = self.fetcher_factories.get(source or "")
        if factory is None:
            raise TaskConfigurationError(f"No fetcher configured for source '{source}'.")
        return factory(self.config)

    def _config_defaults(self, descriptor: TaskDescriptor) -> dict[str, Any]:
        if descriptor.kind == "chain" or descriptor.entity == "enrollments":
            return {
                "batch_size": int(self.config.get("SYNC_ENROLLMENT_BATCH_SIZE", 200)),
                "max_age_days": int(self.config.get("SYNC_ENROLLMENT_MAX_AGE_DAYS", 7)),
            }
        return {}

    # Recovery -----------------------------------------------------------------------

    def recover_stale(self) -> RecoveryResult:
        """
        Close out work interrupted by a process restart: tasks left in
        ``running`` are failed, open history rows are cancelled and running
        ledger entries are closed as failed.
        """
        now = self.clock()
        result = RecoveryResult()
        for task in self.session.query(ScheduledTask).filter(ScheduledTask.last_status == STATUS_RUNNING).all():
            task.last_status = STATUS_FAILED
            task.last_error = RESTART_ERROR
            task.fail_count = (task.fail_count or 0) + 1
            task.next_run_at = compute_next_run(task, now, succeeded=False)
            result.tasks_failed += 1
        for history in self.session.query(TaskRunHistory).filter(TaskRunHistory.status == STATUS_RUNNING).all():
            history.status = STATUS_CANCELLED
            history.completed_at = now
            history.error_message = RESTART_ERROR
            result.history_cancelled += 1
        for run in self.session.query(SyncRun).filter(
            SyncRun.status == SyncRunStatus.RUNNING, SyncRun.finished_at.is_(None)
        ).all():
            run.close(SyncRunStatus.FAILED, error_summary=RESTART_ERROR, finished_at=now)
            result.runs_failed += 1
        self.session.commit()
        if result.tasks_failed or result.history_cancelled or result.runs_failed:
            self.logger.warning("Recovered interrupted sync work", extra={"sync_recovery": result.to_dict()})
        return result
