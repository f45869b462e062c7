from __future__ import annotations

from datetime import datetime, time, timedelta, timezone

import pytest
from sync_fakes import FakeResponse, lms_course, lms_page, lms_person, lms_url

from partner_portal.models import ScheduledTask, SyncRun, SyncRunStatus, TaskLock, TaskRunHistory, db
from partner_portal.sync.errors import TaskConfigurationError, TaskLockedError
from partner_portal.sync.locks import TaskLockManager
from partner_portal.sync.orchestrator import (
    RESTART_ERROR,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PARTIAL,
    STATUS_QUEUED,
    SyncOrchestrator,
    compute_next_run,
    is_task_due,
    next_slot,
    parse_schedule_days,
    parse_schedule_time,
)
from partner_portal.sync.pipeline.checkpoints import Checkpoint, CheckpointStore
from partner_portal.sync.registry import resolve_task
from partner_portal.sync.task_config import parse_task_config
from partner_portal.sync.utils import ensure_utc, utcnow

MONDAY = datetime(2024, 6, 3, tzinfo=timezone.utc)
PEOPLE_URL = lms_url("/v2/people")
COURSES_URL = lms_url("/v2/courses")


def _task(**kwargs) -> ScheduledTask:
    kwargs.setdefault("task_type", "sync_users")
    kwargs.setdefault("task_name", "Sync LMS Users")
    kwargs.setdefault("enabled", True)
    return ScheduledTask(**kwargs)


# Schedule helpers ---------------------------------------------------------------


def test_parse_schedule_days():
    assert parse_schedule_days("mon, Wed,friday") == {0, 2, 4}
    assert parse_schedule_days("daily") == set(range(7))
    assert parse_schedule_days("") == frozenset()
    with pytest.raises(TaskConfigurationError):
        parse_schedule_days("mon,funday")


def test_parse_schedule_time():
    assert parse_schedule_time("02:30") == time(2, 30)
    assert parse_schedule_time(None) is None
    with pytest.raises(TaskConfigurationError):
        parse_schedule_time("2pm")


def test_next_slot_skips_past_slot_today():
    now = MONDAY.replace(hour=3)
    assert next_slot(frozenset({0}), time(2, 0), now) == datetime(2024, 6, 10, 2, 0, tzinfo=timezone.utc)
    assert next_slot(frozenset({0, 1}), time(2, 0), now) == datetime(2024, 6, 4, 2, 0, tzinfo=timezone.utc)
    assert next_slot(frozenset(), time(2, 0), now) is None


def test_interval_task_due_when_next_run_passed():
    now = MONDAY.replace(hour=12)

    assert is_task_due(_task(interval_minutes=60), now) is True
    assert is_task_due(_task(interval_minutes=60, next_run_at=now - timedelta(minutes=1)), now) is True
    assert is_task_due(_task(interval_minutes=60, next_run_at=now + timedelta(minutes=1)), now) is False
    assert is_task_due(_task(interval_minutes=60, enabled=False), now) is False
    assert is_task_due(_task(interval_minutes=60, last_status="running"), now) is False


def test_day_time_task_due_once_per_listed_day():
    weekly = dict(schedule_days="mon", schedule_time="02:00")

    assert is_task_due(_task(**weekly), MONDAY.replace(hour=1, minute=59)) is False
    assert is_task_due(_task(**weekly), MONDAY.replace(hour=2)) is True
    ran_today = _task(**weekly, last_run_at=MONDAY.replace(hour=2, minute=5))
    assert is_task_due(ran_today, MONDAY.replace(hour=3)) is False
    assert is_task_due(_task(**weekly), MONDAY + timedelta(days=1, hours=3)) is False


def test_failed_day_time_task_is_due_at_retry():
    tuesday = MONDAY + timedelta(days=1, hours=3)
    failed = _task(
        schedule_days="mon",
        schedule_time="02:00",
        last_status="failed",
        next_run_at=tuesday - timedelta(minutes=1),
    )
    assert is_task_due(failed, tuesday) is True


def test_compute_next_run():
    now = MONDAY.replace(hour=12)

    assert compute_next_run(_task(interval_minutes=60), now, succeeded=True) == now + timedelta(minutes=60)
    assert compute_next_run(_task(interval_minutes=120), now, succeeded=False) == now + timedelta(minutes=30)
    assert compute_next_run(_task(interval_minutes=10), now, succeeded=False) == now + timedelta(minutes=10)
    weekly = _task(schedule_days="mon", schedule_time="02:00")
    assert compute_next_run(weekly, now, succeeded=True) == datetime(2024, 6, 10, 2, 0, tzinfo=timezone.utc)
    assert compute_next_run(weekly, now, succeeded=False) == now + timedelta(minutes=30)


# Execution ----------------------------------------------------------------------


def test_run_task_writes_history_and_bookkeeping(sync_app, http_session, fake_fetchers, scheduled_task_factory):
    task = scheduled_task_factory("sync_users", interval_minutes=60)
    http_session.add(PEOPLE_URL, lms_page([lms_person("u1"), lms_person("u2")]))

    result = SyncOrchestrator().run_task("sync_users")

    assert result.status == STATUS_COMPLETED
    assert result.summary["records_processed"] == 2
    history = db.session.get(TaskRunHistory, result.history_id)
    assert history.task_id == task.id
    assert history.status == STATUS_COMPLETED
    assert history.completed_at is not None
    assert history.result_summary["runs"] == [result.runs[0]["run_id"]]
    task = db.session.get(ScheduledTask, task.id)
    assert task.run_count == 1
    assert task.fail_count == 0
    assert task.last_status == STATUS_COMPLETED
    assert ensure_utc(task.next_run_at) > utcnow() + timedelta(minutes=55)
    assert db.session.query(TaskLock).count() == 0


def test_unknown_disabled_and_invalid_tasks_are_rejected(sync_app, fake_fetchers, scheduled_task_factory):
    scheduled_task_factory("sync_groups", enabled=False)
    orchestrator = SyncOrchestrator()

    with pytest.raises(TaskConfigurationError):
        orchestrator.run_task("sync_everything")
    with pytest.raises(TaskConfigurationError):
        orchestrator.run_task("sync_groups")
    with pytest.raises(TaskConfigurationError):
        orchestrator.run_task("sync_users", config={"mode": "sideways"})
    assert db.session.query(TaskRunHistory).count() == 0


def test_locked_task_is_not_run_twice(sync_app, fake_fetchers):
    TaskLockManager().acquire("sync_users", "other-worker")

    with pytest.raises(TaskLockedError):
        SyncOrchestrator().run_task("sync_users")

    assert db.session.query(TaskRunHistory).count() == 0
    assert db.session.query(SyncRun).count() == 0


def test_lock_keys_cover_every_entity_written(app):
    orchestrator = SyncOrchestrator(config={}, locks=TaskLockManager())
    full = resolve_task("sync_enrollments_full")
    chain = resolve_task("lms_sync")

    assert orchestrator.lock_keys(full, parse_task_config(full, None)) == ["sync_enrollments_full", "lms_enrollments"]
    assert orchestrator.lock_keys(chain, parse_task_config(chain, {"sync_types": ["enrollments", "users"]})) == [
        "lms_sync",
        "lms_users",
        "lms_enrollments",
    ]
    cleanup = resolve_task("cleanup")
    assert orchestrator.lock_keys(cleanup, parse_task_config(cleanup, None)) == ["cleanup"]


def test_chain_is_blocked_while_another_task_writes_the_same_entity(sync_app, fake_fetchers):
    store = CheckpointStore("sync_enrollments_full")
    store.save(Checkpoint(offset=2, records_synced=40))
    TaskLockManager().acquire("lms_enrollments", "other-worker")

    with pytest.raises(TaskLockedError) as excinfo:
        SyncOrchestrator().run_task("lms_sync", config={"sync_types": ["enrollments"], "mode": "full"})

    assert excinfo.value.task_type == "lms_enrollments"
    assert excinfo.value.holder == "other-worker"
    assert store.load().offset == 2
    assert db.session.query(TaskRunHistory).count() == 0
    assert db.session.query(SyncRun).count() == 0
    # Locks taken before the conflict are released.
    assert [lock.task_type for lock in db.session.query(TaskLock)] == ["lms_enrollments"]


def test_failed_job_marks_history_and_schedules_retry(sync_app, fake_fetchers, scheduled_task_factory, monkeypatch):
    lms_fetcher, _ = fake_fetchers
    task = scheduled_task_factory("sync_users", interval_minutes=60)

    def explode(*, since=None):
        raise RuntimeError("LMS credentials revoked")

    monkeypatch.setattr(lms_fetcher, "iter_users", explode)

    with pytest.raises(RuntimeError):
        SyncOrchestrator().run_task("sync_users")

    history = db.session.query(TaskRunHistory).one()
    assert history.status == STATUS_FAILED
    assert history.error_message == "LMS credentials revoked"
    task = db.session.get(ScheduledTask, task.id)
    assert task.fail_count == 1
    assert task.run_count == 0
    assert task.last_error == "LMS credentials revoked"
    retry_at = ensure_utc(task.next_run_at)
    assert utcnow() + timedelta(minutes=25) < retry_at <= utcnow() + timedelta(minutes=30)
    assert db.session.query(SyncRun).one().status is SyncRunStatus.FAILED
    assert db.session.query(TaskLock).count() == 0


def test_partial_failure_is_reported(sync_app, http_session, fake_fetchers):
    http_session.add(lms_url("/v2/groups"), FakeResponse(500))

    result = SyncOrchestrator().run_task("sync_groups")

    assert result.status == STATUS_PARTIAL
    assert db.session.get(TaskRunHistory, result.history_id).status == STATUS_PARTIAL


def test_chain_runs_in_dependency_order(sync_app, http_session, fake_fetchers):
    http_session.add(PEOPLE_URL, lms_page([lms_person("u1")]))
    http_session.add(COURSES_URL, lms_page([lms_course("c1", "Intro")]))

    result = SyncOrchestrator().run_task("lms_sync", config={"sync_types": ["courses", "users"]})

    assert result.status == STATUS_COMPLETED
    assert [run["sync_type"] for run in result.runs] == ["lms_users", "lms_courses"]
    ordered = db.session.query(SyncRun.sync_type).order_by(SyncRun.id).all()
    assert [row.sync_type for row in ordered] == ["lms_users", "lms_courses"]
    # Ad hoc tasks have no scheduled row.
    assert db.session.get(TaskRunHistory, result.history_id).task_id is None


def test_chain_stops_at_failing_entity(sync_app, http_session, fake_fetchers, monkeypatch):
    lms_fetcher, _ = fake_fetchers
    http_session.add(COURSES_URL, lms_page([lms_course("c1", "Intro")]))

    def explode(*, since=None):
        raise RuntimeError("boom")

    monkeypatch.setattr(lms_fetcher, "iter_users", explode)

    with pytest.raises(RuntimeError):
        SyncOrchestrator().run_task("lms_sync", config={"sync_types": ["users", "courses"]})

    assert [row.sync_type for row in db.session.query(SyncRun.sync_type)] == ["lms_users"]


def test_cleanup_task_runs_without_fetchers(app, scheduled_task_factory):
    scheduled_task_factory("cleanup", config={"retention_days": 14})

    result = SyncOrchestrator().run_task("cleanup")

    assert result.status == STATUS_COMPLETED
    assert result.summary == {"runs_deleted": 0, "history_deleted": 0, "failures_deleted": 0, "locks_cleared": 0}


def test_tick_dispatches_only_due_tasks(app, scheduled_task_factory):
    now = utcnow()
    scheduled_task_factory("sync_users", next_run_at=None)
    scheduled_task_factory("sync_courses", next_run_at=now + timedelta(hours=1))
    scheduled_task_factory("sync_groups", enabled=False)
    dispatched = []

    outcomes = SyncOrchestrator().tick(now, dispatch=lambda task_type: dispatched.append(task_type) or "queued")

    assert dispatched == ["sync_users"]
    assert outcomes == {"sync_users": "queued"}


def test_tick_inline_reports_failures_per_task(app, scheduled_task_factory):
    scheduled_task_factory("cleanup")
    scheduled_task_factory("sync_courses", config={"mode": "bogus"})

    outcomes = SyncOrchestrator().tick()

    assert outcomes["cleanup"]["status"] == STATUS_COMPLETED
    assert outcomes["sync_courses"]["status"] == STATUS_FAILED
    assert "mode" in outcomes["sync_courses"]["error"]


def test_recover_stale_closes_interrupted_work(app, scheduled_task_factory, sync_run_factory):
    task = scheduled_task_factory("sync_users", last_status="running")
    db.session.add(TaskRunHistory(task_id=task.id, task_type="sync_users", status="running"))
    db.session.commit()
    run = sync_run_factory(status=SyncRunStatus.RUNNING, finished=False)

    result = SyncOrchestrator().recover_stale()

    assert result.to_dict() == {"tasks_failed": 1, "history_cancelled": 1, "runs_failed": 1}
    task = db.session.get(ScheduledTask, task.id)
    assert task.last_status == STATUS_FAILED
    assert task.last_error == RESTART_ERROR
    assert task.next_run_at is not None
    history = db.session.query(TaskRunHistory).one()
    assert history.status == "cancelled"
    run = db.session.get(SyncRun, run.id)
    assert run.status is SyncRunStatus.FAILED
    assert run.error_summary == RESTART_ERROR

    assert SyncOrchestrator().recover_stale().to_dict() == {"tasks_failed": 0, "history_cancelled": 0, "runs_failed": 0}


def test_enqueued_task_is_not_enqueued_again_while_queued(app, scheduled_task_factory):
    now = utcnow()
    task = scheduled_task_factory("sync_users", next_run_at=None)
    orchestrator = SyncOrchestrator()
    dispatched = []

    def enqueue(task_type):
        dispatched.append(task_type)
        return "celery-id"

    orchestrator.tick(now, dispatch=enqueue)
    orchestrator.tick(now + timedelta(minutes=5), dispatch=enqueue)

    assert dispatched == ["sync_users"]
    task = db.session.get(ScheduledTask, task.id)
    assert task.last_status == STATUS_QUEUED
    assert ensure_utc(task.next_run_at) == now + orchestrator.locks.ttl

    # A queued marker older than the lock TTL no longer holds the task back.
    orchestrator.tick(now + orchestrator.locks.ttl + timedelta(minutes=1), dispatch=enqueue)
    assert dispatched == ["sync_users", "sync_users"]


def test_queued_day_time_task_is_not_due_again_the_same_day():
    queued = _task(
        schedule_days="mon",
        schedule_time="02:00",
        last_status=STATUS_QUEUED,
        next_run_at=MONDAY.replace(hour=4),
    )

    assert is_task_due(queued, MONDAY.replace(hour=3)) is False
    assert is_task_due(queued, MONDAY.replace(hour=5)) is True
