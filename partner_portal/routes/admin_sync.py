"""
Admin-facing sync routes for triggering tasks and monitoring the run ledger.
"""

from __future__ import annotations

import json
from collections import deque
from datetime import datetime, timedelta, timezone
from http import HTTPStatus

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy.exc import NoResultFound

from partner_portal.forms import ScheduledTaskForm
from partner_portal.models import AdminLog, ScheduledTask, TaskLock, TaskRunHistory, db
from partner_portal.sync.adapters.health import health_snapshot
from partner_portal.sync.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from partner_portal.sync.errors import SyncError, TaskConfigurationError, TaskLockedError
from partner_portal.sync.migrations import MigrationRunner
from partner_portal.sync.orchestrator import SyncOrchestrator, compute_next_run
from partner_portal.sync.pipeline.cursors import CursorTracker
from partner_portal.sync.pipeline.failure_service import FailureFilters, SyncFailureService, serialize_failure
from partner_portal.sync.pipeline.run_service import RunFilters, SyncRunService
from partner_portal.sync.registry import get_task_registry
from partner_portal.sync.task_config import parse_task_config
from partner_portal.sync.tasks import RUN_TASK_NAME
from partner_portal.sync.utils import ensure_utc, is_sync_enabled
from partner_portal.utils.permissions import capability_required

SYNC_CAPABILITY = "data_management.sync"
HISTORY_LIMIT_MAX = 100

admin_sync_blueprint = Blueprint("admin_sync", __name__, url_prefix="/admin/sync")
_run_service = SyncRunService()
_failure_service = SyncFailureService()

_TRIGGER_HISTORY: dict[int, deque[datetime]] = {}


def _sync_disabled_response():
    return jsonify({"error": "Sync engine is disabled."}), HTTPStatus.NOT_FOUND


def _is_trigger_rate_limited(user_id: int) -> bool:
    limit = int(current_app.config.get("SYNC_TRIGGER_RATE_LIMIT", 1))
    window = timedelta(seconds=int(current_app.config.get("SYNC_TRIGGER_RATE_WINDOW_SECONDS", 60)))
    history = _TRIGGER_HISTORY.setdefault(user_id, deque())
    window_start = datetime.now(timezone.utc) - window
    while history and history[0] < window_start:
        history.popleft()
    return len(history) >= limit


def _record_trigger(user_id: int) -> None:
    _TRIGGER_HISTORY.setdefault(user_id, deque()).append(datetime.now(timezone.utc))


def _isoformat(value):
    value = ensure_utc(value)
    return value.isoformat() if value else None


def _serialize_task(task_type: str, descriptor, task: ScheduledTask | None) -> dict[str, object]:
    payload: dict[str, object] = {
        "task_type": task_type,
        "title": descriptor.title,
        "kind": descriptor.kind,
        "source": descriptor.source,
        "summary": descriptor.summary,
        "scheduled": task is not None,
    }
    if task is None:
        return payload
    payload.update(
        {
            "id": task.id,
            "task_name": task.task_name,
            "description": task.description,
            "enabled": task.enabled,
            "interval_minutes": task.interval_minutes,
            "schedule_days": task.schedule_days,
            "schedule_time": task.schedule_time,
            "config": task.config or {},
            "next_run_at": _isoformat(task.next_run_at),
            "last_run_at": _isoformat(task.last_run_at),
            "last_status": task.last_status,
            "last_error": task.last_error,
            "last_duration_seconds": task.last_duration_seconds,
            "run_count": task.run_count,
            "fail_count": task.fail_count,
        }
    )
    return payload


def _serialize_history(row: TaskRunHistory) -> dict[str, object]:
    return {
        "id": row.id,
        "task_type": row.task_type,
        "status": row.status,
        "started_at": _isoformat(row.started_at),
        "completed_at": _isoformat(row.completed_at),
        "duration_seconds": row.duration_seconds,
        "result_summary": row.result_summary,
        "error_message": row.error_message,
        "triggered_by_user_id": row.triggered_by_user_id,
    }


def _audit(action: str, details: dict[str, object]) -> None:
    AdminLog.log_action(
        admin_user_id=current_user.id,
        action=action,
        details=json.dumps(details, default=str),
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
    )


# Tasks --------------------------------------------------------------------------


@admin_sync_blueprint.get("/tasks")
@login_required
@capability_required(SYNC_CAPABILITY)
def sync_tasks_list():
    if not is_sync_enabled():
        return _sync_disabled_response()

    rows = {task.task_type: task for task in db.session.query(ScheduledTask).all()}
    items = [
        _serialize_task(task_type, descriptor, rows.get(task_type))
        for task_type, descriptor in get_task_registry().items()
    ]
    return jsonify({"items": items, "total": len(items)})


@admin_sync_blueprint.patch("/tasks/<task_type>")
@login_required
@capability_required(SYNC_CAPABILITY)
def sync_task_update(task_type: str):
    if not is_sync_enabled():
        return _sync_disabled_response()

    descriptor = get_task_registry().get(task_type)
    task = db.session.query(ScheduledTask).filter_by(task_type=task_type).one_or_none()
    if descriptor is None or task is None:
        return jsonify({"error": f"Scheduled task '{task_type}' not found."}), HTTPStatus.NOT_FOUND

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or not payload:
        return jsonify({"error": "Request body must be a non-empty JSON object."}), HTTPStatus.BAD_REQUEST

    unknown = sorted(set(payload) - {"enabled", "interval_minutes", "schedule_days", "schedule_time", "config"})
    if unknown:
        return jsonify({"error": f"Unsupported fields: {', '.join(unknown)}."}), HTTPStatus.BAD_REQUEST

    form = ScheduledTaskForm(data=payload, task_type=task_type)
    if not form.validate():
        return jsonify({"error": "Validation failed.", "errors": form.errors}), HTTPStatus.BAD_REQUEST

    changed = form.apply_to(task)
    if {"interval_minutes", "schedule_days", "schedule_time"} & set(changed):
        task.next_run_at = compute_next_run(task, datetime.now(timezone.utc), succeeded=True)
    db.session.commit()

    _audit("SYNC_TASK_UPDATED", {"task_type": task_type, "changes": changed})
    current_app.logger.info(
        "Scheduled sync task updated",
        extra={"sync_task_type": task_type, "sync_task_changes": sorted(changed), "user_id": current_user.id},
    )
    return jsonify(_serialize_task(task_type, descriptor, task))


@admin_sync_blueprint.get("/tasks/<task_type>/history")
@login_required
@capability_required(SYNC_CAPABILITY)
def sync_task_history(task_type: str):
    if not is_sync_enabled():
        return _sync_disabled_response()
    if task_type not in get_task_registry():
        return jsonify({"error": f"Unknown task type '{task_type}'."}), HTTPStatus.NOT_FOUND

    try:
        limit = int(request.args.get("limit", 20))
    except (TypeError, ValueError):
        return jsonify({"error": "Query parameter 'limit' must be an integer."}), HTTPStatus.BAD_REQUEST
    limit = max(1, min(limit, HISTORY_LIMIT_MAX))

    rows = (
        db.session.query(TaskRunHistory)
        .filter(TaskRunHistory.task_type == task_type)
        .order_by(TaskRunHistory.started_at.desc(), TaskRunHistory.id.desc())
        .limit(limit)
        .all()
    )
    return jsonify({"task_type": task_type, "items": [_serialize_history(row) for row in rows]})


@admin_sync_blueprint.post("/tasks/<task_type>/trigger")
@login_required
@capability_required(SYNC_CAPABILITY)
def sync_task_trigger(task_type: str):
    if not is_sync_enabled():
        return _sync_disabled_response()

    if _is_trigger_rate_limited(current_user.id):
        return (
            jsonify({"error": "Too many sync runs triggered. Please wait before retrying."}),
            HTTPStatus.TOO_MANY_REQUESTS,
        )

    descriptor = get_task_registry().get(task_type)
    if descriptor is None:
        return jsonify({"error": f"Unknown task type '{task_type}'."}), HTTPStatus.NOT_FOUND

    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        return jsonify({"error": "Request body must be a JSON object."}), HTTPStatus.BAD_REQUEST
    config = payload.get("config")
    if config is not None:
        try:
            parse_task_config(descriptor, config)
        except TaskConfigurationError as exc:
            return jsonify({"error": str(exc)}), HTTPStatus.BAD_REQUEST

    task = db.session.query(ScheduledTask).filter_by(task_type=task_type).one_or_none()
    if task is not None and not task.enabled:
        return jsonify({"error": f"Task '{task_type}' is disabled."}), HTTPStatus.CONFLICT

    _record_trigger(current_user.id)
    celery_app = get_celery_app(current_app) if current_app.config.get("SYNC_WORKER_ENABLED") else None

    if celery_app is not None:
        async_result = celery_app.send_task(
            RUN_TASK_NAME,
            kwargs={"task_type": task_type, "triggered_by_user_id": current_user.id, "config": config},
        )
        _audit("SYNC_TRIGGERED", {"task_type": task_type, "task_id": async_result.id, "mode": "queued"})
        current_app.logger.info(
            "Sync task enqueued",
            extra={"sync_task_type": task_type, "sync_celery_task_id": async_result.id, "user_id": current_user.id},
        )
        return (
            jsonify(
                {
                    "task_type": task_type,
                    "task_id": async_result.id,
                    "status": "queued",
                    "queue": DEFAULT_QUEUE_NAME,
                }
            ),
            HTTPStatus.ACCEPTED,
        )

    try:
        result = SyncOrchestrator().run_task(task_type, config=config, triggered_by_user_id=current_user.id)
    except TaskLockedError as exc:
        return jsonify({"error": str(exc)}), HTTPStatus.CONFLICT
    except TaskConfigurationError as exc:
        return jsonify({"error": str(exc)}), HTTPStatus.BAD_REQUEST
    except SyncError as exc:
        _audit("SYNC_TRIGGERED", {"task_type": task_type, "mode": "inline", "status": "failed"})
        return jsonify({"task_type": task_type, "status": "failed", "error": str(exc)}), HTTPStatus.BAD_GATEWAY

    _audit(
        "SYNC_TRIGGERED",
        {"task_type": task_type, "mode": "inline", "status": result.status, "history_id": result.history_id},
    )
    return jsonify(result.to_dict()), HTTPStatus.OK


# Run ledger ---------------------------------------------------------------------


def _run_filters_from_request() -> RunFilters:
    page_size = request.args.get("page_size") or current_app.config.get("SYNC_RUNS_PAGE_SIZE_DEFAULT")
    allowed_sizes = current_app.config.get("SYNC_RUNS_PAGE_SIZES") or ()
    if allowed_sizes and page_size is not None and str(page_size).isdigit() and int(page_size) not in allowed_sizes:
        raise ValueError(f"page_size must be one of {', '.join(str(size) for size in allowed_sizes)}.")
    return RunFilters.coerce(
        page=request.args.get("page"),
        page_size=page_size,
        sort=request.args.get("sort"),
        statuses=request.args.getlist("status"),
        sync_types=request.args.getlist("sync_type"),
        task_types=request.args.getlist("task_type"),
        started_from=request.args.get("started_from"),
        started_to=request.args.get("started_to"),
    )


@admin_sync_blueprint.get("/runs")
@login_required
@capability_required(SYNC_CAPABILITY)
def sync_runs_list():
    if not is_sync_enabled():
        return _sync_disabled_response()

    try:
        filters = _run_filters_from_request()
    except ValueError as exc:
        return jsonify({"error": str(exc)}), HTTPStatus.BAD_REQUEST

    result = _run_service.list_runs(filters)
    return jsonify(
        {
            "items": [item.to_dict() for item in result.items],
            "total": result.total,
            "page": result.page,
            "page_size": result.page_size,
            "total_pages": result.total_pages,
        }
    )


@admin_sync_blueprint.get("/runs/stats")
@login_required
@capability_required(SYNC_CAPABILITY)
def sync_runs_stats():
    if not is_sync_enabled():
        return _sync_disabled_response()

    try:
        filters = _run_filters_from_request()
    except ValueError as exc:
        return jsonify({"error": str(exc)}), HTTPStatus.BAD_REQUEST

    stats = _run_service.get_stats(filters)
    return jsonify(
        {
            "total": stats.total,
            "statuses": dict(stats.statuses),
            "sync_types": dict(stats.sync_types),
            "api_calls_made": stats.api_calls_made,
            "api_calls_saved": stats.api_calls_saved,
            "cache_hits": stats.cache_hits,
            "api_savings_ratio": stats.api_savings_ratio,
        }
    )


@admin_sync_blueprint.get("/runs/<int:run_id>")
@login_required
@capability_required(SYNC_CAPABILITY)
def sync_run_detail(run_id: int):
    if not is_sync_enabled():
        return _sync_disabled_response()

    try:
        summary = _run_service.get_run_summary(run_id)
    except NoResultFound:
        return jsonify({"error": f"Sync run {run_id} not found."}), HTTPStatus.NOT_FOUND

    failures = _failure_service.list_failures(FailureFilters.coerce(run_id=run_id, include_resolved=True))
    payload = summary.to_dict()
    payload["failures"] = [serialize_failure(item) for item in failures.items]
    payload["failure_count"] = failures.total
    return jsonify(payload)


# Failures -----------------------------------------------------------------------


@admin_sync_blueprint.get("/failures")
@login_required
@capability_required(SYNC_CAPABILITY)
def sync_failures_list():
    if not is_sync_enabled():
        return _sync_disabled_response()

    filters = FailureFilters.coerce(
        page=request.args.get("page"),
        page_size=request.args.get("page_size"),
        entity_types=request.args.getlist("entity_type"),
        sync_types=request.args.getlist("sync_type"),
        include_resolved=request.args.get("include_resolved"),
        run_id=request.args.get("run_id"),
    )
    result = _failure_service.list_failures(filters)
    return jsonify(
        {
            "items": [serialize_failure(item) for item in result.items],
            "total": result.total,
            "page": result.page,
            "page_size": result.page_size,
            "total_pages": result.total_pages,
            "unresolved_counts": _failure_service.unresolved_counts(),
        }
    )


@admin_sync_blueprint.post("/failures/<int:failure_id>/resolve")
@login_required
@capability_required(SYNC_CAPABILITY)
def sync_failure_resolve(failure_id: int):
    if not is_sync_enabled():
        return _sync_disabled_response()

    payload = request.get_json(silent=True) or {}
    notes = payload.get("notes") if isinstance(payload, dict) else None
    if notes is not None and not isinstance(notes, str):
        return jsonify({"error": "notes must be a string."}), HTTPStatus.BAD_REQUEST

    try:
        failure = _failure_service.resolve(failure_id, user_id=current_user.id, notes=notes)
    except NoResultFound:
        return jsonify({"error": f"Sync failure {failure_id} not found."}), HTTPStatus.NOT_FOUND
    except ValueError as exc:
        return jsonify({"error": str(exc)}), HTTPStatus.CONFLICT
    return jsonify(serialize_failure(failure))


# Health -------------------------------------------------------------------------


@admin_sync_blueprint.get("/health")
@login_required
@capability_required(SYNC_CAPABILITY)
def sync_health():
    if not is_sync_enabled():
        return _sync_disabled_response()

    runner = MigrationRunner.from_app(current_app)
    locks = db.session.query(TaskLock).order_by(TaskLock.task_type).all()
    return jsonify(
        {
            "api_health": health_snapshot(),
            "schema_version": runner.current_version(),
            "latest_schema_version": runner.latest_version,
            "cursors": CursorTracker("lms").snapshot() + CursorTracker("crm").snapshot(),
            "locks": [
                {
                    "task_type": lock.task_type,
                    "holder": lock.holder,
                    "acquired_at": _isoformat(lock.acquired_at),
                    "expires_at": _isoformat(lock.expires_at),
                }
                for lock in locks
            ],
            "unresolved_failures": _failure_service.unresolved_counts(),
            "worker_enabled": bool(current_app.config.get("SYNC_WORKER_ENABLED")),
        }
    )
