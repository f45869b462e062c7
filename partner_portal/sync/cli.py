"""
``flask sync`` commands: run and schedule tasks, migrate the schema, and
inspect checkpoints, failures and the worker.
"""

from __future__ import annotations

import json
from typing import Any, Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import current_app
from flask.cli import with_appcontext
from sqlalchemy.exc import NoResultFound

from partner_portal.models import ScheduledTask, db

from .adapters.health import health_snapshot
from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .errors import MigrationError, SyncError
from .migrations import MigrationRunner
from .orchestrator import SyncOrchestrator
from .pipeline.checkpoints import CheckpointStore
from .pipeline.cursors import CursorTracker
from .pipeline.failure_service import FailureFilters, SyncFailureService, serialize_failure
from .pipeline.run_service import RunFilters, SyncRunService
from .registry import get_task_registry
from .tasks import RUN_TASK_NAME
from .utils import is_sync_enabled


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _parse_config_option(raw: Optional[str]) -> Optional[dict[str, Any]]:
    if raw is None:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"--config must be JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise click.BadParameter("--config must be a JSON object.")
    return parsed


def _resolve_celery() -> Celery:
    celery_app = get_celery_app(current_app)
    if celery_app is None:
        raise click.ClickException("Sync Celery app is unavailable. Ensure SYNC_ENABLED=true.")
    return celery_app


@click.group(name="sync", invoke_without_command=True)
@click.pass_context
@with_appcontext
def sync_cli(ctx):
    """LMS/CRM sync engine commands. Lists task types when run alone."""
    if not is_sync_enabled():
        raise click.ClickException("Sync is disabled via SYNC_ENABLED=false. Enable it to run sync commands.")
    if ctx.invoked_subcommand is None:
        for descriptor in get_task_registry().values():
            click.echo(f"{descriptor.task_type:<24} {descriptor.title}")


def get_disabled_sync_group() -> click.Group:
    """Stand-in group registered while the sync engine is disabled."""

    @click.group(name="sync", invoke_without_command=True, context_settings={"ignore_unknown_options": True})
    @click.argument("args", nargs=-1, type=click.UNPROCESSED)
    def disabled_group(args):
        raise click.ClickException("Sync commands are unavailable because SYNC_ENABLED=false.")

    return disabled_group


@sync_cli.command("run")
@click.argument("task_type")
@click.option("--config", "config_json", help="JSON configuration overriding the scheduled task's payload.")
@click.option("--queue", is_flag=True, help="Enqueue on the sync worker instead of running inline.")
@with_appcontext
def sync_run(task_type: str, config_json: Optional[str], queue: bool):
    """Run TASK_TYPE now."""
    config = _parse_config_option(config_json)
    if queue:
        async_result = _resolve_celery().send_task(
            RUN_TASK_NAME, kwargs={"task_type": task_type, "config": config}
        )
        _echo_json({"task_type": task_type, "task_id": async_result.id, "status": "queued"})
        return
    try:
        result = SyncOrchestrator().run_task(task_type, config=config)
    except SyncError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(result.to_dict())


@sync_cli.command("tick")
@click.option("--queue", is_flag=True, help="Enqueue due tasks instead of running them inline.")
@with_appcontext
def sync_tick(queue: bool):
    """Dispatch every task that is due."""
    dispatch = None
    if queue:
        celery_app = _resolve_celery()

        def dispatch(task_type: str) -> str:
            return celery_app.send_task(RUN_TASK_NAME, kwargs={"task_type": task_type}).id

    _echo_json(SyncOrchestrator().tick(dispatch=dispatch))


@sync_cli.command("migrate")
@click.option("--dry-run", is_flag=True, help="Report pending operations without changing the schema.")
@click.option("--target", type=int, help="Stop at this schema version.")
@with_appcontext
def sync_migrate(dry_run: bool, target: Optional[int]):
    """Apply pending schema migrations."""
    runner = MigrationRunner.from_app(current_app)
    try:
        report = runner.run(target=target, dry_run=dry_run)
    except MigrationError as exc:
        raise click.ClickException(f"Migration failed: {exc}") from exc
    for operation in report.operations:
        click.echo(f"v{operation.version:<3} {operation.result.value:<16} {operation.operation}")
    if dry_run:
        click.echo(f"Dry run: schema would move from v{report.from_version} to v{runner.latest_version}.")
    else:
        click.echo(f"Schema version: v{report.to_version}")


@sync_cli.command("status")
@with_appcontext
def sync_status():
    """Schema version, schedules, latest runs, cursors and API health."""
    runner = MigrationRunner.from_app(current_app)
    tasks = db.session.query(ScheduledTask).order_by(ScheduledTask.task_type).all()
    stats = SyncRunService().get_stats(RunFilters.coerce())
    _echo_json(
        {
            "schema_version": runner.current_version(),
            "latest_schema_version": runner.latest_version,
            "tasks": [
                {
                    "task_type": task.task_type,
                    "enabled": task.enabled,
                    "last_status": task.last_status,
                    "last_run_at": task.last_run_at,
                    "next_run_at": task.next_run_at,
                    "last_error": task.last_error,
                    "run_count": task.run_count,
                    "fail_count": task.fail_count,
                }
                for task in tasks
            ],
            "cursors": CursorTracker("lms").snapshot() + CursorTracker("crm").snapshot(),
            "runs": {
                "total": stats.total,
                "statuses": stats.statuses,
                "api_calls_made": stats.api_calls_made,
                "api_calls_saved": stats.api_calls_saved,
                "api_savings_ratio": stats.api_savings_ratio,
            },
            "unresolved_failures": SyncFailureService().unresolved_counts(),
            "api_health": health_snapshot(),
        }
    )


@sync_cli.command("recover")
@with_appcontext
def sync_recover():
    """Fail tasks and runs left running by a crashed process."""
    _echo_json(SyncOrchestrator().recover_stale().to_dict())


# Checkpoints --------------------------------------------------------------------


@sync_cli.group("checkpoint")
def checkpoint_group():
    """Inspect or reset batch checkpoints."""


@checkpoint_group.command("show")
@click.argument("name")
@with_appcontext
def checkpoint_show(name: str):
    _echo_json({"name": name, **CheckpointStore(name).load().to_dict()})


@checkpoint_group.command("reset")
@click.argument("name")
@with_appcontext
def checkpoint_reset(name: str):
    """Start the next batched run from the beginning."""
    CheckpointStore(name).reset()
    click.echo(f"Checkpoint '{name}' reset.")


# Failures -----------------------------------------------------------------------


@sync_cli.group("failures")
def failures_group():
    """Triage per-record sync failures."""


@failures_group.command("list")
@click.option("--all", "include_resolved", is_flag=True, help="Include resolved failures.")
@click.option("--entity-type", "entity_types", multiple=True)
@click.option("--sync-type", "sync_types", multiple=True)
@click.option("--limit", default=50, show_default=True)
@with_appcontext
def failures_list(include_resolved: bool, entity_types, sync_types, limit: int):
    filters = FailureFilters.coerce(
        page=1,
        page_size=limit,
        entity_types=entity_types,
        sync_types=sync_types,
        include_resolved=include_resolved,
    )
    result = SyncFailureService().list_failures(filters)
    _echo_json({"total": result.total, "items": [serialize_failure(item) for item in result.items]})


@failures_group.command("resolve")
@click.argument("failure_id", type=int)
@click.option("--notes", default=None, help="Resolution notes.")
@with_appcontext
def failures_resolve(failure_id: int, notes: Optional[str]):
    try:
        failure = SyncFailureService().resolve(failure_id, user_id=None, notes=notes)
    except NoResultFound as exc:
        raise click.ClickException(f"Sync failure {failure_id} not found.") from exc
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(serialize_failure(failure))


# Worker -------------------------------------------------------------------------


@sync_cli.group("worker")
@with_appcontext
def worker_group():
    """Manage the sync background worker."""
    if not current_app.config.get("SYNC_WORKER_ENABLED"):
        click.echo(
            "Warning: SYNC_WORKER_ENABLED is false. Commands will still run, "
            "but the admin trigger will execute tasks inline.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list.")
@click.option("--beat", is_flag=True, help="Also run the embedded beat scheduler for scheduler ticks.")
@with_appcontext
def worker_run(loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str, beat: bool):
    """Start the Celery worker in the current process."""
    celery_app = _resolve_celery()
    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])
    if beat:
        argv.append("--beat")

    click.echo(f"Starting sync worker (queues: {queues}, loglevel: {loglevel})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@with_appcontext
def worker_ping(timeout: float):
    """Round-trip the heartbeat task through the worker."""
    celery_app = _resolve_celery()
    task = celery_app.tasks.get("sync.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'sync.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    _echo_json(payload)
