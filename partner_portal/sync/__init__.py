"""
LMS/CRM synchronization engine.

Provides conditional CLI registration, the Celery worker wiring and the
startup recovery sweep while remaining lightweight when sync is disabled.
"""

from __future__ import annotations

from typing import Any, Mapping

from flask import Flask
from sqlalchemy.exc import SQLAlchemyError

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_sync_group, sync_cli
from .metrics import record_sync_enabled
from .migrations import MigrationRunner
from .orchestrator import SyncOrchestrator
from .pipeline.failure_service import FailureFilters, SyncFailureService
from .pipeline.run_service import RunFilters, SyncRunService
from .registry import TaskDescriptor, get_task_registry
from .utils import is_sync_enabled

SYNC_EXTENSION_KEY = "sync"

__all__ = [
    "init_sync",
    "SYNC_EXTENSION_KEY",
    "get_celery_app",
    "get_sync_state",
    "MigrationRunner",
    "SyncOrchestrator",
    "SyncRunService",
    "RunFilters",
    "SyncFailureService",
    "FailureFilters",
    "TaskDescriptor",
    "get_task_registry",
]


def _ensure_extension_state(app: Flask) -> dict[str, Any]:
    return app.extensions.setdefault(
        SYNC_EXTENSION_KEY,
        {
            "enabled": False,
            "worker_enabled": False,
            "scheduler_enabled": False,
            "celery_app": None,
            "fetcher_factories": None,
        },
    )


def get_sync_state(app: Flask) -> Mapping[str, Any]:
    return dict(_ensure_extension_state(app))


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    command_name = sync_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(sync_cli)
    else:
        app.cli.add_command(get_disabled_sync_group())


def _recover_on_startup(app: Flask) -> None:
    with app.app_context():
        runner = MigrationRunner.from_app(app)
        try:
            if runner.current_version() == 0:
                app.logger.info("Sync schema not migrated yet; skipping startup recovery.")
                return
            SyncOrchestrator().recover_stale()
        except SQLAlchemyError:
            app.logger.warning("Sync startup recovery failed", exc_info=True)


def init_sync(app: Flask) -> None:
    """
    Configure the sync engine CLI and worker based on ``SYNC_ENABLED``.

    State lives in ``app.extensions['sync']`` for reuse by the CLI, the
    Celery tasks and the admin routes.
    """
    enabled = is_sync_enabled(app)
    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "worker_enabled": bool(app.config.get("SYNC_WORKER_ENABLED", False)),
            "scheduler_enabled": bool(app.config.get("SYNC_SCHEDULER_ENABLED", False)),
        }
    )
    record_sync_enabled(enabled)

    if not enabled:
        _set_cli(app, enabled=False)
        app.logger.info("Sync engine disabled via SYNC_ENABLED flag; skipping registration.")
        return

    ensure_celery_app(app, state)
    _set_cli(app, enabled=True)

    if state["scheduler_enabled"] and not app.config.get("TESTING", False):
        _recover_on_startup(app)

    task_names = ", ".join(get_task_registry()) or "none"
    app.logger.info("Sync engine enabled with tasks: %s", task_names)
