"""
Error taxonomy for the sync engine.

Per-record and per-page problems are absorbed and counted by the pipeline;
the exceptions below are the ones that cross a unit-of-work boundary.
"""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base error for sync engine failures."""


class TransientProviderError(SyncError):
    """Rate limit or transport failure talking to an upstream API."""

    def __init__(self, message: str, *, http_status: int | None = None) -> None:
        super().__init__(message)
        self.http_status = http_status


class ProviderConfigurationError(SyncError):
    """Credentials or endpoints for an upstream API are missing."""


class TaskConfigurationError(SyncError):
    """A task is disabled, unknown, or carries a malformed configuration payload."""


class TaskLockedError(SyncError):
    """Another run holds the single-flight lock for this task type or entity."""

    def __init__(self, task_type: str, holder: str | None = None) -> None:
        detail = f" (held by {holder})" if holder else ""
        super().__init__(f"Sync work '{task_type}' is already running{detail}.")
        self.task_type = task_type
        self.holder = holder


class MigrationError(SyncError):
    """A structural migration operation failed; the schema version is left untouched."""

    def __init__(self, message: str, *, version: int | None = None, operation: str | None = None) -> None:
        super().__init__(message)
        self.version = version
        self.operation = operation
