"""
Typed configuration payloads for scheduled tasks.

Scheduled task rows persist their configuration as JSON; before dispatch the
orchestrator converts that JSON into one of the dataclasses below, keyed by
the task's kind and entity. Unknown keys, wrong types, and out-of-range
values raise ``TaskConfigurationError`` so no external call is ever made
with a malformed payload.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Mapping, Tuple, Union

from .errors import TaskConfigurationError
from .registry import TaskDescriptor, get_task_registry

SYNC_MODES = ("incremental", "full")


@dataclass(frozen=True)
class EntitySyncConfig:
    """Configuration for a single-entity sync task."""

    mode: str = "incremental"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EnrollmentSyncConfig(EntitySyncConfig):
    max_age_days: int = 7
    batch_size: int = 200
    partner_users_only: bool = True


@dataclass(frozen=True)
class ChainSyncConfig:
    sync_types: Tuple[str, ...] = field(default_factory=tuple)
    mode: str = "incremental"
    max_age_days: int = 7
    batch_size: int = 200

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["sync_types"] = list(self.sync_types)
        return payload


@dataclass(frozen=True)
class CleanupConfig:
    retention_days: int = 30

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


TaskConfig = Union[EntitySyncConfig, EnrollmentSyncConfig, ChainSyncConfig, CleanupConfig]


def parse_task_config(
    task: str | TaskDescriptor,
    payload: Mapping[str, Any] | None,
    *,
    defaults: Mapping[str, Any] | None = None,
) -> TaskConfig:
    """
    Validate ``payload`` for ``task`` and return its typed configuration.

    ``defaults`` supplies application-level defaults (e.g. batch size from
    ``SYNC_ENROLLMENT_BATCH_SIZE``) that the payload may override.
    """
    descriptor = _resolve_descriptor(task)
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise TaskConfigurationError(
            f"Configuration for '{descriptor.task_type}' must be an object, got {type(payload).__name__}."
        )
    merged: dict[str, Any] = dict(defaults or {})
    merged.update(payload)

    if descriptor.kind == "maintenance":
        _reject_unknown(descriptor, payload, {"retention_days"})
        return CleanupConfig(retention_days=_positive_int(descriptor, merged, "retention_days", 30))

    if descriptor.kind == "chain":
        _reject_unknown(descriptor, payload, {"sync_types", "mode", "max_age_days", "batch_size"})
        return ChainSyncConfig(
            sync_types=_chain_types(descriptor, merged.get("sync_types")),
            mode=_mode(descriptor, merged),
            max_age_days=_positive_int(descriptor, merged, "max_age_days", 7),
            batch_size=_positive_int(descriptor, merged, "batch_size", 200),
        )

    if descriptor.entity == "enrollments":
        _reject_unknown(descriptor, payload, {"mode", "max_age_days", "batch_size", "partner_users_only"})
        partner_users_only = merged.get("partner_users_only", True)
        if not isinstance(partner_users_only, bool):
            raise TaskConfigurationError(
                f"'partner_users_only' for '{descriptor.task_type}' must be a boolean."
            )
        return EnrollmentSyncConfig(
            mode=_mode(descriptor, merged),
            max_age_days=_positive_int(descriptor, merged, "max_age_days", 7),
            batch_size=_positive_int(descriptor, merged, "batch_size", 200),
            partner_users_only=partner_users_only,
        )

    _reject_unknown(descriptor, payload, {"mode"})
    return EntitySyncConfig(mode=_mode(descriptor, merged))


def _resolve_descriptor(task: str | TaskDescriptor) -> TaskDescriptor:
    if isinstance(task, TaskDescriptor):
        return task
    descriptor = get_task_registry().get(task)
    if descriptor is None:
        raise TaskConfigurationError(f"Unknown task type '{task}'.")
    return descriptor


def _reject_unknown(descriptor: TaskDescriptor, payload: Mapping[str, Any], allowed: set[str]) -> None:
    unknown = sorted(set(payload) - allowed)
    if unknown:
        raise TaskConfigurationError(
            f"Unsupported configuration keys for '{descriptor.task_type}': {', '.join(unknown)}."
        )


def _mode(descriptor: TaskDescriptor, payload: Mapping[str, Any]) -> str:
    raw = payload.get("mode", descriptor.default_mode)
    if not isinstance(raw, str) or raw.strip().lower() not in SYNC_MODES:
        raise TaskConfigurationError(
            f"'mode' for '{descriptor.task_type}' must be one of {', '.join(SYNC_MODES)}; got {raw!r}."
        )
    mode = raw.strip().lower()
    if descriptor.forces_full_sync and mode != "full":
        raise TaskConfigurationError(f"Task '{descriptor.task_type}' always runs in full mode.")
    return mode


def _positive_int(descriptor: TaskDescriptor, payload: Mapping[str, Any], key: str, default: int) -> int:
    raw = payload.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise TaskConfigurationError(f"'{key}' for '{descriptor.task_type}' must be an integer; got {raw!r}.")
    if raw < 1:
        raise TaskConfigurationError(f"'{key}' for '{descriptor.task_type}' must be at least 1.")
    return raw


def _chain_types(descriptor: TaskDescriptor, raw: Any) -> Tuple[str, ...]:
    if raw is None:
        return descriptor.chain
    if isinstance(raw, str) or not isinstance(raw, (list, tuple)):
        raise TaskConfigurationError(f"'sync_types' for '{descriptor.task_type}' must be a list.")
    requested = {str(item).strip().lower() for item in raw if str(item).strip()}
    unknown = sorted(requested - set(descriptor.chain))
    if unknown:
        raise TaskConfigurationError(
            f"Unsupported sync_types for '{descriptor.task_type}': {', '.join(unknown)}."
        )
    if not requested:
        raise TaskConfigurationError(f"'sync_types' for '{descriptor.task_type}' must not be empty.")
    # Dependency order is fixed regardless of the order given.
    return tuple(entity for entity in descriptor.chain if entity in requested)
