"""
Scheduled task registry.

Each task type registers metadata here so configuration payloads can be
validated, and schedules listed, without importing the sync pipelines.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Mapping, Tuple

LMS_CHAIN_ORDER: Tuple[str, ...] = ("users", "groups", "courses", "enrollments")
CRM_CHAIN_ORDER: Tuple[str, ...] = ("partners", "contacts", "leads")


@dataclass(frozen=True)
class TaskDescriptor:
    """Metadata describing a schedulable sync task."""

    task_type: str
    title: str
    kind: str
    source: str | None = None
    entity: str | None = None
    default_mode: str = "incremental"
    chain: Tuple[str, ...] = ()
    summary: str | None = None

    @property
    def forces_full_sync(self) -> bool:
        return self.task_type.endswith("_full")


def _entity_task(task_type: str, title: str, source: str, entity: str, *, full: bool = False, summary=None):
    return TaskDescriptor(
        task_type=task_type,
        title=title,
        kind="entity",
        source=source,
        entity=entity,
        default_mode="full" if full else "incremental",
        summary=summary,
    )


def get_task_registry() -> Mapping[str, TaskDescriptor]:
    """Return the registry of supported task types keyed by ``task_type``."""
    descriptors = (
        _entity_task("sync_users", "Sync LMS Users", "lms", "users"),
        _entity_task("sync_users_full", "Full LMS User Sync", "lms", "users", full=True),
        _entity_task("sync_groups", "Sync LMS Groups", "lms", "groups"),
        _entity_task(
            "sync_groups_full",
            "Full LMS Group Sync",
            "lms",
            "groups",
            full=True,
            summary="Deactivates groups and drops api memberships missing upstream.",
        ),
        _entity_task("sync_courses", "Sync LMS Courses", "lms", "courses"),
        _entity_task("sync_courses_full", "Full LMS Course Sync", "lms", "courses", full=True),
        _entity_task("sync_enrollments", "Sync Enrollments (Incremental)", "lms", "enrollments"),
        _entity_task(
            "sync_enrollments_full",
            "Sync Enrollments (Batched Full)",
            "lms",
            "enrollments",
            full=True,
            summary="Checkpointed pass over every partner user.",
        ),
        _entity_task("sync_partners", "Sync CRM Partners", "crm", "partners"),
        _entity_task("sync_contacts", "Sync CRM Contacts", "crm", "contacts"),
        _entity_task("sync_leads", "Sync CRM Leads", "crm", "leads"),
        TaskDescriptor(
            task_type="lms_sync",
            title="LMS Sync Chain",
            kind="chain",
            source="lms",
            chain=LMS_CHAIN_ORDER,
            summary="Users, groups, courses and enrollments in dependency order.",
        ),
        TaskDescriptor(
            task_type="crm_sync",
            title="CRM Sync Chain",
            kind="chain",
            source="crm",
            chain=CRM_CHAIN_ORDER,
            summary="Partners, contacts and leads in dependency order.",
        ),
        TaskDescriptor(
            task_type="cleanup",
            title="Sync Ledger Cleanup",
            kind="maintenance",
            summary="Prune old run records, task history, resolved failures and expired locks.",
        ),
    )
    return OrderedDict((descriptor.task_type, descriptor) for descriptor in descriptors)


def resolve_task(task_type: str, registry: Mapping[str, TaskDescriptor] | None = None) -> TaskDescriptor:
    """
    Map a task type to its descriptor, raising on unknown names.
    """
    registry = registry or get_task_registry()
    descriptor = registry.get(task_type)
    if descriptor is None:
        raise KeyError(task_type)
    return descriptor
