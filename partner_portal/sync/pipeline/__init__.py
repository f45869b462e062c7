"""Sync pipeline building blocks and entity jobs."""

from __future__ import annotations

from .base import FULL, INCREMENTAL, EntitySyncJob, SyncOutcome
from .checkpoints import Checkpoint, CheckpointStore
from .cleanup import CleanupResult, cleanup_sync_history
from .crm_sync import ContactsSync, LeadsSync, PartnersSync, resolve_partner_families
from .cursors import CursorTracker
from .deletion import NOT_IN_SOURCE, DeletionDetector, DeletionResult
from .failure_service import FailureFilters, FailureListResult, SyncFailureService, serialize_failure
from .lms_sync import CoursesSync, EnrollmentsSync, GroupsSync, UsersSync, categorize_certification
from .reconciler import (
    ParentReference,
    ReconcileStats,
    SourceRecord,
    UpsertOutcome,
    UpsertReconciler,
    UpsertResult,
)
from .run_service import (
    RunCounters,
    RunFilters,
    RunLedger,
    RunListResult,
    RunStats,
    RunSummary,
    SyncRunService,
    summarize_error,
)

__all__ = [
    "FULL",
    "INCREMENTAL",
    "Checkpoint",
    "CheckpointStore",
    "CleanupResult",
    "ContactsSync",
    "CoursesSync",
    "CursorTracker",
    "DeletionDetector",
    "DeletionResult",
    "EnrollmentsSync",
    "EntitySyncJob",
    "FailureFilters",
    "FailureListResult",
    "GroupsSync",
    "LeadsSync",
    "NOT_IN_SOURCE",
    "ParentReference",
    "PartnersSync",
    "ReconcileStats",
    "RunCounters",
    "RunFilters",
    "RunLedger",
    "RunListResult",
    "RunStats",
    "RunSummary",
    "SourceRecord",
    "SyncFailureService",
    "SyncOutcome",
    "SyncRunService",
    "UpsertOutcome",
    "UpsertReconciler",
    "UpsertResult",
    "UsersSync",
    "categorize_certification",
    "cleanup_sync_history",
    "resolve_partner_families",
    "serialize_failure",
    "summarize_error",
]
