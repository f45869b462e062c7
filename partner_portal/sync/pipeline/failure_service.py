"""
Granular sync failure records.

Failures are kept apart from the coarse run ledger so individual problem
records can be triaged and resolved without re-running the batch.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import func
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from partner_portal.models import AdminLog, SyncFailure, SyncRun, db

from ..utils import utcnow

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200
MAX_DETAIL_LENGTH = 2000


@dataclass(frozen=True)
class FailureFilters:
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    entity_types: tuple[str, ...] = ()
    sync_types: tuple[str, ...] = ()
    include_resolved: bool = False
    run_id: int | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        entity_types: Iterable[str] | None = None,
        sync_types: Iterable[str] | None = None,
        include_resolved: str | bool | None = None,
        run_id: int | str | None = None,
    ) -> "FailureFilters":
        resolved_run_id = None
        if run_id not in (None, ""):
            resolved_run_id = _positive_int(run_id, fallback=1)
        return cls(
            page=_positive_int(page, fallback=1),
            page_size=min(_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE),
            entity_types=tuple(sorted({value.strip().lower() for value in (entity_types or ()) if value})),
            sync_types=tuple(sorted({value.strip().lower() for value in (sync_types or ()) if value})),
            include_resolved=str(include_resolved).strip().lower() in ("1", "true", "yes", "on"),
            run_id=resolved_run_id,
        )


@dataclass(slots=True)
class FailureListResult:
    items: list[SyncFailure]
    total: int
    page: int
    page_size: int
    total_pages: int


class SyncFailureService:
    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def record(
        self,
        *,
        sync_type: str,
        entity_type: str,
        entity_id: Any,
        reason: str,
        run: SyncRun | None = None,
        entity_name: str | None = None,
        http_status: int | None = None,
        details: str | None = None,
    ) -> SyncFailure:
        """Stage a failure row; the caller's batch commit persists it."""
        if details and len(details) > MAX_DETAIL_LENGTH:
            details = details[:MAX_DETAIL_LENGTH] + "..."
        failure = SyncFailure(
            run_id=run.id if run is not None else None,
            sync_type=sync_type,
            entity_type=entity_type,
            entity_id=str(entity_id)[:255] if entity_id not in (None, "") else "unknown",
            entity_name=(entity_name or None) and entity_name[:255],
            failure_reason=reason,
            http_status=http_status,
            error_details=details,
            is_resolved=False,
        )
        self.session.add(failure)
        return failure

    def list_failures(self, filters: FailureFilters) -> FailureListResult:
        query = self.session.query(SyncFailure)
        if not filters.include_resolved:
            query = query.filter(SyncFailure.is_resolved.is_(False))
        if filters.entity_types:
            query = query.filter(SyncFailure.entity_type.in_(filters.entity_types))
        if filters.sync_types:
            query = query.filter(SyncFailure.sync_type.in_(filters.sync_types))
        if filters.run_id is not None:
            query = query.filter(SyncFailure.run_id == filters.run_id)

        total = query.count()
        items = (
            query.order_by(SyncFailure.created_at.desc(), SyncFailure.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        total_pages = (total + filters.page_size - 1) // filters.page_size if total else 0
        return FailureListResult(
            items=items, total=total, page=filters.page, page_size=filters.page_size, total_pages=total_pages
        )

    def get(self, failure_id: int) -> SyncFailure:
        failure = self.session.get(SyncFailure, failure_id)
        if failure is None:
            raise NoResultFound(f"Sync failure {failure_id} not found.")
        return failure

    def resolve(
        self,
        failure_id: int,
        *,
        user_id: int | None = None,
        notes: str | None = None,
        resolved_at: datetime | None = None,
    ) -> SyncFailure:
        failure = self.get(failure_id)
        if failure.is_resolved:
            raise ValueError(f"Sync failure {failure_id} is already resolved.")
        failure.is_resolved = True
        failure.resolved_at = resolved_at or utcnow()
        failure.resolved_by_user_id = user_id
        failure.resolution_notes = (notes or "").strip() or None
        self.session.commit()
        if user_id is not None:
            AdminLog.log_action(
                admin_user_id=user_id,
                action="SYNC_FAILURE_RESOLVED",
                details=json.dumps({"failure_id": failure.id, "entity_type": failure.entity_type}),
            )
        return failure

    def unresolved_counts(self) -> dict[str, int]:
        rows = (
            self.session.query(SyncFailure.entity_type, func.count())
            .filter(SyncFailure.is_resolved.is_(False))
            .group_by(SyncFailure.entity_type)
            .all()
        )
        return {entity_type: count for entity_type, count in rows}


def serialize_failure(failure: SyncFailure) -> dict[str, Any]:
    return {
        "id": failure.id,
        "run_id": failure.run_id,
        "sync_type": failure.sync_type,
        "entity_type": failure.entity_type,
        "entity_id": failure.entity_id,
        "entity_name": failure.entity_name,
        "failure_reason": failure.failure_reason,
        "http_status": failure.http_status,
        "error_details": failure.error_details,
        "is_resolved": failure.is_resolved,
        "resolved_at": failure.resolved_at.isoformat() if failure.resolved_at else None,
        "resolved_by_user_id": failure.resolved_by_user_id,
        "resolution_notes": failure.resolution_notes,
        "created_at": failure.created_at.isoformat() if failure.created_at else None,
    }


def _positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer, received '{candidate}'.")
