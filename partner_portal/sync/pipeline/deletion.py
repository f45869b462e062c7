"""
Full-sync deletion detection.

After a complete (error-free) full pass, local records that are still active
but were not observed upstream are soft-deleted with reason
``not_in_source``. Group memberships are hard-deleted, but only rows whose
``pending_source`` is ``api``; ``local`` rows are kept for manual
reconciliation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from sqlalchemy.orm import Session

from partner_portal.models import LmsGroupMember, MembershipSource, db

from ..utils import utcnow

NOT_IN_SOURCE = "not_in_source"


@dataclass
class DeletionResult:
    deactivated: list[Any] = field(default_factory=list)
    memberships_removed: int = 0
    memberships_preserved: int = 0
    skipped: bool = False

    @property
    def deleted_count(self) -> int:
        return len(self.deactivated) + self.memberships_removed

    def merge(self, other: "DeletionResult") -> None:
        self.deactivated.extend(other.deactivated)
        self.memberships_removed += other.memberships_removed
        self.memberships_preserved += other.memberships_preserved

    def to_dict(self) -> dict[str, Any]:
        return {
            "deactivated": len(self.deactivated),
            "memberships_removed": self.memberships_removed,
            "memberships_preserved": self.memberships_preserved,
            "skipped": self.skipped,
        }


class DeletionDetector:
    def __init__(
        self,
        model=None,
        *,
        key_field: str = "id",
        session: Session | None = None,
        reason: str = NOT_IN_SOURCE,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.model = model
        self.key_field = key_field
        self.session: Session = session or db.session
        self.reason = reason
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

    def detect(self, observed_ids: Iterable[Any], *, pass_complete: bool = True) -> DeletionResult:
        """
        Soft-delete active rows of ``model`` whose key is not in ``observed_ids``.

        ``pass_complete`` must be False when any page of the full pass failed;
        detection is then skipped because the observed set is partial.
        """
        if self.model is None:
            raise ValueError("DeletionDetector.detect requires a model.")
        if not pass_complete:
            self.logger.warning(
                "Full pass was incomplete; skipping deletion detection",
                extra={"sync_entity_model": self.model.__tablename__},
            )
            return DeletionResult(skipped=True)

        observed = {str(value) for value in observed_ids}
        column = getattr(self.model, self.key_field)
        active_rows = self.session.query(self.model).filter(self.model.is_active.is_(True)).order_by(column).all()
        now = self.clock()
        result = DeletionResult()
        for row in active_rows:
            key = getattr(row, self.key_field)
            if str(key) in observed:
                continue
            if row.soft_delete(reason=self.reason, deactivated_at=now):
                result.deactivated.append(key)

        if result.deactivated:
            self.logger.info(
                "Deactivated records missing from source",
                extra={
                    "sync_entity_model": self.model.__tablename__,
                    "sync_deactivated": len(result.deactivated),
                    "sync_reason": self.reason,
                },
            )
        return result

    def detect_memberships(
        self,
        group_id: str,
        observed_user_ids: Iterable[Any],
        *,
        pass_complete: bool = True,
    ) -> DeletionResult:
        """Remove api-sourced memberships of ``group_id`` absent upstream; keep local ones."""
        if not pass_complete:
            return DeletionResult(skipped=True)

        observed = {str(value) for value in observed_user_ids}
        rows = self.session.query(LmsGroupMember).filter(LmsGroupMember.group_id == group_id).all()
        result = DeletionResult()
        for row in rows:
            if row.user_id in observed:
                continue
            if row.pending_source != MembershipSource.API.value:
                result.memberships_preserved += 1
                continue
            self.session.delete(row)
            result.memberships_removed += 1
        return result
