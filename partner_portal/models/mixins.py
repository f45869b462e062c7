"""Shared column mixins for synchronized entities."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import Mapped, mapped_column

from .base import db


class SoftDeleteMixin:
    """
    Columns and helpers for entities that are deactivated instead of removed
    when they disappear from the upstream system.
    """

    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True, index=True)
    deleted_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    deactivation_reason: Mapped[str | None] = mapped_column(db.String(100), nullable=True)

    def mark_seen(self) -> None:
        """Reactivate a record observed again upstream."""
        if not self.is_active:
            self.is_active = True
            self.deleted_at = None
            self.deactivation_reason = None

    def soft_delete(self, *, reason: str, deactivated_at: datetime | None = None) -> bool:
        """
        Deactivate the record, keeping history. Returns False when the record
        was already inactive.
        """
        if not self.is_active:
            return False
        self.is_active = False
        self.deleted_at = deactivated_at or datetime.now(timezone.utc)
        self.deactivation_reason = reason
        return True
