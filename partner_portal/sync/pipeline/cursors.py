"""
Incremental watermarks per source/entity.

Watermarks hold the upstream system's ``updated_at`` values, never local wall
clock time, and only move forward. ``advance`` commits on its own and must be
called after the batch it describes has been committed.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from sqlalchemy.orm import Session

from partner_portal.models import SyncCursor, db

from ..utils import ensure_utc, utcnow

DEFAULT_FULL_SYNC_INTERVAL = timedelta(hours=24)


class CursorTracker:
    def __init__(
        self,
        source: str,
        *,
        session: Session | None = None,
        full_sync_interval: timedelta = DEFAULT_FULL_SYNC_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.source = source
        self.session: Session = session or db.session
        self.full_sync_interval = full_sync_interval
        self.clock = clock

    @classmethod
    def from_config(cls, source: str, config: Mapping[str, Any], **kwargs) -> "CursorTracker":
        hours = int(config.get("SYNC_FULL_SYNC_INTERVAL_HOURS", 24) or 24)
        return cls(source, full_sync_interval=timedelta(hours=hours), **kwargs)

    def should_full_sync(self, entity_type: str, *, scope_key: str = "") -> bool:
        """True when no full sync is recorded or the last one is older than the cadence."""
        cursor = self._get(entity_type, scope_key)
        if cursor is None or cursor.last_full_sync_at is None:
            return True
        return self.clock() - ensure_utc(cursor.last_full_sync_at) >= self.full_sync_interval

    def watermark(self, entity_type: str, *, scope_key: str = "") -> datetime | None:
        cursor = self._get(entity_type, scope_key)
        if cursor is None:
            return None
        return ensure_utc(cursor.last_synced_at)

    def advance(
        self,
        entity_type: str,
        timestamp: datetime | None,
        *,
        scope_key: str = "",
        run_id: int | None = None,
    ) -> datetime | None:
        """
        Move the watermark to ``timestamp`` if it is later than the stored one.

        Returns the effective watermark after the call.
        """
        cursor = self._get(entity_type, scope_key)
        current = ensure_utc(cursor.last_synced_at) if cursor is not None else None
        if timestamp is None:
            return current
        candidate = ensure_utc(timestamp)
        if current is not None and candidate <= current:
            return current
        if cursor is None:
            cursor = self._create(entity_type, scope_key)
        cursor.last_synced_at = candidate
        if run_id is not None:
            cursor.last_run_id = run_id
        self.session.commit()
        return candidate

    def mark_full_sync(
        self,
        entity_type: str,
        at: datetime | None = None,
        *,
        scope_key: str = "",
        run_id: int | None = None,
    ) -> None:
        cursor = self._get(entity_type, scope_key) or self._create(entity_type, scope_key)
        cursor.last_full_sync_at = ensure_utc(at) if at is not None else self.clock()
        if run_id is not None:
            cursor.last_run_id = run_id
        self.session.commit()

    def snapshot(self) -> list[dict[str, Any]]:
        rows = (
            self.session.query(SyncCursor)
            .filter(SyncCursor.source == self.source)
            .order_by(SyncCursor.entity_type.asc(), SyncCursor.scope_key.asc())
            .all()
        )
        return [
            {
                "source": row.source,
                "entity_type": row.entity_type,
                "scope_key": row.scope_key,
                "last_synced_at": _isoformat(row.last_synced_at),
                "last_full_sync_at": _isoformat(row.last_full_sync_at),
                "last_run_id": row.last_run_id,
            }
            for row in rows
        ]

    def _get(self, entity_type: str, scope_key: str) -> SyncCursor | None:
        return (
            self.session.query(SyncCursor)
            .filter(
                SyncCursor.source == self.source,
                SyncCursor.entity_type == entity_type,
                SyncCursor.scope_key == scope_key,
            )
            .one_or_none()
        )

    def _create(self, entity_type: str, scope_key: str) -> SyncCursor:
        cursor = SyncCursor(source=self.source, entity_type=entity_type, scope_key=scope_key)
        self.session.add(cursor)
        return cursor


def _isoformat(value: datetime | None) -> str | None:
    return ensure_utc(value).isoformat() if value is not None else None
