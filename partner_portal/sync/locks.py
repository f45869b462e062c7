"""
Database-backed single-flight lock, one row per key.

Keys are task types or ``<source>_<entity>`` names. A lock row is inserted
to acquire; the primary key on ``task_type`` rejects a second holder. Rows
past ``expires_at`` belong to a crashed worker and may be taken over.
"""

from __future__ import annotations

import os
import socket
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from partner_portal.models import TaskLock, db

from .errors import TaskLockedError
from .utils import ensure_utc, utcnow

DEFAULT_LOCK_TTL = timedelta(minutes=120)


def default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class TaskLockManager:
    def __init__(
        self,
        session: Session | None = None,
        *,
        ttl: timedelta = DEFAULT_LOCK_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session = session or db.session
        self.ttl = ttl
        self.clock = clock

    def acquire(self, task_type: str, holder: str | None = None) -> TaskLock:
        """
        Take the lock for ``task_type`` or raise ``TaskLockedError`` when a
        live holder already has it.
        """
        holder = holder or default_holder()
        now = self.clock()
        existing = self.session.get(TaskLock, task_type, populate_existing=True)
        if existing is None:
            lock = TaskLock(task_type=task_type, holder=holder, acquired_at=now, expires_at=now + self.ttl)
            self.session.add(lock)
            try:
                self.session.commit()
                return lock
            except IntegrityError:
                self.session.rollback()
            existing = self.session.get(TaskLock, task_type, populate_existing=True)
            if existing is None:
                # Released between our insert and the lookup.
                return self.acquire(task_type, holder)
        if ensure_utc(existing.expires_at) > now:
            raise TaskLockedError(task_type, existing.holder)

        taken_over = (
            self.session.query(TaskLock)
            .filter(TaskLock.task_type == task_type, TaskLock.holder == existing.holder)
            .update(
                {"holder": holder, "acquired_at": now, "expires_at": now + self.ttl},
                synchronize_session=False,
            )
        )
        self.session.commit()
        if not taken_over:
            raise TaskLockedError(task_type)
        return self.session.get(TaskLock, task_type, populate_existing=True)

    def release(self, task_type: str, holder: str) -> bool:
        deleted = (
            self.session.query(TaskLock)
            .filter(TaskLock.task_type == task_type, TaskLock.holder == holder)
            .delete(synchronize_session="fetch")
        )
        self.session.commit()
        return bool(deleted)

    def current(self, task_type: str) -> TaskLock | None:
        lock = self.session.get(TaskLock, task_type)
        if lock is None or ensure_utc(lock.expires_at) <= self.clock():
            return None
        return lock

    @contextmanager
    def hold(self, task_type: str, holder: str | None = None) -> Iterator[TaskLock]:
        lock = self.acquire(task_type, holder)
        held_by = lock.holder
        try:
            yield lock
        finally:
            self.release(task_type, held_by)
