"""
Consecutive-error health tracking for upstream APIs.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict

from ..utils import utcnow

MAX_CONSECUTIVE_ERRORS = 5


@dataclass
class ApiHealth:
    source: str
    consecutive_errors: int = 0
    last_error: str | None = None
    last_error_at: datetime | None = None
    last_success_at: datetime | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def status(self) -> str:
        if self.consecutive_errors == 0:
            return "healthy"
        if self.consecutive_errors < MAX_CONSECUTIVE_ERRORS:
            return "degraded"
        return "unhealthy"

    def record_success(self) -> None:
        with self._lock:
            self.consecutive_errors = 0
            self.last_success_at = utcnow()

    def record_error(self, message: str) -> None:
        with self._lock:
            self.consecutive_errors += 1
            self.last_error = message
            self.last_error_at = utcnow()

    def reset(self) -> None:
        with self._lock:
            self.consecutive_errors = 0
            self.last_error = None
            self.last_error_at = None

    def to_dict(self) -> dict[str, object]:
        return {
            "source": self.source,
            "status": self.status,
            "consecutive_errors": self.consecutive_errors,
            "max_consecutive_errors": MAX_CONSECUTIVE_ERRORS,
            "last_error": self.last_error,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
        }


_HEALTH: Dict[str, ApiHealth] = {}
_HEALTH_LOCK = threading.Lock()


def get_api_health(source: str) -> ApiHealth:
    with _HEALTH_LOCK:
        health = _HEALTH.get(source)
        if health is None:
            health = ApiHealth(source=source)
            _HEALTH[source] = health
        return health


def health_snapshot() -> dict[str, dict[str, object]]:
    return {source: get_api_health(source).to_dict() for source in ("lms", "crm")}
