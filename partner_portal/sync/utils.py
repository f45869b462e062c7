"""
Shared helpers for the sync engine.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from flask import current_app


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_api_datetime(value: Any) -> datetime | None:
    """
    Parse ISO-8601 timestamps returned by the upstream APIs.

    Accepts a trailing ``Z`` and returns ``None`` for blank or unparseable values.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return ensure_utc(parsed)


def format_api_datetime(value: datetime) -> str:
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def latest(current: datetime | None, candidate: datetime | None) -> datetime | None:
    """Return the later of two optional timestamps."""
    if candidate is None:
        return current
    if current is None:
        return candidate
    return max(ensure_utc(current), ensure_utc(candidate))


def is_sync_enabled(app=None) -> bool:
    """Return True when the sync feature flag is enabled."""
    config = app.config if app is not None else current_app.config
    return bool(config.get("SYNC_ENABLED", False))


def get_setting(name: str, default: Any = None, *, config: Mapping[str, Any] | None = None) -> Any:
    source = config if config is not None else current_app.config
    value = source.get(name)
    return default if value is None else value
