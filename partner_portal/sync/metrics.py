"""Prometheus metrics helpers for the sync engine."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Gauge, Histogram

_sync_enabled_gauge = Gauge(
    "partner_sync_enabled",
    "Whether the sync engine is enabled (1) or disabled (0).",
)
_sync_runs_counter = Counter(
    "partner_sync_runs_total",
    "Sync runs by sync type and terminal status.",
    ["sync_type", "status"],
)
_sync_run_duration = Histogram(
    "partner_sync_run_duration_seconds",
    "Duration of sync runs in seconds.",
    ["sync_type"],
    buckets=(1, 5, 15, 30, 60, 120, 300, 900, 1800, 3600),
)
_api_calls_counter = Counter(
    "partner_sync_api_calls_total",
    "Upstream API requests by source and outcome.",
    ["source", "outcome"],
)
_rate_limit_retries = Counter(
    "partner_sync_rate_limit_retries_total",
    "Rate-limit backoff retries by source.",
    ["source"],
)
_records_counter = Counter(
    "partner_sync_records_total",
    "Reconciled records by entity type and outcome.",
    ["entity_type", "outcome"],
)
_migration_version_gauge = Gauge(
    "partner_sync_schema_version",
    "Highest applied schema migration version.",
)


def record_sync_enabled(enabled: bool) -> None:
    """Set the sync-enabled gauge."""
    _sync_enabled_gauge.set(1 if enabled else 0)


def record_sync_run(*, sync_type: str, status: str, duration_seconds: float | None) -> None:
    """Capture the terminal outcome of a sync run."""
    _sync_runs_counter.labels(sync_type=sync_type, status=status).inc()
    if duration_seconds is not None:
        _sync_run_duration.labels(sync_type=sync_type).observe(max(0.0, duration_seconds))


def record_api_call(source: str, outcome: Literal["ok", "rate_limited", "error", "transport_error"]) -> None:
    _api_calls_counter.labels(source=source, outcome=outcome).inc()


def record_rate_limit_retry(source: str) -> None:
    _rate_limit_retries.labels(source=source).inc()


def record_reconciled(entity_type: str, outcome: str, count: int = 1) -> None:
    if count <= 0:
        return
    _records_counter.labels(entity_type=entity_type, outcome=outcome).inc(count)


def record_schema_version(version: int) -> None:
    _migration_version_gauge.set(version)
