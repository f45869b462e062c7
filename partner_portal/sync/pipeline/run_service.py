"""
Run ledger: opening, closing, querying and summarizing sync runs.

Runs are opened in ``running`` state and committed before any upstream call,
so a crashed worker leaves a visible record. Closing a run writes the final
counters and the terminal status in a single commit; after that the row is
read-only.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, time, timezone
from typing import Any, Iterable, Mapping

from sqlalchemy import and_, func
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from partner_portal.models import RUN_COUNTER_FIELDS, SyncRun, SyncRunStatus, User, db

from ..adapters.http import ApiCallStats
from ..metrics import record_sync_run
from ..utils import ensure_utc, utcnow
from .deletion import DeletionResult
from .reconciler import ReconcileStats

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100
DEFAULT_SORT = "-started_at"
MAX_ERROR_SUMMARY_LENGTH = 1000

VALID_SORT_FIELDS = {
    "id": SyncRun.id,
    "sync_type": SyncRun.sync_type,
    "status": SyncRun.status,
    "started_at": SyncRun.started_at,
    "finished_at": SyncRun.finished_at,
}


@dataclass
class RunCounters:
    """Counters accumulated in memory while a run executes."""

    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_deleted: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    fk_errors: int = 0
    api_calls_made: int = 0
    api_calls_saved: int = 0
    cache_hits: int = 0
    page_errors: int = 0
    max_source_updated_at: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def add_reconcile(self, stats: ReconcileStats) -> None:
        self.records_processed += stats.processed
        self.records_created += stats.created
        self.records_updated += stats.updated
        self.records_skipped += stats.skipped
        self.records_failed += stats.failed
        self.fk_errors += stats.fk_errors
        self.cache_hits += stats.cache_hits
        if stats.max_source_updated_at is not None:
            current = self.max_source_updated_at
            candidate = ensure_utc(stats.max_source_updated_at)
            self.max_source_updated_at = candidate if current is None else max(current, candidate)

    def add_api(self, stats: ApiCallStats) -> None:
        self.api_calls_made += stats.calls_made
        self.api_calls_saved += stats.calls_saved
        self.cache_hits += stats.cache_hits

    def add_deletions(self, result: DeletionResult) -> None:
        self.records_deleted += result.deleted_count
        if result.memberships_preserved:
            self.bump("memberships_preserved", result.memberships_preserved)

    def bump(self, name: str, amount: int = 1) -> None:
        self.extra[name] = int(self.extra.get(name, 0)) + amount

    @property
    def has_errors(self) -> bool:
        return self.records_failed > 0 or self.page_errors > 0

    def to_dict(self) -> dict[str, Any]:
        payload = {name: getattr(self, name) for name in RUN_COUNTER_FIELDS}
        payload["page_errors"] = self.page_errors
        payload.update(self.extra)
        return payload


class RunLedger:
    """Open and close run records."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def open(
        self,
        sync_type: str,
        *,
        mode: str,
        task_type: str | None = None,
        triggered_by_user_id: int | None = None,
        notes: str | None = None,
    ) -> SyncRun:
        run = SyncRun(
            sync_type=sync_type,
            task_type=task_type,
            mode=mode,
            status=SyncRunStatus.RUNNING,
            started_at=utcnow(),
            triggered_by_user_id=triggered_by_user_id,
            notes=notes,
        )
        self.session.add(run)
        self.session.commit()
        return run

    def close(self, run: SyncRun, counters: RunCounters, *, status: SyncRunStatus | None = None) -> SyncRun:
        resolved_status = status or (
            SyncRunStatus.PARTIALLY_FAILED if counters.has_errors else SyncRunStatus.SUCCEEDED
        )
        for name in RUN_COUNTER_FIELDS:
            setattr(run, name, int(getattr(counters, name)))
        run.counts_json = counters.to_dict()
        run.max_source_updated_at = counters.max_source_updated_at
        error_summary = None
        if resolved_status is SyncRunStatus.PARTIALLY_FAILED:
            error_summary = _partial_failure_summary(counters)
        run.close(resolved_status, error_summary=error_summary)
        self.session.commit()
        record_sync_run(sync_type=run.sync_type, status=run.status.value, duration_seconds=run.duration_seconds)
        return run

    def fail(self, run_id: int, exc: BaseException, counters: RunCounters | None = None) -> SyncRun | None:
        """Roll back pending work and close the run as failed with a readable summary."""
        self.session.rollback()
        run = self.session.get(SyncRun, run_id)
        if run is None or run.is_closed:
            return run
        if counters is not None:
            for name in RUN_COUNTER_FIELDS:
                setattr(run, name, int(getattr(counters, name)))
            run.counts_json = counters.to_dict()
        run.close(SyncRunStatus.FAILED, error_summary=summarize_error(exc))
        self.session.commit()
        record_sync_run(sync_type=run.sync_type, status=run.status.value, duration_seconds=run.duration_seconds)
        return run


@dataclass(frozen=True)
class RunFilters:
    """Canonical set of filter options applied to sync run queries."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    statuses: tuple[SyncRunStatus, ...] = field(default_factory=tuple)
    sync_types: tuple[str, ...] = field(default_factory=tuple)
    task_types: tuple[str, ...] = field(default_factory=tuple)
    started_from: datetime | None = None
    started_to: datetime | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        statuses: Iterable[str] | None = None,
        sync_types: Iterable[str] | None = None,
        task_types: Iterable[str] | None = None,
        started_from: str | datetime | None = None,
        started_to: str | datetime | None = None,
    ) -> "RunFilters":
        """
        Coerce mixed user input into a validated ``RunFilters`` instance.
        """

        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)

        resolved_sort = sort or DEFAULT_SORT
        sort_key = resolved_sort.lstrip("-")
        if sort_key not in VALID_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{sort_key}'.")

        resolved_statuses = tuple(_coerce_status(value) for value in (statuses or ()) if value not in (None, ""))
        resolved_sync_types = tuple(sorted({s.strip().lower() for s in (sync_types or ()) if s}))
        resolved_task_types = tuple(sorted({s.strip().lower() for s in (task_types or ()) if s}))

        resolved_started_from = _coerce_datetime(started_from)
        resolved_started_to = _coerce_datetime(started_to, end_of_day=True)
        if resolved_started_from and resolved_started_to and resolved_started_from > resolved_started_to:
            raise ValueError("started_from must be before started_to.")

        return cls(
            page=resolved_page,
            page_size=resolved_size,
            sort=resolved_sort,
            statuses=resolved_statuses,
            sync_types=resolved_sync_types,
            task_types=resolved_task_types,
            started_from=resolved_started_from,
            started_to=resolved_started_to,
        )


@dataclass(slots=True)
class RunSummary:
    """Summarized representation of a sync run."""

    id: int
    sync_type: str
    task_type: str | None
    mode: str
    status: str
    started_at: datetime | None
    finished_at: datetime | None
    duration_seconds: float | None
    records_processed: int
    records_created: int
    records_updated: int
    records_deleted: int
    records_skipped: int
    records_failed: int
    fk_errors: int
    api_calls_made: int
    api_calls_saved: int
    cache_hits: int
    error_summary: str | None
    triggered_by: Mapping[str, Any] | None
    counts: Mapping[str, Any]

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["started_at"] = self.started_at.isoformat() if self.started_at else None
        payload["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return payload


@dataclass(slots=True)
class RunListResult:
    """Paginated result set for sync runs."""

    items: list[RunSummary]
    total: int
    page: int
    page_size: int
    total_pages: int


@dataclass(slots=True)
class RunStats:
    """Aggregate statistics for the sync dashboard."""

    total: int
    statuses: Mapping[str, int]
    sync_types: Mapping[str, int]
    api_calls_made: int
    api_calls_saved: int
    cache_hits: int

    @property
    def api_savings_ratio(self) -> float:
        requested = self.api_calls_made + self.api_calls_saved
        return round(self.api_calls_saved / requested, 4) if requested else 0.0


class SyncRunService:
    """Facade for querying sync runs with consistent filtering semantics."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def list_runs(self, filters: RunFilters) -> RunListResult:
        query = self._apply_filters(self._base_query(), filters)

        total = query.count()
        if total == 0:
            return RunListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        paginated = (
            query.order_by(_resolve_sort_expression(filters.sort), SyncRun.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        total_pages = (total + filters.page_size - 1) // filters.page_size
        return RunListResult(
            items=[self.summarize(run) for run in paginated],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=total_pages,
        )

    def get_run(self, run_id: int) -> SyncRun:
        run = self._base_query().filter(SyncRun.id == run_id).one_or_none()
        if run is None:
            raise NoResultFound(f"Sync run {run_id} not found.")
        return run

    def get_run_summary(self, run_id: int) -> RunSummary:
        return self.summarize(self.get_run(run_id))

    def latest_run(self, sync_type: str, *, status: SyncRunStatus | None = None) -> SyncRun | None:
        query = self._base_query().filter(SyncRun.sync_type == sync_type)
        if status is not None:
            query = query.filter(SyncRun.status == status)
        return query.order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).first()

    def get_stats(self, filters: RunFilters) -> RunStats:
        query = self._apply_filters(self._base_query(), filters)

        status_counts = {
            status.value if isinstance(status, SyncRunStatus) else str(status): count
            for status, count in query.with_entities(SyncRun.status, func.count()).group_by(SyncRun.status).all()
        }
        type_counts = {
            sync_type: count
            for sync_type, count in (
                query.with_entities(SyncRun.sync_type, func.count()).group_by(SyncRun.sync_type).all()
            )
        }
        made, saved, hits = query.with_entities(
            func.coalesce(func.sum(SyncRun.api_calls_made), 0),
            func.coalesce(func.sum(SyncRun.api_calls_saved), 0),
            func.coalesce(func.sum(SyncRun.cache_hits), 0),
        ).one()
        return RunStats(
            total=sum(status_counts.values()),
            statuses=status_counts,
            sync_types=type_counts,
            api_calls_made=int(made or 0),
            api_calls_saved=int(saved or 0),
            cache_hits=int(hits or 0),
        )

    def summarize(self, run: SyncRun) -> RunSummary:
        duration_seconds: float | None = None
        if run.started_at:
            finished = ensure_utc(run.finished_at) if run.finished_at else datetime.now(timezone.utc)
            duration_seconds = (finished - ensure_utc(run.started_at)).total_seconds()

        triggered_by_user = None
        if run.triggered_by_user_id:
            user: User | None = self.session.get(User, run.triggered_by_user_id)
            if user:
                triggered_by_user = {
                    "id": user.id,
                    "username": user.username,
                    "display_name": user.display_name,
                }

        counters = run.counters()
        return RunSummary(
            id=run.id,
            sync_type=run.sync_type,
            task_type=run.task_type,
            mode=run.mode,
            status=run.status.value if isinstance(run.status, SyncRunStatus) else str(run.status),
            started_at=run.started_at,
            finished_at=run.finished_at,
            duration_seconds=duration_seconds,
            error_summary=run.error_summary,
            triggered_by=triggered_by_user,
            counts=dict(run.counts_json or {}),
            **counters,
        )

    def _base_query(self):
        return self.session.query(SyncRun)

    def _apply_filters(self, query, filters: RunFilters):
        predicates = []
        if filters.statuses:
            predicates.append(SyncRun.status.in_(filters.statuses))
        if filters.sync_types:
            predicates.append(SyncRun.sync_type.in_(filters.sync_types))
        if filters.task_types:
            predicates.append(SyncRun.task_type.in_(filters.task_types))
        if filters.started_from:
            predicates.append(SyncRun.started_at >= filters.started_from)
        if filters.started_to:
            predicates.append(SyncRun.started_at <= filters.started_to)
        if predicates:
            query = query.filter(and_(*predicates))
        return query


def summarize_error(exc: BaseException) -> str:
    """Human-readable one-line error for the dashboard; never a traceback."""
    message = str(exc).strip() or type(exc).__name__
    message = " ".join(message.split())
    if len(message) > MAX_ERROR_SUMMARY_LENGTH:
        message = message[:MAX_ERROR_SUMMARY_LENGTH] + "..."
    return message


def _partial_failure_summary(counters: RunCounters) -> str:
    parts = []
    if counters.records_failed:
        parts.append(f"{counters.records_failed} record(s) failed")
    if counters.page_errors:
        parts.append(f"{counters.page_errors} page request(s) failed")
    return "; ".join(parts)


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")


def _coerce_status(value: str | SyncRunStatus) -> SyncRunStatus:
    if isinstance(value, SyncRunStatus):
        return value
    normalized = str(value).strip().lower()
    try:
        return SyncRunStatus(normalized)
    except ValueError:
        raise ValueError(f"Unsupported status filter '{value}'.") from None


def _coerce_datetime(candidate: str | datetime | None, *, end_of_day: bool = False) -> datetime | None:
    if candidate in (None, ""):
        return None
    if isinstance(candidate, datetime):
        return candidate if candidate.tzinfo else candidate.replace(tzinfo=timezone.utc)
    text = str(candidate).strip()
    for fmt in ("%Y-%m-%d", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S"):
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        if fmt == "%Y-%m-%d":
            parsed = datetime.combine(parsed.date(), time.max if end_of_day else time.min)
        return parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unable to parse datetime value '{candidate}'. Expected ISO-like formats.")


def _resolve_sort_expression(sort: str):
    descending = sort.startswith("-")
    expression = VALID_SORT_FIELDS.get(sort.lstrip("-"))
    if expression is None:
        raise ValueError(f"Unsupported sort field '{sort}'.")
    return expression.desc() if descending else expression.asc()
