"""
Shared run lifecycle for entity sync jobs.

``EntitySyncJob.run`` opens a ledger entry, streams pages from the fetcher
through an ``UpsertReconciler`` (committing after every page), runs deletion
detection after a complete full pass, advances the watermark once everything
is committed, and finally closes the run. Any exception rolls back, closes
the run as failed with a readable summary, and is re-raised to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterator, Mapping

from flask import current_app, has_app_context
from sqlalchemy.orm import Session

from partner_portal.models import SyncRun, db

from ..adapters.http import Page
from ..utils import utcnow
from .cursors import CursorTracker
from .deletion import DeletionDetector, DeletionResult
from .failure_service import SyncFailureService
from .reconciler import ReconcileStats, SourceRecord, UpsertReconciler
from .run_service import RunCounters, RunLedger

FULL = "full"
INCREMENTAL = "incremental"


@dataclass
class SyncOutcome:
    """Result handed back to the orchestrator for one entity sync."""

    run: SyncRun
    mode: str
    counters: RunCounters

    @property
    def status(self) -> str:
        return self.run.status.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run.id,
            "sync_type": self.run.sync_type,
            "mode": self.mode,
            "status": self.status,
            **self.counters.to_dict(),
        }


class EntitySyncJob:
    """Base class; subclasses describe one upstream collection and its table."""

    source: str = ""
    entity: str = ""
    model = None
    key_fields: tuple[str, ...] = ("id",)
    periodic_full_sync = True

    def __init__(
        self,
        fetcher,
        *,
        mode: str = INCREMENTAL,
        task_type: str | None = None,
        triggered_by_user_id: int | None = None,
        session: Session | None = None,
        cursors: CursorTracker | None = None,
        config: Mapping[str, Any] | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if mode not in (FULL, INCREMENTAL):
            raise ValueError(f"Unsupported sync mode '{mode}'.")
        self.fetcher = fetcher
        self.requested_mode = mode
        self.task_type = task_type
        self.triggered_by_user_id = triggered_by_user_id
        self.session: Session = session or db.session
        if config is None:
            config = current_app.config if has_app_context() else {}
        self.config = config
        self.cursors = cursors or CursorTracker.from_config(
            self.source, self.config, session=self.session, clock=clock
        )
        self.logger = logger or (current_app.logger if has_app_context() else logging.getLogger(__name__))
        self.clock = clock
        self.ledger = RunLedger(self.session)
        self.failures = SyncFailureService(self.session)

    @property
    def sync_type(self) -> str:
        return f"{self.source}_{self.entity}"

    # Lifecycle --------------------------------------------------------------------

    def resolve_mode(self) -> str:
        if self.requested_mode == FULL:
            return FULL
        if self.periodic_full_sync and self.cursors.should_full_sync(self.entity):
            return FULL
        return INCREMENTAL

    def run(self) -> SyncOutcome:
        mode = self.resolve_mode()
        run = self.ledger.open(
            self.sync_type,
            mode=mode,
            task_type=self.task_type,
            triggered_by_user_id=self.triggered_by_user_id,
        )
        run_id = run.id
        counters = RunCounters()
        api_baseline = self.fetcher.stats.snapshot()
        log_extra = {"sync_run_id": run_id, "sync_type": self.sync_type, "sync_mode": mode}
        self.logger.info("Sync run started", extra=log_extra)

        try:
            self.execute(run, counters, mode)
            counters.add_api(self.fetcher.stats.since(api_baseline))
            self.ledger.close(run, counters)
        except Exception as exc:
            counters.add_api(self.fetcher.stats.since(api_baseline))
            self.ledger.fail(run_id, exc, counters)
            self.logger.exception("Sync run failed", extra={**log_extra, "sync_error": str(exc)})
            raise

        self.logger.info(
            "Sync run finished",
            extra={**log_extra, "sync_status": run.status.value, "sync_counts": counters.to_dict()},
        )
        return SyncOutcome(run=run, mode=mode, counters=counters)

    def execute(self, run: SyncRun, counters: RunCounters, mode: str) -> None:
        since = None if mode == FULL else self.cursors.watermark(self.entity)
        reconciler = self.build_reconciler(run)
        self.prepare(run, mode)

        observed: set = set()
        pass_complete = True
        for page in self.fetch_pages(since):
            if page.error is not None:
                pass_complete = False
                self.record_page_error(run, counters, page)
                break
            stats = reconciler.reconcile(page.items, transform=self.transform)
            self.session.commit()
            counters.add_reconcile(stats)
            observed.update(stats.observed_keys)
            self.after_page(run, counters, page, stats, mode)

        if mode == FULL:
            result = self.detect_deletions(observed, pass_complete=pass_complete)
            self.session.commit()
            counters.add_deletions(result)

        self.finalize(run, counters, mode)

        if pass_complete:
            self.cursors.advance(self.entity, counters.max_source_updated_at, run_id=run.id)
            if mode == FULL:
                self.cursors.mark_full_sync(self.entity, run_id=run.id)

    # Hooks ------------------------------------------------------------------------

    def fetch_pages(self, since: datetime | None) -> Iterator[Page]:
        raise NotImplementedError

    def transform(self, item: Mapping[str, Any]) -> SourceRecord | None:
        raise NotImplementedError

    def build_reconciler(self, run: SyncRun) -> UpsertReconciler:
        return UpsertReconciler(
            self.model,
            entity_type=self.entity,
            sync_type=self.sync_type,
            key_fields=self.key_fields,
            session=self.session,
            run=run,
            failures=self.failures,
            logger=self.logger,
            clock=self.clock,
        )

    def prepare(self, run: SyncRun, mode: str) -> None:
        """Load lookup tables needed by ``transform``."""

    def after_page(
        self, run: SyncRun, counters: RunCounters, page: Page, stats: ReconcileStats, mode: str
    ) -> None:
        """Called after each page has been committed."""

    def detect_deletions(self, observed: set, *, pass_complete: bool) -> DeletionResult:
        if not hasattr(self.model, "is_active"):
            return DeletionResult()
        detector = DeletionDetector(
            self.model,
            key_field=self.key_fields[0],
            session=self.session,
            logger=self.logger,
            clock=self.clock,
        )
        return detector.detect(observed, pass_complete=pass_complete)

    def finalize(self, run: SyncRun, counters: RunCounters, mode: str) -> None:
        """Called after deletion detection, before the watermark moves."""

    def record_page_error(self, run: SyncRun, counters: RunCounters, page: Page, *, entity_type=None) -> None:
        error = page.error
        counters.page_errors += 1
        self.failures.record(
            run=run,
            sync_type=self.sync_type,
            entity_type=entity_type or self.entity,
            entity_id=error.url,
            entity_name=f"page {page.number}",
            reason=error.kind,
            http_status=error.http_status,
            details=error.message,
        )
        self.session.commit()
