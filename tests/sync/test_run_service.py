from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import NoResultFound

from partner_portal.models import RunLedgerClosedError, SyncRun, SyncRunStatus, db
from partner_portal.sync.pipeline.run_service import (
    MAX_ERROR_SUMMARY_LENGTH,
    MAX_PAGE_SIZE,
    RunCounters,
    RunFilters,
    RunLedger,
    SyncRunService,
    summarize_error,
)


def test_ledger_opens_running_and_closes_with_counters(app):
    ledger = RunLedger()
    run = ledger.open("lms_users", mode="incremental", task_type="sync_users")

    assert run.id is not None
    assert run.status is SyncRunStatus.RUNNING
    assert run.finished_at is None

    counters = RunCounters(records_processed=3, records_created=2, records_updated=1, api_calls_made=2)
    counters.bump("users_total", 3)
    ledger.close(run, counters)

    stored = db.session.get(SyncRun, run.id)
    assert stored.status is SyncRunStatus.SUCCEEDED
    assert stored.records_created == 2
    assert stored.counts_json["users_total"] == 3
    assert stored.error_summary is None
    assert stored.duration_seconds is not None


def test_errors_close_run_as_partially_failed(app):
    ledger = RunLedger()
    run = ledger.open("crm_contacts", mode="full")

    ledger.close(run, RunCounters(records_processed=10, records_failed=2))

    assert run.status is SyncRunStatus.PARTIALLY_FAILED
    assert run.error_summary == "2 record(s) failed"


def test_fail_rolls_back_and_records_summary(app):
    ledger = RunLedger()
    run = ledger.open("lms_groups", mode="full")

    ledger.fail(run.id, ValueError("bad payload\nline two"), RunCounters(records_processed=4))

    stored = db.session.get(SyncRun, run.id)
    assert stored.status is SyncRunStatus.FAILED
    assert stored.error_summary == "bad payload line two"
    assert stored.records_processed == 4


def test_closed_run_is_read_only(app):
    ledger = RunLedger()
    run = ledger.open("lms_users", mode="incremental")
    ledger.close(run, RunCounters())

    with pytest.raises(RunLedgerClosedError):
        run.close(SyncRunStatus.FAILED)

    run.records_created = 99
    with pytest.raises(RunLedgerClosedError):
        db.session.commit()
    db.session.rollback()
    assert db.session.get(SyncRun, run.id).records_created == 0


def test_summarize_error_is_one_bounded_line():
    assert summarize_error(RuntimeError("  spaced\n\tout  ")) == "spaced out"
    assert summarize_error(KeyError()) == "KeyError"
    long_message = summarize_error(RuntimeError("x" * 5000))
    assert len(long_message) == MAX_ERROR_SUMMARY_LENGTH + 3


def test_run_filters_coerce_defaults_and_bounds():
    filters = RunFilters.coerce(page="2", page_size="500", statuses=["Succeeded"], sync_types=["LMS_Users", ""])

    assert filters.page == 2
    assert filters.page_size == MAX_PAGE_SIZE
    assert filters.sort == "-started_at"
    assert filters.statuses == (SyncRunStatus.SUCCEEDED,)
    assert filters.sync_types == ("lms_users",)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"page": "abc"},
        {"sort": "-password"},
        {"statuses": ["exploded"]},
        {"started_from": "yesterday"},
        {"started_from": "2024-06-02", "started_to": "2024-06-01"},
    ],
)
def test_run_filters_reject_invalid_input(kwargs):
    with pytest.raises(ValueError):
        RunFilters.coerce(**kwargs)


def test_list_runs_filters_and_paginates(app, sync_run_factory):
    for day in range(1, 4):
        sync_run_factory("lms_users", started_at=datetime(2024, 5, day, tzinfo=timezone.utc))
    sync_run_factory("crm_partners", task_type="sync_partners", status=SyncRunStatus.FAILED)

    service = SyncRunService()
    page = service.list_runs(RunFilters.coerce(page_size=2, sync_types=["lms_users"]))

    assert page.total == 3
    assert page.total_pages == 2
    assert [item.started_at.day for item in page.items] == [3, 2]

    failed = service.list_runs(RunFilters.coerce(statuses=["failed"]))
    assert [item.sync_type for item in failed.items] == ["crm_partners"]

    windowed = service.list_runs(RunFilters.coerce(started_from="2024-05-02", started_to="2024-05-02"))
    assert windowed.total == 1


def test_stats_report_api_savings(app, sync_run_factory):
    sync_run_factory("lms_enrollments", api_calls_made=30, api_calls_saved=70, cache_hits=5)
    sync_run_factory("lms_users", status=SyncRunStatus.PARTIALLY_FAILED, api_calls_made=10, api_calls_saved=10)

    stats = SyncRunService().get_stats(RunFilters())

    assert stats.total == 2
    assert stats.statuses == {"succeeded": 1, "partially_failed": 1}
    assert stats.sync_types == {"lms_enrollments": 1, "lms_users": 1}
    assert stats.api_calls_made == 40
    assert stats.api_calls_saved == 80
    assert stats.cache_hits == 5
    assert stats.api_savings_ratio == pytest.approx(0.6667)


def test_get_run_summary_and_missing_run(app, sync_run_factory):
    run = sync_run_factory("lms_courses", records_created=4)
    service = SyncRunService()

    summary = service.get_run_summary(run.id).to_dict()
    assert summary["records_created"] == 4
    assert summary["status"] == "succeeded"
    assert summary["duration_seconds"] == 0

    with pytest.raises(NoResultFound):
        service.get_run(run.id + 100)


def test_latest_run_by_type_and_status(app, sync_run_factory):
    sync_run_factory("lms_users", started_at=datetime(2024, 5, 1, tzinfo=timezone.utc))
    newest = sync_run_factory(
        "lms_users", status=SyncRunStatus.FAILED, started_at=datetime(2024, 5, 2, tzinfo=timezone.utc)
    )
    service = SyncRunService()

    assert service.latest_run("lms_users").id == newest.id
    assert service.latest_run("lms_users", status=SyncRunStatus.SUCCEEDED).id != newest.id
    assert service.latest_run("crm_leads") is None
