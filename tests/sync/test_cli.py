from __future__ import annotations

import json

from partner_portal.models import SyncFailure, db
from partner_portal.sync import SYNC_EXTENSION_KEY, init_sync
from partner_portal.sync.pipeline.checkpoints import Checkpoint, CheckpointStore


def _json(result):
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def test_disabled_engine_registers_stub_group(app):
    app.extensions.pop(SYNC_EXTENSION_KEY, None)
    init_sync(app)

    result = app.test_cli_runner().invoke(args=["sync", "run", "sync_users"])

    assert result.exit_code != 0
    assert "unavailable because SYNC_ENABLED=false" in result.output


def test_sync_group_lists_task_types(sync_app, runner):
    result = runner.invoke(args=["sync"])

    assert result.exit_code == 0, result.output
    assert "sync_enrollments_full" in result.output
    assert "CRM Sync Chain" in result.output


def test_run_cleanup_inline_with_config(sync_app, runner):
    payload = _json(runner.invoke(args=["sync", "run", "cleanup", "--config", '{"retention_days": 7}']))

    assert payload["task_type"] == "cleanup"
    assert payload["status"] == "completed"
    assert payload["summary"]["runs_deleted"] == 0


def test_run_rejects_bad_input(sync_app, runner):
    not_json = runner.invoke(args=["sync", "run", "cleanup", "--config", "{oops"])
    assert not_json.exit_code != 0
    assert "--config must be JSON" in not_json.output

    unknown = runner.invoke(args=["sync", "run", "sync_widgets"])
    assert unknown.exit_code != 0
    assert "Unknown task type 'sync_widgets'" in unknown.output

    bad_value = runner.invoke(args=["sync", "run", "cleanup", "--config", '{"retention_days": 0}'])
    assert bad_value.exit_code != 0
    assert "retention_days" in bad_value.output


def test_run_queue_publishes_to_worker(sync_app, runner):
    payload = _json(runner.invoke(args=["sync", "run", "sync_users", "--queue"]))

    assert payload["status"] == "queued"
    assert payload["task_id"]


def test_status_reports_schema_and_tasks(sync_app, runner, scheduled_task_factory, sync_run_factory):
    scheduled_task_factory("sync_users")
    sync_run_factory(api_calls_made=4, api_calls_saved=12)

    payload = _json(runner.invoke(args=["sync", "status"]))

    assert payload["schema_version"] == 0
    assert payload["latest_schema_version"] == 9
    assert [task["task_type"] for task in payload["tasks"]] == ["sync_users"]
    assert payload["runs"]["total"] == 1
    assert payload["runs"]["api_savings_ratio"] == 0.75
    assert payload["api_health"]["lms"]["status"] == "healthy"
    assert payload["unresolved_failures"] == {}


def test_checkpoint_show_and_reset(sync_app, runner):
    CheckpointStore("sync_enrollments_full").save(Checkpoint(offset=400, records_synced=900))

    shown = _json(runner.invoke(args=["sync", "checkpoint", "show", "sync_enrollments_full"]))
    assert shown["offset"] == 400
    assert shown["name"] == "sync_enrollments_full"

    reset = runner.invoke(args=["sync", "checkpoint", "reset", "sync_enrollments_full"])
    assert reset.exit_code == 0, reset.output
    assert CheckpointStore("sync_enrollments_full").load().is_fresh


def test_failures_list_and_resolve(sync_app, runner):
    failure = SyncFailure(
        sync_type="crm_contacts", entity_type="contacts", entity_id="42", failure_reason="integrity_error"
    )
    db.session.add(failure)
    db.session.commit()

    listed = _json(runner.invoke(args=["sync", "failures", "list", "--entity-type", "contacts"]))
    assert listed["total"] == 1
    assert listed["items"][0]["entity_id"] == "42"

    resolved = _json(runner.invoke(args=["sync", "failures", "resolve", str(failure.id), "--notes", "merged"]))
    assert resolved["is_resolved"] is True
    assert resolved["resolution_notes"] == "merged"

    again = runner.invoke(args=["sync", "failures", "resolve", str(failure.id)])
    assert again.exit_code != 0
    assert "already resolved" in again.output

    missing = runner.invoke(args=["sync", "failures", "resolve", "9999"])
    assert missing.exit_code != 0
    assert "not found" in missing.output


def test_migrate_dry_run(sync_app, runner):
    result = runner.invoke(args=["sync", "migrate", "--dry-run"])

    assert result.exit_code == 0, result.output
    assert "Dry run: schema would move from v0 to v9." in result.output
    assert "already_applied" in result.output


def test_recover_reports_counts(sync_app, runner):
    payload = _json(runner.invoke(args=["sync", "recover"]))

    assert payload == {"tasks_failed": 0, "history_cancelled": 0, "runs_failed": 0}
