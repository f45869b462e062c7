from __future__ import annotations

import pytest

from partner_portal.sync.errors import TaskConfigurationError
from partner_portal.sync.registry import CRM_CHAIN_ORDER, LMS_CHAIN_ORDER, get_task_registry, resolve_task
from partner_portal.sync.task_config import (
    ChainSyncConfig,
    CleanupConfig,
    EnrollmentSyncConfig,
    EntitySyncConfig,
    parse_task_config,
)


def test_registry_covers_entities_chains_and_cleanup():
    registry = get_task_registry()

    assert registry["sync_users"].source == "lms"
    assert registry["sync_partners"].entity == "partners"
    assert registry["sync_groups_full"].forces_full_sync is True
    assert registry["sync_groups"].forces_full_sync is False
    assert registry["lms_sync"].chain == LMS_CHAIN_ORDER == ("users", "groups", "courses", "enrollments")
    assert registry["crm_sync"].chain == CRM_CHAIN_ORDER
    assert registry["cleanup"].kind == "maintenance"
    with pytest.raises(KeyError):
        resolve_task("sync_widgets")


def test_entity_config_defaults_and_mode_normalization():
    assert parse_task_config("sync_users", None) == EntitySyncConfig(mode="incremental")
    assert parse_task_config("sync_users", {"mode": " FULL "}).mode == "full"
    assert parse_task_config("sync_users_full", {}).mode == "full"


def test_full_task_cannot_run_incrementally():
    with pytest.raises(TaskConfigurationError):
        parse_task_config("sync_courses_full", {"mode": "incremental"})


def test_enrollment_config_merges_defaults():
    config = parse_task_config(
        "sync_enrollments",
        {"max_age_days": 3},
        defaults={"batch_size": 50, "max_age_days": 7},
    )

    assert config == EnrollmentSyncConfig(mode="incremental", max_age_days=3, batch_size=50, partner_users_only=True)
    assert config.to_dict()["batch_size"] == 50


def test_chain_config_keeps_dependency_order():
    config = parse_task_config("lms_sync", {"sync_types": ["Enrollments", "users"]})

    assert isinstance(config, ChainSyncConfig)
    assert config.sync_types == ("users", "enrollments")
    assert config.to_dict()["sync_types"] == ["users", "enrollments"]
    assert parse_task_config("crm_sync", None).sync_types == CRM_CHAIN_ORDER


def test_cleanup_config():
    assert parse_task_config("cleanup", {"retention_days": 90}) == CleanupConfig(retention_days=90)
    assert parse_task_config("cleanup", None).retention_days == 30


@pytest.mark.parametrize(
    ("task_type", "payload"),
    [
        ("sync_users", {"batch_size": 10}),
        ("sync_users", {"mode": 1}),
        ("sync_enrollments", {"batch_size": 0}),
        ("sync_enrollments", {"batch_size": "10"}),
        ("sync_enrollments", {"max_age_days": True}),
        ("sync_enrollments", {"partner_users_only": "yes"}),
        ("lms_sync", {"sync_types": "users"}),
        ("lms_sync", {"sync_types": []}),
        ("lms_sync", {"sync_types": ["partners"]}),
        ("cleanup", {"retention_days": -1}),
        ("cleanup", ["retention_days"]),
        ("sync_widgets", {}),
    ],
)
def test_malformed_payloads_are_rejected(task_type, payload):
    with pytest.raises(TaskConfigurationError):
        parse_task_config(task_type, payload)
