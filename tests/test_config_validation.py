import pytest

from config.validation import validate_environment, validate_sync_settings


def test_sync_disabled_needs_nothing():
    assert validate_sync_settings({"SYNC_ENABLED": "false"}) == []


def test_sync_enabled_requires_lms_key():
    errors = validate_sync_settings({"SYNC_ENABLED": "true"})

    assert errors == ["LMS_API_KEY is required when SYNC_ENABLED=true"]


def test_partial_crm_credentials_are_rejected():
    errors = validate_sync_settings({"SYNC_ENABLED": True, "LMS_API_KEY": "k", "CRM_API_KEY": "c"})

    assert errors == ["CRM_API_BASE_URL, CRM_API_KEY and CRM_TENANT_ID must be set together"]


def test_worker_broker_needs_result_backend():
    errors = validate_sync_settings(
        {"SYNC_ENABLED": "1", "LMS_API_KEY": "k", "SYNC_WORKER_ENABLED": "yes", "CELERY_BROKER_URL": "redis://"}
    )

    assert errors == ["CELERY_RESULT_BACKEND is required when CELERY_BROKER_URL is set"]


def test_only_production_is_validated(monkeypatch):
    monkeypatch.delenv("SECRET_KEY", raising=False)

    assert validate_environment("development") == (True, [])


@pytest.mark.parametrize("secret", ["", "your-secret-key"])
def test_production_requires_real_secret_and_database(monkeypatch, secret):
    monkeypatch.setenv("SECRET_KEY", secret)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("SYNC_ENABLED", "false")

    is_valid, errors = validate_environment("production")

    assert is_valid is False
    assert len(errors) == 2
    assert errors[1].startswith("DATABASE_URL is required")
