# config/validation.py

"""
Environment variable validation for the partner portal.
Validates required environment variables at startup.
"""

import os
import sys
from typing import List, Mapping, Tuple


def _is_true(value) -> bool:
    return str(value or "false").strip().lower() in {"1", "true", "yes", "on"}


def validate_sync_settings(settings: Mapping[str, object]) -> List[str]:
    """
    Check that the LMS/CRM credentials needed by the sync engine are present.

    ``settings`` may be ``os.environ`` or a Flask ``app.config`` mapping.
    """
    errors: List[str] = []
    if not _is_true(settings.get("SYNC_ENABLED")):
        return errors

    if not settings.get("LMS_API_KEY"):
        errors.append("LMS_API_KEY is required when SYNC_ENABLED=true")
    if not settings.get("LMS_API_BASE_URL") and "LMS_API_BASE_URL" in settings:
        errors.append("LMS_API_BASE_URL must not be empty when SYNC_ENABLED=true")

    crm_values = [settings.get(name) for name in ("CRM_API_BASE_URL", "CRM_API_KEY", "CRM_TENANT_ID")]
    if any(crm_values) and not all(crm_values):
        errors.append("CRM_API_BASE_URL, CRM_API_KEY and CRM_TENANT_ID must be set together")

    if _is_true(settings.get("SYNC_WORKER_ENABLED")) and settings.get("CELERY_BROKER_URL"):
        if not settings.get("CELERY_RESULT_BACKEND"):
            errors.append("CELERY_RESULT_BACKEND is required when CELERY_BROKER_URL is set")
    return errors


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: Flask environment (development, production, testing)
                  If None, reads from FLASK_ENV environment variable

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")

    errors = []

    # Only validate in production
    if flask_env != "production":
        return True, []

    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key in {"your-secret-key", "your_secret_key"}:
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not os.environ.get("DATABASE_URL"):
        errors.append("DATABASE_URL is required in production. Set it to your database connection string.")

    errors.extend(validate_sync_settings(os.environ))

    is_valid = len(errors) == 0
    return is_valid, errors


def validate_and_exit(flask_env: str = None) -> None:
    """
    Validate environment variables and exit with error if validation fails.
    Intended to be called at application startup.
    """
    is_valid, errors = validate_environment(flask_env)

    if not is_valid:
        print("=" * 80, file=sys.stderr)
        print("ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        print("\nThe following environment variables are missing or invalid:\n", file=sys.stderr)

        for i, error in enumerate(errors, 1):
            print(f"{i}. {error}", file=sys.stderr)

        print("\n" + "=" * 80, file=sys.stderr)
        print("Please check your .env file or environment variables.", file=sys.stderr)
        print("=" * 80, file=sys.stderr)

        sys.exit(1)
