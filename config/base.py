# config/base.py
import os
from datetime import timedelta


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=None):
    """Parse an integer environment value, falling back to ``default``."""
    if value in (None, ""):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    if minimum is not None and number < minimum:
        return minimum
    return number


def _coerce_float(value, default, *, minimum=0.0):
    if value in (None, ""):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(minimum, number)


def _parse_name_list(value):
    """
    Parse a comma-separated list of names while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized lowercase identifiers.
    """
    if not value:
        return ()

    seen = set()
    names = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        names.append(item)
    return tuple(names)


def _parse_int_list(value, *, minimum=1, maximum=100):
    """
    Parse a comma-separated list of integers with optional bounds.
    """

    if not value:
        return []

    parsed: list[int] = []
    for raw_item in value.split(","):
        item = raw_item.strip()
        if not item:
            continue
        try:
            number = int(item)
        except ValueError:
            continue
        if number < minimum or number > maximum:
            continue
        if number not in parsed:
            parsed.append(number)
    return parsed


class Config:
    # SECRET_KEY must be set via environment variable in production
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY environment variable before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Logging
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    ENABLE_CONSOLE_LOGGING = _coerce_bool(os.environ.get("ENABLE_CONSOLE_LOGGING"), default=True)
    ENABLE_FILE_LOGGING = _coerce_bool(os.environ.get("ENABLE_FILE_LOGGING"), default=False)

    # Sync engine feature flags
    SYNC_ENABLED = _coerce_bool(os.environ.get("SYNC_ENABLED"), default=False)
    SYNC_WORKER_ENABLED = _coerce_bool(os.environ.get("SYNC_WORKER_ENABLED"), default=False)
    SYNC_SCHEDULER_ENABLED = _coerce_bool(os.environ.get("SYNC_SCHEDULER_ENABLED"), default=False)

    # LMS API
    LMS_API_BASE_URL = os.environ.get("LMS_API_BASE_URL", "https://api.northpass.com")
    LMS_API_KEY = os.environ.get("LMS_API_KEY")
    LMS_PAGE_SIZE = _coerce_int(os.environ.get("LMS_PAGE_SIZE"), 100, minimum=1)
    LMS_RATE_LIMIT_BACKOFF_SECONDS = _coerce_float(os.environ.get("LMS_RATE_LIMIT_BACKOFF_SECONDS"), 10.0)
    LMS_MAX_RATE_LIMIT_RETRIES = _coerce_int(os.environ.get("LMS_MAX_RATE_LIMIT_RETRIES"), 3, minimum=1)
    LMS_PAGE_DELAY_SECONDS = _coerce_float(os.environ.get("LMS_PAGE_DELAY_SECONDS"), 0.125)
    LMS_RECORD_DELAY_SECONDS = _coerce_float(os.environ.get("LMS_RECORD_DELAY_SECONDS"), 0.1)
    LMS_REQUEST_TIMEOUT_SECONDS = _coerce_float(os.environ.get("LMS_REQUEST_TIMEOUT_SECONDS"), 30.0, minimum=1.0)

    # CRM API
    CRM_API_BASE_URL = os.environ.get("CRM_API_BASE_URL")
    CRM_API_KEY = os.environ.get("CRM_API_KEY")
    CRM_TENANT_ID = os.environ.get("CRM_TENANT_ID")
    CRM_PAGE_SIZE = _coerce_int(os.environ.get("CRM_PAGE_SIZE"), 100, minimum=1)
    CRM_PAGE_DELAY_SECONDS = _coerce_float(os.environ.get("CRM_PAGE_DELAY_SECONDS"), 0.125)
    CRM_EXCLUDED_EMAIL_DOMAINS = _parse_name_list(os.environ.get("CRM_EXCLUDED_EMAIL_DOMAINS", ""))

    # Sync behaviour
    SYNC_FULL_SYNC_INTERVAL_HOURS = _coerce_int(os.environ.get("SYNC_FULL_SYNC_INTERVAL_HOURS"), 24, minimum=1)
    SYNC_ENROLLMENT_BATCH_SIZE = _coerce_int(os.environ.get("SYNC_ENROLLMENT_BATCH_SIZE"), 200, minimum=1)
    SYNC_ENROLLMENT_MAX_AGE_DAYS = _coerce_int(os.environ.get("SYNC_ENROLLMENT_MAX_AGE_DAYS"), 7, minimum=1)
    SYNC_TASK_LOCK_TTL_MINUTES = _coerce_int(os.environ.get("SYNC_TASK_LOCK_TTL_MINUTES"), 120, minimum=1)
    SYNC_TRIGGER_RATE_LIMIT = _coerce_int(os.environ.get("SYNC_TRIGGER_RATE_LIMIT"), 1, minimum=1)
    SYNC_TRIGGER_RATE_WINDOW_SECONDS = _coerce_int(
        os.environ.get("SYNC_TRIGGER_RATE_WINDOW_SECONDS"), 60, minimum=1
    )
    SYNC_SCHEDULED_TASKS_PATH = os.environ.get(
        "SYNC_SCHEDULED_TASKS_PATH",
        os.path.join(os.path.dirname(__file__), "scheduled_tasks.yaml"),
    )

    # Celery worker
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")

    # Run ledger dashboard
    _raw_runs_page_sizes = os.environ.get("SYNC_RUNS_PAGE_SIZES", "25,50,100")
    _parsed_page_sizes = _parse_int_list(_raw_runs_page_sizes, minimum=5, maximum=500)
    if not _parsed_page_sizes:
        _parsed_page_sizes = [25, 50, 100]
    SYNC_RUNS_PAGE_SIZE_DEFAULT = _coerce_int(
        os.environ.get("SYNC_RUNS_PAGE_SIZE_DEFAULT"), _parsed_page_sizes[0], minimum=1
    )
    if SYNC_RUNS_PAGE_SIZE_DEFAULT not in _parsed_page_sizes:
        _parsed_page_sizes.insert(0, SYNC_RUNS_PAGE_SIZE_DEFAULT)
    SYNC_RUNS_PAGE_SIZES = tuple(sorted(set(_parsed_page_sizes)))

    # Session configuration
    PERMANENT_SESSION_LIFETIME = timedelta(days=7)
    SESSION_COOKIE_SECURE = False
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"

    # CSRF protection
    WTF_CSRF_ENABLED = True


class DevelopmentConfig(Config):
    DEBUG = True
    # Keep the SQLite database in the project's instance folder
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URIs need forward slashes on Windows
    db_path = os.path.join(instance_path, "partner_portal_dev.db")
    db_path_normalized = db_path.replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    WTF_CSRF_ENABLED = False
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    LMS_PAGE_DELAY_SECONDS = 0.0
    LMS_RECORD_DELAY_SECONDS = 0.0


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
    SESSION_COOKIE_SECURE = True
