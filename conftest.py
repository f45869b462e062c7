# conftest.py

import os

import pytest
from werkzeug.security import generate_password_hash

# Set testing environment BEFORE importing app so app.py picks TestingConfig
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import app as flask_app  # noqa: E402
from partner_portal.models import AdminProfile, User, db  # noqa: E402
from partner_portal.routes import admin_sync  # noqa: E402
from partner_portal.sync import SYNC_EXTENSION_KEY, init_sync  # noqa: E402
from partner_portal.sync.adapters.health import get_api_health  # noqa: E402

EAGER_CELERY = {
    "CELERY_BROKER_URL": "memory://",
    "CELERY_RESULT_BACKEND": "cache+memory://",
    "CELERY_CONFIG": {"task_always_eager": True, "task_eager_propagates": True},
}


@pytest.fixture(scope="function")
def app():
    """Create and configure a test Flask application"""
    original_config = dict(flask_app.config)
    flask_app.config.update(
        {
            "TESTING": True,
            "WTF_CSRF_ENABLED": False,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "LOG_LEVEL": "DEBUG",
            "ENABLE_FILE_LOGGING": False,
            "SYNC_ENABLED": False,
            "SYNC_WORKER_ENABLED": False,
            "SYNC_SCHEDULER_ENABLED": False,
            "LMS_API_KEY": "test-lms-key",
            "LMS_PAGE_DELAY_SECONDS": 0.0,
            "LMS_RECORD_DELAY_SECONDS": 0.0,
            **EAGER_CELERY,
        }
    )

    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()

    flask_app.config.clear()
    flask_app.config.update(original_config)
    flask_app.extensions.pop(SYNC_EXTENSION_KEY, None)
    init_sync(flask_app)


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture(autouse=True)
def reset_sync_globals():
    """Clear process-wide trigger history and API health between tests"""
    admin_sync._TRIGGER_HISTORY.clear()
    for source in ("lms", "crm"):
        get_api_health(source).reset()
    yield
    admin_sync._TRIGGER_HISTORY.clear()


@pytest.fixture
def sync_app(app):
    """The test app with the sync engine enabled and an eager Celery worker"""
    app.config["SYNC_ENABLED"] = True
    app.extensions.pop(SYNC_EXTENSION_KEY, None)
    init_sync(app)
    return app


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def sync_operator_profile(app):
    profile = AdminProfile(
        name="Sync Operator",
        description="Runs and monitors partner syncs",
        permissions={"data_management": {"view": True, "sync": True}},
        is_system=True,
    )
    db.session.add(profile)
    db.session.commit()
    return profile


@pytest.fixture
def viewer_profile(app):
    profile = AdminProfile(
        name="Viewer",
        permissions={"data_management": {"view": True, "sync": False}},
    )
    db.session.add(profile)
    db.session.commit()
    return profile


@pytest.fixture
def test_user():
    """Create a test user fixture"""
    return User(
        username="testuser",
        email="test@example.com",
        password_hash=generate_password_hash("testpass123"),
        first_name="Test",
        last_name="User",
        is_active=True,
        is_super_admin=False,
    )


@pytest.fixture
def admin_user():
    """Create an admin user fixture"""
    return User(
        username="admin",
        email="admin@example.com",
        password_hash=generate_password_hash("adminpass123"),
        first_name="Admin",
        last_name="User",
        is_super_admin=True,
    )


@pytest.fixture
def operator_user(sync_operator_profile):
    """A non-super-admin holding the sync capability through a profile"""
    user = User(
        username="operator",
        email="operator@example.com",
        password_hash=generate_password_hash("operatorpass123"),
        first_name="Sync",
        last_name="Operator",
        profile_id=sync_operator_profile.id,
    )
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def logged_in_user(client, test_user, app):
    """Fixture that logs in a user and returns the client"""
    db.session.add(test_user)
    db.session.commit()

    client.post("/login", data={"username": "testuser", "password": "testpass123"})

    yield client, test_user


@pytest.fixture
def logged_in_admin(client, admin_user, app):
    """Fixture that logs in an admin user and returns the client"""
    db.session.add(admin_user)
    db.session.commit()

    client.post("/login", data={"username": "admin", "password": "adminpass123"})

    yield client, admin_user


@pytest.fixture
def logged_in_operator(client, operator_user, app):
    client.post("/login", data={"username": "operator", "password": "operatorpass123"})

    yield client, operator_user
