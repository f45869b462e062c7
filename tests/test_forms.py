import pytest

from partner_portal.forms import LoginForm, ScheduledTaskForm
from partner_portal.forms.sync import MAX_INTERVAL_MINUTES
from partner_portal.models import ScheduledTask


class TestLoginForm:
    """Test LoginForm functionality"""

    def test_login_form_creation(self):
        """Test creating a login form"""
        form = LoginForm()
        assert form.username.data is None
        assert form.password.data is None
        assert form.remember_me.data is False

    def test_login_form_validation_success(self):
        """Test successful form validation"""
        form = LoginForm(data={"username": "validuser", "password": "password123"})
        assert form.validate() is True

    def test_login_form_missing_username(self):
        """Test form validation with missing username"""
        form = LoginForm(data={"password": "password123"})
        assert form.validate() is False
        assert "Username is required." in form.errors["username"]

    def test_login_form_missing_password(self):
        """Test form validation with missing password"""
        form = LoginForm(data={"username": "testuser"})
        assert form.validate() is False
        assert "Password is required." in form.errors["password"]

    @pytest.mark.parametrize("username", ["ab", "a" * 65, "invalid@user!"])
    def test_login_form_rejects_bad_usernames(self, username):
        form = LoginForm(data={"username": username, "password": "password123"})
        assert form.validate() is False
        assert "username" in form.errors

    def test_login_form_password_too_short(self):
        """Test form validation with password too short"""
        form = LoginForm(data={"username": "testuser", "password": "12345"})
        assert form.validate() is False
        assert "Password must be at least 6 characters long." in form.errors["password"]

    def test_login_form_username_whitespace_stripping(self):
        """Test that username whitespace is stripped"""
        form = LoginForm(data={"username": "  testuser  ", "password": "password123"})
        assert form.username.data == "testuser"
        assert form.validate() is True


class TestScheduledTaskForm:
    """Test partial updates to scheduled tasks"""

    def _task(self):
        return ScheduledTask(
            task_type="sync_enrollments",
            task_name="Sync Enrollments",
            enabled=True,
            interval_minutes=60,
            config={"mode": "incremental"},
        )

    def test_only_provided_fields_are_applied(self):
        task = self._task()
        form = ScheduledTaskForm(data={"schedule_days": "mon,thu", "schedule_time": "03:30"}, task_type="sync_enrollments")

        assert form.validate() is True
        changed = form.apply_to(task)

        assert changed == {"schedule_days": "mon,thu", "schedule_time": "03:30"}
        assert task.enabled is True
        assert task.interval_minutes == 60
        assert task.config == {"mode": "incremental"}

    def test_config_is_normalized(self):
        task = self._task()
        form = ScheduledTaskForm(data={"config": '{"max_age_days": 3}'}, task_type="sync_enrollments")

        assert form.validate() is True
        form.apply_to(task)

        assert task.config["max_age_days"] == 3
        assert task.config["mode"] == "incremental"

    def test_clearing_schedule_fields(self):
        task = self._task()
        task.schedule_days = "daily"
        form = ScheduledTaskForm(data={"schedule_days": "", "enabled": False}, task_type="sync_enrollments")

        assert form.validate() is True
        form.apply_to(task)

        assert task.schedule_days is None
        assert task.enabled is False

    @pytest.mark.parametrize(
        ("payload", "field"),
        [
            ({"interval_minutes": 0}, "interval_minutes"),
            ({"interval_minutes": MAX_INTERVAL_MINUTES + 1}, "interval_minutes"),
            ({"schedule_days": "someday"}, "schedule_days"),
            ({"schedule_time": "7pm"}, "schedule_time"),
            ({"enabled": "true"}, "enabled"),
            ({"config": "{not json"}, "config"),
            ({"config": {"batch_size": -5}}, "config"),
        ],
    )
    def test_invalid_values(self, payload, field):
        form = ScheduledTaskForm(data=payload, task_type="sync_enrollments")

        assert form.validate() is False
        assert field in form.errors
