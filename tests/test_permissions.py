from unittest.mock import MagicMock

import pytest
from flask import Flask
from flask_login import LoginManager, login_user

from partner_portal.models import AdminProfile, User, db
from partner_portal.utils.permissions import capability_required, has_capability


class TestHasCapability:
    """Capability checks through admin profiles"""

    def test_anonymous_user(self):
        anonymous = MagicMock(is_authenticated=False)
        assert has_capability(anonymous, "data_management.sync") is False
        assert has_capability(None, "data_management.sync") is False

    def test_super_admin_holds_everything(self, admin_user):
        db.session.add(admin_user)
        db.session.commit()

        assert has_capability(admin_user, "data_management.sync") is True

    def test_profile_grants_capability(self, operator_user):
        assert has_capability(operator_user, "data_management.sync") is True
        assert has_capability(operator_user, "data_management.view") is True
        assert has_capability(operator_user, "user_management.edit") is False

    def test_profile_without_capability(self, viewer_profile, test_user):
        test_user.profile_id = viewer_profile.id
        db.session.add(test_user)
        db.session.commit()

        assert has_capability(test_user, "data_management.sync") is False

    def test_user_without_profile(self, test_user):
        assert has_capability(test_user, "data_management.view") is False

    def test_inactive_user_loses_capabilities(self, operator_user):
        operator_user.is_active = False
        assert operator_user.has_capability("data_management.sync") is False

    def test_profile_bare_area_means_view(self):
        profile = AdminProfile(name="Auditor", permissions={"data_management": {"view": True}})
        assert profile.has_capability("data_management") is True
        assert profile.has_capability("data_management.sync") is False


@pytest.fixture
def guarded_app():
    """A throwaway app with one capability-guarded endpoint"""
    guarded = Flask(__name__)
    guarded.config.update(SECRET_KEY="guarded", TESTING=True)
    manager = LoginManager(guarded)
    users = {}
    manager.user_loader(lambda user_id: users.get(user_id))

    @guarded.post("/login/<user_id>")
    def login(user_id):
        login_user(users[user_id])
        return "ok"

    @guarded.get("/guarded")
    @capability_required("data_management.sync")
    def guarded_view():
        return {"ok": True}

    return guarded, users


def _user(user_id, **kwargs):
    user = MagicMock(spec=User)
    user.id = user_id
    user.get_id.return_value = user_id
    user.is_authenticated = True
    user.is_active = True
    user.has_capability.side_effect = lambda capability: kwargs.get("allowed", False)
    return user


class TestCapabilityRequired:
    def test_unauthenticated_gets_401(self, guarded_app):
        guarded, _ = guarded_app

        response = guarded.test_client().get("/guarded")

        assert response.status_code == 401

    def test_missing_capability_gets_403(self, guarded_app):
        guarded, users = guarded_app
        users["1"] = _user("1", allowed=False)
        client = guarded.test_client()
        client.post("/login/1")

        response = client.get("/guarded")

        assert response.status_code == 403
        assert "permission" in response.get_json()["error"]

    def test_capability_holder_passes(self, guarded_app):
        guarded, users = guarded_app
        users["2"] = _user("2", allowed=True)
        client = guarded.test_client()
        client.post("/login/2")

        assert client.get("/guarded").get_json() == {"ok": True}
