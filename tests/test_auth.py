from partner_portal.models import User, db


class TestLogin:
    """Session login and logout"""

    def test_login_form_hands_out_csrf_token(self, client):
        payload = client.get("/login").get_json()

        assert payload["authenticated"] is False
        assert "csrf_token" in payload

    def test_login_success(self, client, test_user):
        db.session.add(test_user)
        db.session.commit()

        response = client.post("/login", data={"username": "testuser", "password": "testpass123"})

        assert response.status_code == 200
        assert response.get_json()["display_name"] == "Test User"
        assert db.session.get(User, test_user.id).last_login is not None
        assert client.get("/login").get_json() == {"authenticated": True, "username": "testuser"}

    def test_login_wrong_password(self, client, test_user):
        db.session.add(test_user)
        db.session.commit()

        response = client.post("/login", data={"username": "testuser", "password": "wrongpass"})

        assert response.status_code == 401
        assert response.get_json()["error"] == "Invalid username or password."

    def test_login_unknown_user(self, client):
        response = client.post("/login", data={"username": "nobody", "password": "whatever1"})

        assert response.status_code == 401

    def test_login_invalid_submission(self, client):
        response = client.post("/login", data={"username": "x"})

        assert response.status_code == 400
        assert "username" in response.get_json()["errors"]

    def test_login_deactivated_account(self, client, test_user):
        test_user.is_active = False
        db.session.add(test_user)
        db.session.commit()

        response = client.post("/login", data={"username": "testuser", "password": "testpass123"})

        assert response.status_code == 403

    def test_logout(self, logged_in_user):
        client, _ = logged_in_user

        response = client.post("/logout")

        assert response.status_code == 200
        assert response.get_json() == {"authenticated": False}
        assert client.post("/logout").status_code == 401


class TestAppErrorHandlers:
    def test_unknown_route_returns_json_404(self, client):
        response = client.get("/does-not-exist")

        assert response.status_code == 404
        assert response.get_json() == {"error": "Not found."}

    def test_user_loader_handles_bad_ids(self, app):
        loader = app.extensions["login_manager"]._user_callback

        assert loader("abc") is None
        assert loader("9999") is None
