# partner_portal/routes/auth.py
"""
Session login and logout for portal operators
"""

from datetime import datetime, timezone
from http import HTTPStatus

from flask import current_app, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf

from partner_portal.forms import LoginForm
from partner_portal.models import User, db


def register_auth_routes(app):
    """Register authentication routes"""

    @app.route("/login", methods=["GET"])
    def login_form():
        """Hand out a CSRF token for the login POST"""
        if current_user.is_authenticated:
            return jsonify({"authenticated": True, "username": current_user.username})
        return jsonify({"authenticated": False, "csrf_token": generate_csrf()})

    @app.route("/login", methods=["POST"])
    def login():
        form = LoginForm()
        if not form.validate_on_submit():
            return jsonify({"error": "Invalid login submission.", "errors": form.errors}), HTTPStatus.BAD_REQUEST

        user = User.find_by_username(form.username.data)
        if user is None or not user.check_password(form.password.data):
            current_app.logger.warning("Failed login attempt", extra={"username": form.username.data})
            return jsonify({"error": "Invalid username or password."}), HTTPStatus.UNAUTHORIZED
        if not user.is_active:
            return jsonify({"error": "Account is deactivated."}), HTTPStatus.FORBIDDEN

        login_user(user, remember=form.remember_me.data)
        user.last_login = datetime.now(timezone.utc)
        db.session.commit()
        current_app.logger.info(
            "User logged in",
            extra={"user_id": user.id, "remote_addr": request.remote_addr},
        )
        return jsonify({"authenticated": True, "username": user.username, "display_name": user.display_name})

    @app.route("/logout", methods=["POST"])
    @login_required
    def logout():
        user_id = current_user.id
        logout_user()
        current_app.logger.info("User logged out", extra={"user_id": user_id})
        return jsonify({"authenticated": False})
