# partner_portal/utils/permissions.py

from functools import wraps
from http import HTTPStatus

from flask import current_app, jsonify, request
from flask_login import current_user


def has_capability(user, capability):
    """Check if user holds ``capability`` (``area.action``) through their admin profile"""
    if not user or not user.is_authenticated:
        return False
    return user.has_capability(capability)


def capability_required(capability):
    """
    Decorator to require an admin-profile capability.

    Args:
        capability: Capability name such as ``data_management.sync``
    """

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                return jsonify({"error": "Authentication required."}), HTTPStatus.UNAUTHORIZED

            if not has_capability(current_user, capability):
                current_app.logger.warning(
                    "Capability check failed",
                    extra={"user_id": current_user.id, "capability": capability, "path": request.path},
                )
                return jsonify({"error": "You do not have permission to perform this action."}), HTTPStatus.FORBIDDEN

            return f(*args, **kwargs)

        return decorated_function

    return decorator
