# partner_portal/routes/__init__.py
"""
Application routes package
"""

from .admin_sync import admin_sync_blueprint
from .auth import register_auth_routes


def init_routes(app):
    """Initialize all application routes"""
    register_auth_routes(app)
    if admin_sync_blueprint.name not in app.blueprints:
        app.register_blueprint(admin_sync_blueprint)
