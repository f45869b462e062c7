# partner_portal/forms/__init__.py
"""
WTForms package
"""

from .auth import LoginForm
from .sync import ScheduledTaskForm

__all__ = [
    "LoginForm",
    "ScheduledTaskForm",
]
