# partner_portal/forms/auth.py
"""
Authentication forms
"""

from flask_wtf import FlaskForm
from wtforms import BooleanField, PasswordField, StringField
from wtforms.validators import DataRequired, Length, Regexp


def _strip(value):
    return value.strip() if isinstance(value, str) else value


class LoginForm(FlaskForm):
    """Operator sign-in form"""

    username = StringField(
        "Username",
        validators=[
            DataRequired(message="Username is required."),
            Length(min=3, max=64, message="Username must be between 3 and 64 characters."),
            Regexp(
                r"^[A-Za-z0-9_-]+$",
                message="Username can only contain letters, numbers, underscores, and hyphens.",
            ),
        ],
        filters=[_strip],
    )
    password = PasswordField(
        "Password",
        validators=[
            DataRequired(message="Password is required."),
            Length(min=6, message="Password must be at least 6 characters long."),
        ],
    )
    remember_me = BooleanField("Remember me", default=False)
