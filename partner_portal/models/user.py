# partner_portal/models/user.py

from __future__ import annotations

from datetime import datetime

from flask import current_app
from flask_login import UserMixin
from sqlalchemy import ForeignKey
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Mapped, mapped_column, relationship
from werkzeug.security import check_password_hash, generate_password_hash

from .base import BaseModel, db


class AdminProfile(BaseModel):
    """
    Named bundle of capabilities assigned to portal administrators.

    ``permissions`` is a nested JSON document keyed by area and action, e.g.
    ``{"data_management": {"view": true, "sync": true}}``.
    """

    __tablename__ = "admin_profiles"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(100), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    permissions: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    is_system: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)

    users = relationship("User", back_populates="profile")

    def has_capability(self, capability: str) -> bool:
        area, _, action = capability.partition(".")
        section = (self.permissions or {}).get(area)
        if not isinstance(section, dict):
            return False
        return bool(section.get(action or "view"))

    def __repr__(self):
        return f"<AdminProfile {self.name}>"


class User(UserMixin, BaseModel):
    """Portal operator account."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    username: Mapped[str] = mapped_column(db.String(80), unique=True, nullable=False, index=True)
    email: Mapped[str] = mapped_column(db.String(120), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(db.String(255), nullable=False)
    first_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    is_super_admin: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    profile_id: Mapped[int | None] = mapped_column(
        ForeignKey("admin_profiles.id", ondelete="SET NULL"),
        nullable=True,
    )
    last_login: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    profile = relationship("AdminProfile", back_populates="users")

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def has_capability(self, capability: str) -> bool:
        """Return True when the user may perform ``capability`` (``area.action``)."""
        if not self.is_active:
            return False
        if self.is_super_admin:
            return True
        if self.profile is None:
            return False
        return self.profile.has_capability(capability)

    @property
    def display_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip() or self.username

    @staticmethod
    def find_by_username(username):
        """Find user by username with error handling"""
        try:
            return User.query.filter_by(username=username).first()
        except SQLAlchemyError as e:
            current_app.logger.error(f"Database error finding user {username}: {str(e)}")
            return None

    def __repr__(self):
        return f"<User {self.username}>"
