# partner_portal/models/admin.py

from __future__ import annotations

from flask import current_app
from sqlalchemy import ForeignKey
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db


class AdminLog(BaseModel):
    """Audit trail of administrative actions (sync triggers, failure resolutions)."""

    __tablename__ = "admin_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    admin_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    action: Mapped[str] = mapped_column(db.String(100), nullable=False, index=True)
    target_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    details: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(db.String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(db.String(500), nullable=True)

    admin_user = relationship("User", foreign_keys=[admin_user_id])

    @staticmethod
    def log_action(
        admin_user_id,
        action,
        target_user_id=None,
        details=None,
        ip_address=None,
        user_agent=None,
    ):
        """Persist an audit entry; failures are logged and rolled back."""
        try:
            entry = AdminLog(
                admin_user_id=admin_user_id,
                action=action,
                target_user_id=target_user_id,
                details=details,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            db.session.add(entry)
            db.session.commit()
            return entry
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.error(f"Failed to log admin action {action}: {str(e)}")
            return None

    def __repr__(self):
        return f"<AdminLog {self.action} by {self.admin_user_id}>"
