"""
Local mirror of LMS entities.

Primary keys are the LMS's own identifiers so upserts key directly on the
external ID. ``synced_at`` records the last successful write by the sync
engine.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db
from .mixins import SoftDeleteMixin


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MembershipSource(str, enum.Enum):
    """Origin of a group membership row."""

    API = "api"
    LOCAL = "local"


class LmsUser(BaseModel):
    __tablename__ = "lms_users"

    id: Mapped[str] = mapped_column(db.String(64), primary_key=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True, unique=True)
    first_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    status: Mapped[str] = mapped_column(db.String(20), nullable=False, default="active")
    created_at_lms: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    last_active_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    enrollment_synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    memberships = relationship("LmsGroupMember", back_populates="user", passive_deletes=True)
    enrollments = relationship("LmsEnrollment", back_populates="user", passive_deletes=True)

    __table_args__ = (Index("idx_lms_users_enrollment_synced_at", "enrollment_synced_at"),)

    def __repr__(self):
        return f"<LmsUser {self.id} {self.email}>"


class LmsGroup(SoftDeleteMixin, BaseModel):
    __tablename__ = "lms_groups"

    id: Mapped[str] = mapped_column(db.String(64), primary_key=True)
    name: Mapped[str] = mapped_column(db.String(255), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    user_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    partner_id: Mapped[int | None] = mapped_column(
        ForeignKey("partners.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    last_checked_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    partner = relationship("Partner", back_populates="groups")
    members = relationship("LmsGroupMember", back_populates="group", passive_deletes=True)

    def __repr__(self):
        return f"<LmsGroup {self.id} {self.name}>"


class LmsGroupMember(BaseModel):
    __tablename__ = "lms_group_members"

    group_id: Mapped[str] = mapped_column(
        ForeignKey("lms_groups.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[str] = mapped_column(
        ForeignKey("lms_users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    added_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    pending_source: Mapped[str] = mapped_column(
        db.String(10),
        nullable=False,
        default=MembershipSource.API.value,
    )
    synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    group = relationship("LmsGroup", back_populates="members")
    user = relationship("LmsUser", back_populates="memberships")

    __table_args__ = (Index("idx_lms_group_members_pending_source", "pending_source"),)


class LmsCourse(BaseModel):
    __tablename__ = "lms_courses"

    id: Mapped[str] = mapped_column(db.String(64), primary_key=True)
    name: Mapped[str] = mapped_column(db.String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    product_category: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    status: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    npcu_value: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    duration_minutes: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    is_certification: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    certification_category: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    updated_at_lms: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    enrollments = relationship("LmsEnrollment", back_populates="course", passive_deletes=True)

    __table_args__ = (Index("idx_lms_courses_certification_category", "certification_category"),)

    def __repr__(self):
        return f"<LmsCourse {self.id} {self.name}>"


class LmsEnrollment(BaseModel):
    __tablename__ = "lms_enrollments"

    id: Mapped[str] = mapped_column(db.String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("lms_users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    course_id: Mapped[str] = mapped_column(
        ForeignKey("lms_courses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    progress_percent: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    enrolled_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    score: Mapped[float | None] = mapped_column(db.Float, nullable=True)
    synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    user = relationship("LmsUser", back_populates="enrollments")
    course = relationship("LmsCourse", back_populates="enrollments")
