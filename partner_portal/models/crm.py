"""
Local mirror of CRM entities (partner accounts, contacts, leads).

CRM identifiers are stored in ``crm_id`` with a unique constraint; rows keep
an integer surrogate key because other tables join on partners heavily.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db
from .mixins import SoftDeleteMixin


class Partner(SoftDeleteMixin, BaseModel):
    __tablename__ = "partners"

    id: Mapped[int] = mapped_column(primary_key=True)
    crm_id: Mapped[str] = mapped_column(db.String(64), unique=True, nullable=False)
    account_name: Mapped[str] = mapped_column(db.String(255), nullable=False, index=True)
    tier: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    account_status: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    partner_type: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    region: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    owner: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    owner_email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    website: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    salesforce_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    owner_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    parent_partner_id: Mapped[int | None] = mapped_column(
        ForeignKey("partners.id", ondelete="SET NULL"),
        nullable=True,
    )
    crm_parent_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    partner_family: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    crm_updated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    parent = relationship("Partner", remote_side=[id], foreign_keys=[parent_partner_id])
    groups = relationship("LmsGroup", back_populates="partner")
    contacts = relationship("Contact", back_populates="partner")

    __table_args__ = (Index("idx_partners_family", "partner_family"),)

    def __repr__(self):
        return f"<Partner {self.crm_id} {self.account_name}>"


class Contact(SoftDeleteMixin, BaseModel):
    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(primary_key=True)
    crm_id: Mapped[str] = mapped_column(db.String(64), unique=True, nullable=False)
    partner_id: Mapped[int | None] = mapped_column(
        ForeignKey("partners.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    first_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    title: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    account_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    lms_user_id: Mapped[str | None] = mapped_column(
        ForeignKey("lms_users.id", ondelete="SET NULL"),
        nullable=True,
    )
    crm_updated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    partner = relationship("Partner", back_populates="contacts")
    lms_user = relationship("LmsUser")

    def __repr__(self):
        return f"<Contact {self.crm_id} {self.email}>"


class Lead(SoftDeleteMixin, BaseModel):
    __tablename__ = "leads"

    id: Mapped[int] = mapped_column(primary_key=True)
    crm_id: Mapped[str] = mapped_column(db.String(64), unique=True, nullable=False)
    partner_id: Mapped[int | None] = mapped_column(
        ForeignKey("partners.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    first_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    company: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    status: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    source: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    crm_updated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    partner = relationship("Partner")

    def __repr__(self):
        return f"<Lead {self.crm_id}>"
