# partner_portal/models/__init__.py
"""
Database models package
"""

from .admin import AdminLog
from .base import BaseModel, db
from .crm import Contact, Lead, Partner
from .lms import LmsCourse, LmsEnrollment, LmsGroup, LmsGroupMember, LmsUser, MembershipSource
from .sync import (
    RUN_COUNTER_FIELDS,
    RunLedgerClosedError,
    ScheduledTask,
    SchemaInfo,
    SyncCheckpoint,
    SyncCursor,
    SyncFailure,
    SyncRun,
    SyncRunStatus,
    TaskLock,
    TaskRunHistory,
)
from .user import AdminProfile, User

__all__ = [
    "db",
    "BaseModel",
    "User",
    "AdminProfile",
    "AdminLog",
    # CRM mirror
    "Partner",
    "Contact",
    "Lead",
    # LMS mirror
    "LmsUser",
    "LmsGroup",
    "LmsGroupMember",
    "LmsCourse",
    "LmsEnrollment",
    "MembershipSource",
    # Sync engine
    "RUN_COUNTER_FIELDS",
    "RunLedgerClosedError",
    "SyncRun",
    "SyncRunStatus",
    "SyncCursor",
    "SyncCheckpoint",
    "SyncFailure",
    "SchemaInfo",
    "ScheduledTask",
    "TaskRunHistory",
    "TaskLock",
]
