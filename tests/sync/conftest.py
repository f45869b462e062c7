from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

import pytest
from sync_fakes import CRM_BASE, LMS_BASE, FakeSession

from partner_portal.models import (
    LmsCourse,
    LmsGroup,
    LmsGroupMember,
    LmsUser,
    Partner,
    ScheduledTask,
    SyncRun,
    SyncRunStatus,
    db,
)
from partner_portal.sync import SYNC_EXTENSION_KEY
from partner_portal.sync.adapters.crm.fetcher import CrmFetcher
from partner_portal.sync.adapters.lms.fetcher import LmsFetcher


# Fixtures -----------------------------------------------------------------------


@pytest.fixture
def sleeps() -> list[float]:
    """Every delay requested by a fetcher, in order"""
    return []


@pytest.fixture
def http_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def lms_fetcher(http_session, sleeps) -> LmsFetcher:
    return LmsFetcher(
        api_key="test-lms-key",
        base_url=LMS_BASE,
        page_size=2,
        page_delay=0,
        record_delay=0,
        rate_limit_backoff=10.0,
        max_rate_limit_retries=3,
        session=http_session,
        sleep_fn=sleeps.append,
    )


@pytest.fixture
def crm_fetcher(http_session, sleeps) -> CrmFetcher:
    return CrmFetcher(
        base_url=CRM_BASE,
        api_key="test-crm-key",
        tenant_id="tenant-1",
        page_size=2,
        page_delay=0,
        rate_limit_backoff=10.0,
        max_rate_limit_retries=3,
        session=http_session,
        sleep_fn=sleeps.append,
    )


@pytest.fixture
def fake_fetchers(sync_app, lms_fetcher, crm_fetcher):
    """Route orchestrator fetcher construction to the fake-backed fetchers"""
    state = sync_app.extensions[SYNC_EXTENSION_KEY]
    state["fetcher_factories"] = {
        "lms": lambda config: lms_fetcher,
        "crm": lambda config: crm_fetcher,
    }
    yield lms_fetcher, crm_fetcher
    state["fetcher_factories"] = None


@pytest.fixture
def partner_factory(app):
    def create(crm_id: str, account_name: str, **kwargs) -> Partner:
        partner = Partner(crm_id=crm_id, account_name=account_name, tier=kwargs.pop("tier", "Premier"), **kwargs)
        db.session.add(partner)
        db.session.commit()
        return partner

    return create


@pytest.fixture
def lms_user_factory(app):
    def create(user_id: str, **kwargs) -> LmsUser:
        kwargs.setdefault("email", f"{user_id}@partner.example")
        user = LmsUser(id=user_id, **kwargs)
        db.session.add(user)
        db.session.commit()
        return user

    return create


@pytest.fixture
def partner_group_factory(app, partner_factory):
    """A partner, its ``ptr_`` LMS group and api-sourced memberships"""

    def create(group_id: str, user_ids: Iterable[str], partner: Partner | None = None) -> LmsGroup:
        partner = partner or partner_factory(f"crm-{group_id}", f"Partner {group_id}")
        group = LmsGroup(id=group_id, name=f"ptr_{partner.account_name}", partner_id=partner.id)
        db.session.add(group)
        db.session.add_all(
            LmsGroupMember(group_id=group_id, user_id=user_id, pending_source="api") for user_id in user_ids
        )
        db.session.commit()
        return group

    return create


@pytest.fixture
def course_factory(app):
    def create(course_id: str, name: str = "Intro Course", **kwargs) -> LmsCourse:
        course = LmsCourse(id=course_id, name=name, **kwargs)
        db.session.add(course)
        db.session.commit()
        return course

    return create


@pytest.fixture
def scheduled_task_factory(app):
    def create(task_type: str, **kwargs) -> ScheduledTask:
        kwargs.setdefault("task_name", task_type.replace("_", " ").title())
        kwargs.setdefault("interval_minutes", 60)
        task = ScheduledTask(task_type=task_type, **kwargs)
        db.session.add(task)
        db.session.commit()
        return task

    return create


@pytest.fixture
def sync_run_factory(app):
    def create(
        sync_type: str = "lms_users",
        *,
        task_type: str | None = "sync_users",
        status: SyncRunStatus = SyncRunStatus.SUCCEEDED,
        started_at: datetime | None = None,
        finished: bool = True,
        **counters,
    ) -> SyncRun:
        started_at = started_at or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        run = SyncRun(
            sync_type=sync_type,
            task_type=task_type,
            mode="incremental",
            status=status,
            started_at=started_at,
            finished_at=started_at if finished else None,
            **counters,
        )
        db.session.add(run)
        db.session.commit()
        return run

    return create
