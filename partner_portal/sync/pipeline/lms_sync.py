"""
LMS entity syncs: users, groups (with memberships), courses and enrollments.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from functools import partial
from typing import Any, Iterator, Mapping

from sqlalchemy import func, or_, select

from partner_portal.models import (
    LmsCourse,
    LmsEnrollment,
    LmsGroup,
    LmsGroupMember,
    LmsUser,
    MembershipSource,
    Partner,
    SyncRun,
)

from ..adapters.http import Page
from ..utils import parse_api_datetime
from .base import FULL, EntitySyncJob
from .checkpoints import CheckpointStore
from .deletion import DeletionDetector
from .reconciler import ParentReference, ReconcileStats, SourceRecord, UpsertReconciler
from .run_service import RunCounters

GROUP_PREFIX = "ptr_"
MAX_NPCU = 2

PROGRESS_PERCENT = {"completed": 100, "in_progress": 50}

# (category, name fragment), checked in order; first match wins.
CERTIFICATION_CATEGORY_RULES: tuple[tuple[str, str], ...] = (
    ("nintex_k2", "automation k2"),
    ("nintex_k2", "k2"),
    ("nintex_salesforce", "docgen for salesforce"),
    ("nintex_salesforce", "salesforce"),
    ("go_to_market", "go to market"),
    ("go_to_market", "gtm"),
    ("go_to_market", "sales professional"),
    ("go_to_market", "sales enablement"),
    ("nintex_ce", "automation cloud"),
    ("nintex_ce", "process manager"),
    ("nintex_ce", "promapp"),
    ("nintex_ce", "rpa"),
    ("nintex_ce", "esign"),
    ("nintex_ce", "apps"),
    ("nintex_ce", "office 365"),
    ("nintex_ce", "sharepoint"),
    ("nintex_ce", "xtensions"),
    ("nintex_ce", "process discovery"),
)


def _attributes(item: Mapping[str, Any]) -> Mapping[str, Any]:
    return item.get("attributes") or {}


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def categorize_certification(course_name: str | None) -> str | None:
    if not course_name:
        return None
    lowered = course_name.lower()
    for category, fragment in CERTIFICATION_CATEGORY_RULES:
        if fragment in lowered:
            return category
    return None


def strip_group_prefix(name: str) -> str:
    if name.lower().startswith(GROUP_PREFIX):
        return name[len(GROUP_PREFIX):]
    return name


class UsersSync(EntitySyncJob):
    source = "lms"
    entity = "users"
    model = LmsUser

    def fetch_pages(self, since: datetime | None) -> Iterator[Page]:
        return self.fetcher.iter_users(since=since)

    def transform(self, item: Mapping[str, Any]) -> SourceRecord:
        attrs = _attributes(item)
        email = _text(attrs.get("email"))
        deactivated_at = parse_api_datetime(attrs.get("deactivated_at"))
        first_name = _text(attrs.get("first_name"))
        last_name = _text(attrs.get("last_name"))
        return SourceRecord(
            values={
                "id": str(item["id"]),
                "email": email.lower() if email else None,
                "first_name": first_name,
                "last_name": last_name,
                "status": "deactivated" if deactivated_at else "active",
                "created_at_lms": parse_api_datetime(attrs.get("created_at")),
                "last_active_at": parse_api_datetime(attrs.get("last_active_at")),
                "deactivated_at": deactivated_at,
            },
            updated_at=parse_api_datetime(attrs.get("updated_at")),
            label=" ".join(filter(None, (first_name, last_name))) or email,
        )


class GroupsSync(EntitySyncJob):
    """
    Groups plus their memberships.

    Groups are linked to partners by exact account name or by the name with
    its ``ptr_`` prefix removed. In full mode, groups missing upstream are
    deactivated and api-sourced memberships missing upstream are removed.
    """

    source = "lms"
    entity = "groups"
    model = LmsGroup

    def prepare(self, run: SyncRun, mode: str) -> None:
        partners = self.session.query(Partner.id, Partner.account_name).filter(Partner.is_active.is_(True)).all()
        self._partners_by_name = {name.strip().lower(): partner_id for partner_id, name in partners if name}
        self._membership_reconciler = UpsertReconciler(
            LmsGroupMember,
            entity_type="group_members",
            sync_type=self.sync_type,
            key_fields=("group_id", "user_id"),
            references=(ParentReference("user_id", LmsUser),),
            insert_only=("added_at",),
            session=self.session,
            run=run,
            failures=self.failures,
            logger=self.logger,
            clock=self.clock,
        )
        self._membership_detector = DeletionDetector(session=self.session, logger=self.logger, clock=self.clock)

    def fetch_pages(self, since: datetime | None) -> Iterator[Page]:
        return self.fetcher.iter_groups(since=since)

    def match_partner(self, group_name: str | None) -> int | None:
        if not group_name:
            return None
        name = group_name.strip()
        partner_id = self._partners_by_name.get(name.lower())
        if partner_id is None:
            partner_id = self._partners_by_name.get(strip_group_prefix(name).lower())
        return partner_id

    def transform(self, item: Mapping[str, Any]) -> SourceRecord:
        attrs = _attributes(item)
        name = _text(attrs.get("name")) or ""
        return SourceRecord(
            values={
                "id": str(item["id"]),
                "name": name,
                "description": _text(attrs.get("description")),
                "user_count": int(attrs.get("user_count") or 0),
                "partner_id": self.match_partner(name),
            },
            updated_at=parse_api_datetime(attrs.get("updated_at")),
            label=name,
        )

    def after_page(
        self, run: SyncRun, counters: RunCounters, page: Page, stats: ReconcileStats, mode: str
    ) -> None:
        group_ids = [str(item.get("id")) for item in page.items if str(item.get("id")) in stats.observed_keys]
        for group_id in group_ids:
            if self.session.get(LmsGroup, group_id) is None:
                continue
            self.fetcher.throttle()
            self._sync_memberships(run, counters, group_id, mode)

    def _sync_memberships(self, run: SyncRun, counters: RunCounters, group_id: str, mode: str) -> None:
        observed_user_ids: set[str] = set()
        complete = True
        totals = ReconcileStats()
        for page in self.fetcher.iter_group_memberships(group_id):
            if page.error is not None:
                complete = False
                self.record_page_error(run, counters, page, entity_type="group_members")
                break
            stats = self._membership_reconciler.reconcile(
                page.items, transform=partial(self._membership_record, group_id)
            )
            totals.merge(stats)
            observed_user_ids.update(user_id for _, user_id in stats.observed_keys)

        if mode == FULL:
            deletions = self._membership_detector.detect_memberships(
                group_id, observed_user_ids, pass_complete=complete
            )
            counters.add_deletions(deletions)

        group = self.session.get(LmsGroup, group_id)
        if complete:
            group.user_count = (
                self.session.query(func.count(LmsGroupMember.user_id))
                .filter(LmsGroupMember.group_id == group_id)
                .scalar()
            )
        group.last_checked_at = self.clock()
        self.session.commit()

        counters.fk_errors += totals.fk_errors
        counters.records_failed += totals.failed
        counters.cache_hits += totals.cache_hits
        counters.bump("memberships_processed", totals.processed)
        counters.bump("memberships_created", totals.created)
        counters.bump("memberships_updated", totals.updated)

    @staticmethod
    def _membership_record(group_id: str, item: Mapping[str, Any]) -> SourceRecord:
        person = item["relationships"]["person"]["data"]
        attrs = _attributes(item)
        return SourceRecord(
            values={
                "group_id": group_id,
                "user_id": str(person["id"]),
                "pending_source": MembershipSource.API.value,
                "added_at": parse_api_datetime(attrs.get("created_at")),
            },
        )


class CoursesSync(EntitySyncJob):
    source = "lms"
    entity = "courses"
    model = LmsCourse

    def fetch_pages(self, since: datetime | None) -> Iterator[Page]:
        return self.fetcher.iter_courses(since=since)

    def transform(self, item: Mapping[str, Any]) -> SourceRecord:
        attrs = _attributes(item)
        name = _text(attrs.get("name")) or _text(attrs.get("title")) or ""
        properties = attrs.get("properties") or {}
        npcu = _npcu(properties.get("npcu"))
        duration = attrs.get("duration")
        return SourceRecord(
            values={
                "id": str(item["id"]),
                "name": name,
                "description": _text(attrs.get("description")),
                "status": _text(attrs.get("status")) or "active",
                "product_category": _text(attrs.get("category")),
                "npcu_value": npcu,
                "duration_minutes": int(duration) if duration not in (None, "") else None,
                "is_certification": npcu > 0,
                "certification_category": categorize_certification(name) if npcu > 0 else None,
                "updated_at_lms": parse_api_datetime(attrs.get("updated_at")),
            },
            updated_at=parse_api_datetime(attrs.get("updated_at")),
            label=name,
        )


def _npcu(raw: Any) -> int:
    if raw in (None, ""):
        return 0
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return 0
    return value if 0 <= value <= MAX_NPCU else 0


class EnrollmentsSync(EntitySyncJob):
    """
    Enrollments come from each user's transcript.

    Incremental mode only visits users whose enrollments are stale: never
    synced, active since the last sync, or older than ``max_age_days``. Every
    user left out counts as one saved API call. Full mode walks all users in
    checkpointed batches of ``batch_size`` ordered by ID; the checkpoint is
    reset once the last batch has been processed.
    """

    source = "lms"
    entity = "enrollments"
    model = LmsEnrollment
    periodic_full_sync = False
    checkpoint_name = "sync_enrollments_full"

    def __init__(
        self,
        fetcher,
        *,
        max_age_days: int = 7,
        batch_size: int = 200,
        partner_users_only: bool = True,
        checkpoints: CheckpointStore | None = None,
        **kwargs,
    ) -> None:
        super().__init__(fetcher, **kwargs)
        self.max_age_days = max_age_days
        self.batch_size = batch_size
        self.partner_users_only = partner_users_only
        self.checkpoints = checkpoints or CheckpointStore(self.checkpoint_name, session=self.session)

    def build_reconciler(self, run: SyncRun) -> UpsertReconciler:
        return UpsertReconciler(
            LmsEnrollment,
            entity_type=self.entity,
            sync_type=self.sync_type,
            references=(ParentReference("course_id", LmsCourse),),
            session=self.session,
            run=run,
            failures=self.failures,
            logger=self.logger,
            clock=self.clock,
        )

    def candidate_users(self):
        query = self.session.query(LmsUser)
        if self.partner_users_only:
            partner_members = (
                select(LmsGroupMember.user_id)
                .join(LmsGroup, LmsGroup.id == LmsGroupMember.group_id)
                .where(LmsGroup.partner_id.isnot(None))
            )
            query = query.filter(LmsUser.id.in_(partner_members))
        return query

    def execute(self, run: SyncRun, counters: RunCounters, mode: str) -> None:
        reconciler = self.build_reconciler(run)
        if mode == FULL:
            self._execute_batch(run, counters, reconciler)
        else:
            self._execute_incremental(run, counters, reconciler)

    def _execute_incremental(self, run: SyncRun, counters: RunCounters, reconciler: UpsertReconciler) -> None:
        cutoff = self.clock() - timedelta(days=self.max_age_days)
        candidates = self.candidate_users()
        total = candidates.count()
        due = (
            candidates.filter(
                or_(
                    LmsUser.enrollment_synced_at.is_(None),
                    LmsUser.last_active_at > LmsUser.enrollment_synced_at,
                    LmsUser.enrollment_synced_at < cutoff,
                )
            )
            .order_by(LmsUser.id.asc())
            .all()
        )
        skipped = total - len(due)
        counters.api_calls_saved += skipped
        counters.bump("users_skipped", skipped)
        counters.bump("users_total", total)

        for index, user in enumerate(due):
            if index:
                self.fetcher.throttle()
            self._sync_user(run, counters, reconciler, user)

    def _execute_batch(self, run: SyncRun, counters: RunCounters, reconciler: UpsertReconciler) -> None:
        checkpoint = self.checkpoints.load()
        ordered = self.candidate_users().order_by(LmsUser.id.asc())
        total = ordered.count()
        users = ordered.offset(checkpoint.offset).limit(self.batch_size).all()
        counters.bump("batch_start_offset", checkpoint.offset)
        counters.bump("users_total", total)

        fk_errors_before = counters.fk_errors
        processed_before = counters.records_processed
        for index, user in enumerate(users):
            if index:
                self.fetcher.throttle()
            self._sync_user(run, counters, reconciler, user)

        checkpoint.offset += len(users)
        checkpoint.records_synced += counters.records_processed - processed_before
        checkpoint.fk_errors += counters.fk_errors - fk_errors_before
        if checkpoint.offset >= total:
            self.checkpoints.reset()
            self.cursors.mark_full_sync(self.entity, run_id=run.id)
            counters.extra["checkpoint_reset"] = True
        else:
            self.checkpoints.save(checkpoint)
            counters.extra["checkpoint_offset"] = checkpoint.offset

    def _sync_user(self, run: SyncRun, counters: RunCounters, reconciler: UpsertReconciler, user: LmsUser) -> None:
        user_id = user.id
        result = self.fetcher.fetch_transcripts(user_id)
        if result.error is not None and not result.not_found:
            error = result.error
            counters.records_failed += 1
            counters.bump("users_failed")
            self.failures.record(
                run=run,
                sync_type=self.sync_type,
                entity_type="users",
                entity_id=user_id,
                entity_name=user.email,
                reason=error.kind,
                http_status=error.http_status,
                details=error.message,
            )
            self.session.commit()
            return

        stats = reconciler.reconcile(result.items, transform=partial(self._enrollment_record, user_id))
        user.enrollment_synced_at = self.clock()
        self.session.commit()
        counters.add_reconcile(stats)
        counters.bump("users_processed")
        if result.not_found:
            counters.bump("users_not_found")

    @staticmethod
    def _enrollment_record(user_id: str, item: Mapping[str, Any]) -> SourceRecord | None:
        attrs = _attributes(item)
        course_id = attrs.get("resource_id")
        if not course_id or attrs.get("resource_type") != "course":
            return None
        progress_status = _text(attrs.get("progress_status")) or "enrolled"
        score = attrs.get("score")
        return SourceRecord(
            values={
                "id": str(item["id"]),
                "user_id": user_id,
                "course_id": str(course_id),
                "status": progress_status,
                "progress_percent": PROGRESS_PERCENT.get(progress_status, 0),
                "enrolled_at": parse_api_datetime(attrs.get("enrolled_at")),
                "started_at": parse_api_datetime(attrs.get("started_at")),
                "completed_at": parse_api_datetime(attrs.get("completed_at")),
                "expires_at": parse_api_datetime(attrs.get("expires_at")),
                "score": float(score) if score not in (None, "") else None,
            },
            updated_at=parse_api_datetime(attrs.get("updated_at")),
        )
