from __future__ import annotations

from datetime import datetime, timezone

from partner_portal.models import Contact, LmsCourse, LmsEnrollment, LmsUser, SyncFailure, db
from partner_portal.sync.pipeline.reconciler import (
    ParentReference,
    SourceRecord,
    UpsertOutcome,
    UpsertReconciler,
)


def _user_reconciler(**kwargs) -> UpsertReconciler:
    return UpsertReconciler(LmsUser, entity_type="users", sync_type="lms_users", **kwargs)


def _enrollment_reconciler() -> UpsertReconciler:
    return UpsertReconciler(
        LmsEnrollment,
        entity_type="enrollments",
        sync_type="lms_enrollments",
        references=(ParentReference("course_id", LmsCourse),),
    )


def test_upsert_creates_then_updates_last_writer_wins(app):
    reconciler = _user_reconciler()

    created = reconciler.upsert({"id": "u1", "email": "first@partner.example", "first_name": "Ada"})
    db.session.commit()
    updated = reconciler.upsert({"id": "u1", "email": "second@partner.example", "first_name": "Ada"})
    db.session.commit()

    assert created.outcome is UpsertOutcome.CREATED
    assert updated.outcome is UpsertOutcome.UPDATED
    user = db.session.get(LmsUser, "u1")
    assert user.email == "second@partner.example"
    assert user.synced_at is not None
    assert db.session.query(LmsUser).count() == 1


def test_fill_only_field_keeps_existing_value(app):
    reconciler = UpsertReconciler(
        Contact,
        entity_type="contacts",
        sync_type="crm_contacts",
        key_fields=("crm_id",),
        fill_only=("lms_user_id",),
    )
    reconciler.upsert({"crm_id": "c1", "email": "a@partner.example", "lms_user_id": None})
    reconciler.upsert({"crm_id": "c1", "email": "a@partner.example", "lms_user_id": "u-first"})
    reconciler.upsert({"crm_id": "c1", "email": "a@partner.example", "lms_user_id": "u-second"})
    db.session.commit()

    contact = db.session.query(Contact).filter_by(crm_id="c1").one()
    assert contact.lms_user_id == "u-first"


def test_missing_parent_is_counted_as_fk_error_and_cached(app, course_factory):
    course_factory("c1")
    reconciler = _enrollment_reconciler()

    stats = reconciler.reconcile(
        [
            SourceRecord({"id": "e1", "user_id": "u1", "course_id": "c1"}),
            SourceRecord({"id": "e2", "user_id": "u1", "course_id": "missing"}),
            SourceRecord({"id": "e3", "user_id": "u2", "course_id": "missing"}),
            SourceRecord({"id": "e4", "user_id": "u2", "course_id": "c1"}),
        ]
    )
    db.session.commit()

    assert stats.processed == 4
    assert stats.created == 2
    assert stats.fk_errors == 2
    assert stats.failed == 0
    assert stats.cache_hits == 2
    assert {row.id for row in db.session.query(LmsEnrollment)} == {"e1", "e4"}
    # FK errors are self-healing and are not triaged as failures.
    assert db.session.query(SyncFailure).count() == 0


def test_bad_record_fails_alone_and_siblings_are_written(app):
    reconciler = _user_reconciler()

    def transform(item):
        return SourceRecord(values={"id": item["id"], "email": item["attributes"]["email"]})

    stats = reconciler.reconcile(
        [
            {"id": "u1", "attributes": {"email": "one@partner.example"}},
            {"id": "u2"},
            {"id": "u3", "attributes": {"email": "three@partner.example"}},
        ],
        transform=transform,
    )
    db.session.commit()

    assert stats.created == 2
    assert stats.failed == 1
    assert {user.id for user in db.session.query(LmsUser)} == {"u1", "u3"}
    failure = db.session.query(SyncFailure).one()
    assert failure.entity_id == "u2"
    assert failure.failure_reason == "invalid_record"
    assert failure.sync_type == "lms_users"


def test_duplicate_unique_value_is_isolated_to_its_record(app):
    reconciler = _user_reconciler()

    stats = reconciler.reconcile(
        [
            SourceRecord({"id": "u1", "email": "shared@partner.example"}),
            SourceRecord({"id": "u2", "email": "shared@partner.example"}),
            SourceRecord({"id": "u3", "email": "own@partner.example"}),
        ]
    )
    db.session.commit()

    assert stats.created == 2
    assert stats.failed == 1
    assert {user.id for user in db.session.query(LmsUser)} == {"u1", "u3"}
    assert db.session.query(SyncFailure).one().failure_reason == "integrity_error"


def test_missing_key_and_skipped_records(app):
    reconciler = _user_reconciler()

    stats = reconciler.reconcile(
        [{"id": "", "email": "nobody@partner.example"}, {"id": "u1"}, {"id": "skip-me"}],
        transform=lambda item: None if item["id"] == "skip-me" else SourceRecord(values=dict(item)),
    )
    db.session.commit()

    assert stats.failed == 1
    assert stats.created == 1
    assert stats.skipped == 1
    assert db.session.query(SyncFailure).one().failure_reason == "missing_key"


def test_max_source_updated_at_comes_from_written_records(app):
    reconciler = _enrollment_reconciler()
    newest_orphan = datetime(2024, 6, 1, tzinfo=timezone.utc)
    written = datetime(2024, 5, 1, tzinfo=timezone.utc)
    db.session.add(LmsCourse(id="c1", name="Course"))
    db.session.commit()

    stats = reconciler.reconcile(
        [
            SourceRecord({"id": "e1", "user_id": "u1", "course_id": "c1"}, updated_at=written),
            SourceRecord({"id": "e2", "user_id": "u1", "course_id": "nope"}, updated_at=newest_orphan),
        ]
    )

    assert stats.max_source_updated_at == written
    assert stats.observed_keys == {"e1", "e2"}
