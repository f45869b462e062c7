from __future__ import annotations

import warnings

from sqlalchemy.exc import SADeprecationWarning
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from partner_portal.models import LmsGroup, LmsGroupMember, db
from partner_portal.models.mixins import SoftDeleteMixin
from partner_portal.sync.pipeline.deletion import NOT_IN_SOURCE, DeletionDetector


def _seed_groups(count: int) -> list[str]:
    ids = [f"g{index:04d}" for index in range(count)]
    db.session.add_all(LmsGroup(id=group_id, name=f"Group {group_id}") for group_id in ids)
    db.session.commit()
    return ids


def test_full_pass_deactivates_groups_missing_upstream(app):
    local_ids = _seed_groups(520)
    observed = local_ids[:500]

    result = DeletionDetector(LmsGroup).detect(observed, pass_complete=True)
    db.session.commit()

    assert len(result.deactivated) == 20
    assert set(result.deactivated) == set(local_ids[500:])
    inactive = db.session.query(LmsGroup).filter(LmsGroup.is_active.is_(False)).all()
    assert len(inactive) == 20
    assert all(group.deactivation_reason == NOT_IN_SOURCE for group in inactive)
    assert all(group.deleted_at is not None for group in inactive)
    assert db.session.query(LmsGroup).filter(LmsGroup.is_active.is_(True)).count() == 500


def test_incomplete_pass_skips_detection(app):
    local_ids = _seed_groups(5)

    result = DeletionDetector(LmsGroup).detect(local_ids[:2], pass_complete=False)

    assert result.skipped is True
    assert result.deleted_count == 0
    assert db.session.query(LmsGroup).filter(LmsGroup.is_active.is_(False)).count() == 0


def test_already_inactive_rows_are_not_counted_twice(app):
    local_ids = _seed_groups(3)
    detector = DeletionDetector(LmsGroup)
    detector.detect(local_ids[:1])
    db.session.commit()

    second = detector.detect(local_ids[:1])

    assert second.deactivated == []


def test_membership_removal_only_touches_api_rows(app):
    db.session.add(LmsGroup(id="g1", name="Group 1"))
    db.session.add_all(
        [
            LmsGroupMember(group_id="g1", user_id="u1", pending_source="api"),
            LmsGroupMember(group_id="g1", user_id="u2", pending_source="api"),
            LmsGroupMember(group_id="g1", user_id="u3", pending_source="local"),
        ]
    )
    db.session.commit()

    result = DeletionDetector().detect_memberships("g1", ["u1"])
    db.session.commit()

    assert result.memberships_removed == 1
    assert result.memberships_preserved == 1
    remaining = {row.user_id for row in db.session.query(LmsGroupMember).filter_by(group_id="g1")}
    assert remaining == {"u1", "u3"}


def test_soft_delete_mixin_maps_without_deprecation_warnings():
    class Base(DeclarativeBase):
        pass

    with warnings.catch_warnings():
        warnings.simplefilter("error", SADeprecationWarning)

        class Widget(SoftDeleteMixin, Base):
            __tablename__ = "widgets"

            id: Mapped[int] = mapped_column(primary_key=True)

    assert {"is_active", "deleted_at", "deactivation_reason"} <= set(Widget.__table__.c.keys())
