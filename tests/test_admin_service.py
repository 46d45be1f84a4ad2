"""
tests/test_admin_service.py — Audited Admin Mutations
======================================================

Every admin write leaves an admin_log row with before/after snapshots, and
invalid definitions are rejected before anything is written.
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from questboard.database.models import AdminLog, Badge, Mission, User, UserBadge, XpTransaction
from questboard.exceptions import (
    BadgeNotFoundError,
    InvalidAmountError,
    InvalidRequirementError,
    MissionNotFoundError,
    UserNotFoundError,
)
from questboard.services import admin_service

ADMIN = 99999


def _make_user(engine, username: str = "alice", **kwargs) -> int:
    with Session(engine) as session:
        user = User(username=username, **kwargs)
        session.add(user)
        session.commit()
        return user.id


def _make_badge(engine, name: str = "Zone Master") -> int:
    with Session(engine) as session:
        badge = Badge(name=name, category="exploration")
        session.add(badge)
        session.commit()
        return badge.id


def _create_mission(engine, **overrides) -> Mission:
    fields = {
        "actor_id": ADMIN,
        "name": "Daily Reviewer",
        "type": "daily",
        "requirements": {"type": "write_reviews", "count": 1},
        "xp_reward": 20,
        "reset_frequency": "daily",
    }
    fields.update(overrides)
    return admin_service.create_mission(engine, **fields)


def _log_rows(engine) -> list[AdminLog]:
    with Session(engine) as session:
        return list(session.scalars(select(AdminLog).order_by(AdminLog.id)))


def _count(engine, model) -> int:
    with Session(engine) as session:
        return session.scalar(select(func.count()).select_from(model))


class TestCreateMission:
    def test_creates_and_logs(self, engine):
        mission = _create_mission(engine)
        assert mission.id is not None

        (log,) = _log_rows(engine)
        assert log.action_type == "CREATE"
        assert log.target_table == "missions"
        assert log.target_id == str(mission.id)
        assert log.before_snapshot is None
        assert log.after_snapshot["name"] == "Daily Reviewer"
        assert log.actor_id == ADMIN

    def test_requirements_normalized(self, engine):
        mission = _create_mission(
            engine, requirements={"type": "write_reviews", "count": 5, "with_photo": True}
        )
        with Session(engine) as session:
            stored = session.get(Mission, mission.id).requirements
        assert stored == {"type": "write_reviews", "count": 5, "with_photos": True}

    def test_invalid_requirement_rejected(self, engine):
        with pytest.raises(InvalidRequirementError):
            _create_mission(engine, requirements={"type": "write_reviews", "count": 0})
        assert _count(engine, Mission) == 0
        assert _log_rows(engine) == []

    def test_unknown_type_rejected(self, engine):
        with pytest.raises(InvalidRequirementError, match="mission type"):
            _create_mission(engine, type="hourly")

    def test_unknown_cadence_rejected(self, engine):
        with pytest.raises(InvalidRequirementError, match="reset frequency"):
            _create_mission(engine, reset_frequency="hourly")

    def test_negative_xp_rejected(self, engine):
        with pytest.raises(InvalidAmountError):
            _create_mission(engine, xp_reward=-5)

    def test_unknown_badge_rejected(self, engine):
        with pytest.raises(BadgeNotFoundError):
            _create_mission(engine, badge_id=404)

    def test_window_must_be_ordered(self, engine):
        with pytest.raises(InvalidRequirementError, match="end_date"):
            _create_mission(
                engine, type="event", reset_frequency="never",
                start_date=datetime(2026, 11, 2, tzinfo=UTC),
                end_date=datetime(2026, 11, 1, tzinfo=UTC),
            )

    def test_event_window_snapshot_serializable(self, engine):
        mission = _create_mission(
            engine, type="event", reset_frequency="never",
            start_date=datetime(2026, 10, 31, 11, 0, tzinfo=UTC),
            end_date=datetime(2026, 11, 1, 0, 0, tzinfo=UTC),
        )
        (log,) = _log_rows(engine)
        assert log.target_id == str(mission.id)
        assert log.after_snapshot["start_date"].startswith("2026-10-31")


class TestUpdateMission:
    def test_update_logs_before_and_after(self, engine):
        mission = _create_mission(engine)
        admin_service.update_mission(
            engine, mission.id, actor_id=ADMIN, reason="too cheap", xp_reward=40
        )
        create_log, update_log = _log_rows(engine)
        assert update_log.action_type == "UPDATE"
        assert update_log.before_snapshot["xp_reward"] == 20
        assert update_log.after_snapshot["xp_reward"] == 40
        assert update_log.reason == "too cheap"

    def test_update_requirements_validated(self, engine):
        mission = _create_mission(engine)
        with pytest.raises(InvalidRequirementError):
            admin_service.update_mission_requirements(
                engine, mission.id, {"type": "nope"}, actor_id=ADMIN
            )
        with Session(engine) as session:
            assert session.get(Mission, mission.id).requirements == {
                "type": "write_reviews", "count": 1,
            }

    def test_update_requirements(self, engine):
        mission = _create_mission(engine)
        updated = admin_service.update_mission_requirements(
            engine, mission.id, {"type": "write_reviews", "count": 3}, actor_id=ADMIN
        )
        assert updated.requirements == {"type": "write_reviews", "count": 3}

    def test_set_inactive(self, engine):
        mission = _create_mission(engine)
        admin_service.set_mission_active(engine, mission.id, False, actor_id=ADMIN)
        with Session(engine) as session:
            assert session.get(Mission, mission.id).is_active is False

    def test_immutable_field_rejected(self, engine):
        mission = _create_mission(engine)
        with pytest.raises(InvalidRequirementError, match="type"):
            admin_service.update_mission(engine, mission.id, actor_id=ADMIN, type="weekly")

    def test_unknown_mission(self, engine):
        with pytest.raises(MissionNotFoundError):
            admin_service.update_mission(engine, 404, actor_id=ADMIN, xp_reward=10)


class TestManualAwards:
    def test_manual_xp_goes_through_ledger(self, engine):
        uid = _make_user(engine)
        grant = admin_service.award_manual_xp(
            engine, actor_id=ADMIN, user_id=uid, amount=150, reason="event winner"
        )
        assert grant.total_xp == 150
        assert grant.leveled_up
        with Session(engine) as session:
            txn = session.scalars(select(XpTransaction)).one()
            assert txn.reason == "admin_manual"
            assert txn.metadata_ == {"actor_id": ADMIN, "reason": "event winner"}
        (log,) = _log_rows(engine)
        assert log.action_type == "MANUAL_AWARD"
        assert log.before_snapshot["total_xp"] == 0
        assert log.after_snapshot["total_xp"] == 150

    def test_manual_revocation_cannot_go_negative(self, engine):
        uid = _make_user(engine)
        with pytest.raises(InvalidAmountError):
            admin_service.award_manual_xp(
                engine, actor_id=ADMIN, user_id=uid, amount=-10, reason="oops"
            )
        assert _log_rows(engine) == []
        assert _count(engine, XpTransaction) == 0

    def test_manual_xp_unknown_user(self, engine):
        with pytest.raises(UserNotFoundError):
            admin_service.award_manual_xp(
                engine, actor_id=ADMIN, user_id=404, amount=10, reason="x"
            )

    def test_badge_grant(self, engine):
        uid = _make_user(engine)
        bid = _make_badge(engine)
        assert admin_service.grant_badge(engine, actor_id=ADMIN, user_id=uid, badge_id=bid)
        with Session(engine) as session:
            assert session.get(UserBadge, (uid, bid)).source == "admin"
        (log,) = _log_rows(engine)
        assert log.action_type == "BADGE_GRANT"
        assert log.target_id == f"{uid}:{bid}"

    def test_badge_grant_twice_is_false_and_logged_once(self, engine):
        uid = _make_user(engine)
        bid = _make_badge(engine)
        admin_service.grant_badge(engine, actor_id=ADMIN, user_id=uid, badge_id=bid)
        assert not admin_service.grant_badge(engine, actor_id=ADMIN, user_id=uid, badge_id=bid)
        assert len(_log_rows(engine)) == 1

    def test_badge_grant_unknown_ids(self, engine):
        uid = _make_user(engine)
        bid = _make_badge(engine)
        with pytest.raises(UserNotFoundError):
            admin_service.grant_badge(engine, actor_id=ADMIN, user_id=404, badge_id=bid)
        with pytest.raises(BadgeNotFoundError):
            admin_service.grant_badge(engine, actor_id=ADMIN, user_id=uid, badge_id=404)


class TestAuditLog:
    def test_job_run_logged(self, engine):
        admin_service.log_job_run(
            engine, actor_id=ADMIN, job="daily_reset",
            summary={"cadence": "daily", "missions": 6, "rows_reset": 12},
        )
        (log,) = _log_rows(engine)
        assert log.action_type == "JOB_RUN"
        assert log.after_snapshot["rows_reset"] == 12

    def test_paginated_newest_first(self, engine):
        for i in range(5):
            _create_mission(engine, name=f"Mission {i}")
        with Session(engine) as session:
            page = admin_service.get_audit_log(session, page=1, page_size=2)
            assert page["total"] == 5
            assert len(page["entries"]) == 2
            assert page["entries"][0]["id"] > page["entries"][1]["id"]
            last = admin_service.get_audit_log(session, page=3, page_size=2)
            assert len(last["entries"]) == 1
