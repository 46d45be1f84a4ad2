"""
tests/test_reset_service.py — Periodic Mission & Monthly XP Resets
===================================================================
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from questboard.database.models import (
    Badge,
    Mission,
    MissionProgress,
    User,
    UserBadge,
    XpTransaction,
)
from questboard.exceptions import InvalidCadenceError, LeaseLostError
from questboard.services.reset_service import reset_missions, reset_monthly_xp

NOW = datetime(2026, 10, 21, 5, 0, tzinfo=UTC)


def _make_mission(session: Session, name: str, cadence: str) -> Mission:
    mission = Mission(
        name=name,
        type={"daily": "daily", "weekly": "weekly"}.get(cadence, "narrative"),
        xp_reward=10,
        requirements={"type": "follow_users", "count": 3},
        reset_frequency=cadence,
    )
    session.add(mission)
    session.flush()
    return mission


def _seed(engine, users: int = 3) -> dict[str, int]:
    """One mission per cadence; every user has progress on every mission."""
    with Session(engine) as session:
        missions = {
            cadence: _make_mission(session, f"{cadence} mission", cadence)
            for cadence in ("daily", "weekly", "never")
        }
        for i in range(users):
            user = User(username=f"user{i}", total_xp=500, monthly_xp=120)
            session.add(user)
            session.flush()
            for mission in missions.values():
                completed = i == 0
                session.add(MissionProgress(
                    user_id=user.id,
                    mission_id=mission.id,
                    progress=3 if completed else 1,
                    completed=completed,
                    completed_at=NOW if completed else None,
                ))
        session.commit()
        return {cadence: m.id for cadence, m in missions.items()}


def _rows(engine, mission_id: int) -> list[MissionProgress]:
    with Session(engine) as session:
        return list(session.scalars(
            select(MissionProgress)
            .where(MissionProgress.mission_id == mission_id)
            .order_by(MissionProgress.user_id)
        ))


class TestResetMissions:
    def test_daily_reset_zeroes_only_daily(self, engine):
        ids = _seed(engine)
        summary = reset_missions(engine, "daily")

        assert summary == {"cadence": "daily", "missions": 1, "rows_reset": 3}
        for row in _rows(engine, ids["daily"]):
            assert row.progress == 0
            assert not row.completed
            assert row.completed_at is None
            assert row.reset_count == 1
        assert [r.progress for r in _rows(engine, ids["weekly"])] == [3, 1, 1]
        assert [r.completed for r in _rows(engine, ids["never"])] == [True, False, False]

    def test_weekly_reset(self, engine):
        ids = _seed(engine)
        reset_missions(engine, "weekly")
        assert all(r.progress == 0 for r in _rows(engine, ids["weekly"]))
        assert [r.progress for r in _rows(engine, ids["daily"])] == [3, 1, 1]

    def test_rerun_is_a_no_op(self, engine):
        ids = _seed(engine)
        reset_missions(engine, "daily")
        again = reset_missions(engine, "daily")
        assert again["rows_reset"] == 0
        assert all(r.reset_count == 1 for r in _rows(engine, ids["daily"]))

    def test_batches_cover_every_row(self, engine):
        ids = _seed(engine, users=7)
        summary = reset_missions(engine, "daily", batch_size=2)
        assert summary["rows_reset"] == 7
        assert all(r.progress == 0 for r in _rows(engine, ids["daily"]))

    def test_heartbeat_after_each_batch(self, engine):
        _seed(engine, users=7)
        heartbeat = MagicMock()
        reset_missions(engine, "daily", batch_size=3, heartbeat=heartbeat)
        assert heartbeat.call_count == 3

    def test_lost_lease_stops_between_batches(self, engine):
        ids = _seed(engine, users=7)
        heartbeat = MagicMock(side_effect=LeaseLostError("taken over"))
        with pytest.raises(LeaseLostError):
            reset_missions(engine, "daily", batch_size=3, heartbeat=heartbeat)
        heartbeat.assert_called_once_with()
        # the first batch stays committed; a later run finishes the rest
        assert sum(r.progress == 0 for r in _rows(engine, ids["daily"])) == 3
        assert reset_missions(engine, "daily")["rows_reset"] == 4

    def test_rows_already_clean_are_skipped(self, engine):
        ids = _seed(engine)
        with Session(engine) as session:
            row = session.scalars(
                select(MissionProgress).where(MissionProgress.mission_id == ids["daily"])
            ).first()
            row.progress = 0
            row.completed = False
            row.completed_at = None
            session.commit()
        assert reset_missions(engine, "daily")["rows_reset"] == 2

    @pytest.mark.parametrize("cadence", ["monthly", "never", "hourly"])
    def test_invalid_cadence(self, engine, cadence):
        with pytest.raises(InvalidCadenceError):
            reset_missions(engine, cadence)

    def test_no_matching_missions(self, engine):
        assert reset_missions(engine, "weekly") == {
            "cadence": "weekly", "missions": 0, "rows_reset": 0,
        }

    def test_ledger_badges_and_totals_untouched(self, engine):
        ids = _seed(engine)
        with Session(engine) as session:
            user = session.scalars(select(User)).first()
            badge = Badge(name="Kept", category="secret")
            session.add(badge)
            session.flush()
            session.add(UserBadge(user_id=user.id, badge_id=badge.id))
            session.add(XpTransaction(user_id=user.id, xp_amount=500, reason="admin_manual"))
            session.commit()

        reset_missions(engine, "daily")
        reset_missions(engine, "weekly")

        with Session(engine) as session:
            assert session.scalar(select(func.count()).select_from(UserBadge)) == 1
            assert session.scalar(select(func.count()).select_from(XpTransaction)) == 1
            assert all(u.total_xp == 500 for u in session.scalars(select(User)))
        assert [r.completed for r in _rows(engine, ids["never"])] == [True, False, False]


class TestResetMonthlyXp:
    def test_zeroes_monthly_keeps_total(self, engine):
        _seed(engine)
        assert reset_monthly_xp(engine) == {"users_reset": 3}
        with Session(engine) as session:
            for user in session.scalars(select(User)):
                assert user.monthly_xp == 0
                assert user.total_xp == 500

    def test_idempotent(self, engine):
        _seed(engine)
        reset_monthly_xp(engine)
        assert reset_monthly_xp(engine) == {"users_reset": 0}
