"""
tests/test_tracking_service.py — Event → Mission Progress Dispatch
===================================================================

Each test commits the producer's activity row first (the review, the
check-in…) and then calls ``track`` with the matching event, the way a
producer does after its own write.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from questboard.database.models import (
    Badge,
    CheckIn,
    Establishment,
    Mission,
    MissionProgress,
    Review,
    User,
    UserBadge,
    VoteType,
    XpTransaction,
)
from questboard.engine.events import (
    CheckInPerformed,
    FollowCreated,
    PhotoUploaded,
    ReviewCreated,
    VoteCast,
)
from questboard.services import tracking_service
from questboard.services.tracking_service import track

# Wednesday 12:00 in Bangkok
NOW = datetime(2026, 10, 21, 5, 0, tzinfo=UTC)
JUST_NOW = NOW - timedelta(minutes=1)
# 23:00 Bangkok the previous day
YESTERDAY = datetime(2026, 10, 20, 16, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _make_user(engine, username: str = "alice") -> int:
    with Session(engine) as session:
        user = User(username=username)
        session.add(user)
        session.commit()
        return user.id


def _make_establishment(engine, zone: str | None = "Soi 6", name: str = "Bar") -> int:
    with Session(engine) as session:
        est = Establishment(name=name, zone=zone)
        session.add(est)
        session.commit()
        return est.id


def _make_mission(
    engine,
    requirements: dict,
    *,
    name: str = "Mission",
    mission_type: str = "daily",
    reset_frequency: str = "daily",
    xp: int = 10,
    is_active: bool = True,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> int:
    with Session(engine) as session:
        mission = Mission(
            name=name,
            type=mission_type,
            xp_reward=xp,
            requirements=requirements,
            reset_frequency=reset_frequency,
            is_active=is_active,
            start_date=start_date,
            end_date=end_date,
        )
        session.add(mission)
        session.commit()
        return mission.id


def _add_review(
    engine, user_id: int, *, content: str = "Nice place", has_photos: bool = False,
    created_at: datetime = JUST_NOW,
) -> int:
    with Session(engine) as session:
        review = Review(
            user_id=user_id, content=content, has_photos=has_photos, created_at=created_at
        )
        session.add(review)
        session.commit()
        return review.id


def _add_check_in(
    engine, user_id: int, establishment_id: int, *, verified: bool = True,
    created_at: datetime = JUST_NOW,
) -> int:
    with Session(engine) as session:
        check_in = CheckIn(
            user_id=user_id, establishment_id=establishment_id,
            verified=verified, created_at=created_at,
        )
        session.add(check_in)
        session.commit()
        return check_in.id


def _review_event(engine, user_id: int, **kwargs) -> ReviewCreated:
    review_id = _add_review(engine, user_id, **kwargs)
    content = kwargs.get("content", "Nice place")
    return ReviewCreated(
        user_id=user_id, review_id=review_id, content_length=len(content),
        has_photos=kwargs.get("has_photos", False),
    )


def _check_in_event(engine, user_id: int, establishment_id: int, **kwargs) -> CheckInPerformed:
    check_in_id = _add_check_in(engine, user_id, establishment_id, **kwargs)
    return CheckInPerformed(
        user_id=user_id, establishment_id=establishment_id, check_in_id=check_in_id,
        verified=kwargs.get("verified", True),
    )


def _progress(engine, user_id: int, mission_id: int) -> MissionProgress | None:
    with Session(engine) as session:
        return session.scalars(
            select(MissionProgress).where(
                MissionProgress.user_id == user_id,
                MissionProgress.mission_id == mission_id,
            )
        ).one_or_none()


def _total_xp(engine, user_id: int) -> int:
    with Session(engine) as session:
        return session.get(User, user_id).total_xp


# ===========================================================================
# Reviews
# ===========================================================================
class TestReviewTracking:
    def test_review_advances_and_completes(self, engine):
        uid = _make_user(engine)
        mid = _make_mission(engine, {"type": "write_reviews", "count": 2}, xp=20)

        first = track(engine, _review_event(engine, uid), now=NOW)
        assert first.completed == []
        assert _progress(engine, uid, mid).progress == 1

        second = track(engine, _review_event(engine, uid), now=NOW)
        assert second.completed == [(uid, mid)]
        assert _progress(engine, uid, mid).completed
        # two review bonuses + mission reward
        assert _total_xp(engine, uid) == 50 + 50 + 20

    def test_review_bonus_ledger_entry(self, engine):
        uid = _make_user(engine)
        event = _review_event(engine, uid)
        result = track(engine, event, now=NOW)
        assert result.bonus_xp == 50
        with Session(engine) as session:
            txn = session.scalars(select(XpTransaction)).one()
            assert txn.reason == "review_created"
            assert txn.related_entity_type == "review"
            assert txn.related_entity_id == event.review_id

    def test_duplicate_delivery_does_not_over_count(self, engine):
        uid = _make_user(engine)
        mid = _make_mission(engine, {"type": "write_reviews", "count": 5})
        event = _review_event(engine, uid)
        track(engine, event, now=NOW)
        track(engine, event, now=NOW)
        assert _progress(engine, uid, mid).progress == 1

    def test_quality_filters(self, engine):
        uid = _make_user(engine)
        mid = _make_mission(
            engine,
            {"type": "write_quality_review", "count": 1, "min_length": 100, "with_photos": True},
        )
        track(engine, _review_event(engine, uid, content="short", has_photos=True), now=NOW)
        track(engine, _review_event(engine, uid, content="x" * 150, has_photos=False), now=NOW)
        assert _progress(engine, uid, mid).progress == 0

        result = track(
            engine, _review_event(engine, uid, content="x" * 150, has_photos=True), now=NOW
        )
        assert result.completed == [(uid, mid)]

    def test_quality_review_default_min_length(self, engine):
        uid = _make_user(engine)
        mid = _make_mission(engine, {"type": "write_quality_review", "count": 1})
        track(engine, _review_event(engine, uid, content="x" * 99), now=NOW)
        assert _progress(engine, uid, mid).progress == 0

    def test_daily_window_excludes_yesterday(self, engine):
        uid = _make_user(engine)
        mid = _make_mission(engine, {"type": "write_reviews", "count": 3})
        _add_review(engine, uid, created_at=YESTERDAY)
        _add_review(engine, uid, created_at=YESTERDAY)
        track(engine, _review_event(engine, uid), now=NOW)
        assert _progress(engine, uid, mid).progress == 1

    def test_never_reset_counts_all_time(self, engine):
        uid = _make_user(engine)
        mid = _make_mission(
            engine, {"type": "write_reviews", "count": 3},
            mission_type="narrative", reset_frequency="never",
        )
        _add_review(engine, uid, created_at=NOW - timedelta(days=40))
        track(engine, _review_event(engine, uid), now=NOW)
        assert _progress(engine, uid, mid).progress == 2

    def test_other_users_reviews_not_counted(self, engine):
        alice, bob = _make_user(engine, "alice"), _make_user(engine, "bob")
        mid = _make_mission(engine, {"type": "write_reviews", "count": 3})
        _add_review(engine, bob)
        track(engine, _review_event(engine, alice), now=NOW)
        assert _progress(engine, alice, mid).progress == 1

    def test_badge_auto_awarded(self, engine):
        uid = _make_user(engine)
        with Session(engine) as session:
            badge = Badge(name="First Review", category="contribution",
                          requirement_type="review_count", requirement_value=1)
            session.add(badge)
            session.commit()
            badge_id = badge.id
        result = track(engine, _review_event(engine, uid), now=NOW)
        assert result.badges_awarded == [(uid, badge_id)]
        with Session(engine) as session:
            assert session.get(UserBadge, (uid, badge_id)).source == "auto"


# ===========================================================================
# Check-ins
# ===========================================================================
class TestCheckInTracking:
    def test_unverified_check_in_ignored(self, engine):
        uid = _make_user(engine)
        est = _make_establishment(engine)
        mid = _make_mission(engine, {"type": "check_in", "count": 1})
        result = track(engine, _check_in_event(engine, uid, est, verified=False), now=NOW)
        assert result.bonus_xp == 0
        assert _progress(engine, uid, mid) is None
        assert _total_xp(engine, uid) == 0

    def test_plain_check_in_counts_each_event(self, engine):
        uid = _make_user(engine)
        est = _make_establishment(engine)
        mid = _make_mission(engine, {"type": "check_in", "count": 5})
        track(engine, _check_in_event(engine, uid, est), now=NOW)
        track(engine, _check_in_event(engine, uid, est), now=NOW)
        assert _progress(engine, uid, mid).progress == 2

    def test_unique_check_in_counts_distinct_establishments(self, engine):
        uid = _make_user(engine)
        bar_a = _make_establishment(engine, name="A")
        bar_b = _make_establishment(engine, name="B")
        mid = _make_mission(engine, {"type": "check_in", "count": 3, "unique": True})
        track(engine, _check_in_event(engine, uid, bar_a), now=NOW)
        track(engine, _check_in_event(engine, uid, bar_a), now=NOW)
        track(engine, _check_in_event(engine, uid, bar_b), now=NOW)
        assert _progress(engine, uid, mid).progress == 2

    def test_unverified_rows_excluded_from_recount(self, engine):
        uid = _make_user(engine)
        bar_a = _make_establishment(engine, name="A")
        bar_b = _make_establishment(engine, name="B")
        mid = _make_mission(engine, {"type": "check_in", "count": 3, "unique": True})
        _add_check_in(engine, uid, bar_b, verified=False)
        track(engine, _check_in_event(engine, uid, bar_a), now=NOW)
        assert _progress(engine, uid, mid).progress == 1

    def test_bonus_xp_with_check_in_entity(self, engine):
        uid = _make_user(engine)
        est = _make_establishment(engine)
        event = _check_in_event(engine, uid, est)
        result = track(engine, event, now=NOW)
        assert result.bonus_xp == 15
        with Session(engine) as session:
            txn = session.scalars(select(XpTransaction)).one()
            assert (txn.reason, txn.related_entity_type, txn.related_entity_id) == (
                "check_in", "check_in", event.check_in_id,
            )

    def test_zone_mission_only_moves_in_its_zone(self, engine):
        uid = _make_user(engine)
        soi6 = _make_establishment(engine, zone="Soi 6")
        jomtien = _make_establishment(engine, zone="Jomtien")
        mid = _make_mission(engine, {"type": "check_in_zone", "zone": "Soi 6", "count": 2})

        track(engine, _check_in_event(engine, uid, jomtien), now=NOW)
        assert _progress(engine, uid, mid) is None

        track(engine, _check_in_event(engine, uid, soi6), now=NOW)
        assert _progress(engine, uid, mid).progress == 1

    def test_zone_coverage_counts_distinct_zones(self, engine):
        uid = _make_user(engine)
        zones = ["Soi 6", "Soi 6", "Jomtien", None]
        mid = _make_mission(
            engine, {"type": "visit_zones", "count": 3}, reset_frequency="weekly",
            mission_type="weekly",
        )
        for i, zone in enumerate(zones):
            est = _make_establishment(engine, zone=zone, name=f"Bar {i}")
            track(engine, _check_in_event(engine, uid, est), now=NOW)
        assert _progress(engine, uid, mid).progress == 2


# ===========================================================================
# Narrative quests
# ===========================================================================
class TestQuestGating:
    def _grand_tour(self, engine) -> tuple[int, int]:
        step1 = _make_mission(
            engine,
            {"type": "check_in_zone", "zone": "Soi 6", "count": 1,
             "quest_id": "grand_tour", "step": 1},
            name="Grand Tour: Soi 6", mission_type="narrative", reset_frequency="never",
        )
        step2 = _make_mission(
            engine,
            {"type": "check_in_zone", "zone": "Jomtien", "count": 1,
             "quest_id": "grand_tour", "step": 2},
            name="Grand Tour: Jomtien", mission_type="narrative", reset_frequency="never",
        )
        return step1, step2

    def test_later_step_waits_for_previous(self, engine):
        uid = _make_user(engine)
        step1, step2 = self._grand_tour(engine)
        jomtien = _make_establishment(engine, zone="Jomtien")

        result = track(engine, _check_in_event(engine, uid, jomtien), now=NOW)
        assert result.completed == []
        assert _progress(engine, uid, step2) is None

    def test_steps_complete_in_order(self, engine):
        uid = _make_user(engine)
        step1, step2 = self._grand_tour(engine)
        soi6 = _make_establishment(engine, zone="Soi 6")
        jomtien = _make_establishment(engine, zone="Jomtien")

        first = track(engine, _check_in_event(engine, uid, soi6), now=NOW)
        assert first.completed == [(uid, step1)]
        # completion opens the next step at zero
        assert _progress(engine, uid, step2).progress == 0

        second = track(engine, _check_in_event(engine, uid, jomtien), now=NOW)
        assert second.completed == [(uid, step2)]


# ===========================================================================
# Votes, follows, photos
# ===========================================================================
class TestSocialTracking:
    def test_helpful_vote_moves_voter_and_author(self, engine):
        voter, author = _make_user(engine, "voter"), _make_user(engine, "author")
        give = _make_mission(engine, {"type": "vote_helpful", "count": 5})
        receive = _make_mission(
            engine, {"type": "receive_helpful_votes", "count": 10},
            mission_type="weekly", reset_frequency="weekly",
        )
        track(engine, VoteCast(voter_id=voter, review_id=1, review_author_id=author), now=NOW)
        assert _progress(engine, voter, give).progress == 1
        assert _progress(engine, author, receive).progress == 1
        assert _progress(engine, voter, receive) is None

    def test_self_vote_only_counts_for_voter(self, engine):
        uid = _make_user(engine)
        give = _make_mission(engine, {"type": "vote_helpful", "count": 5})
        receive = _make_mission(engine, {"type": "receive_helpful_votes", "count": 10})
        track(engine, VoteCast(voter_id=uid, review_id=1, review_author_id=uid), now=NOW)
        assert _progress(engine, uid, give).progress == 1
        assert _progress(engine, uid, receive) is None

    def test_not_helpful_vote_ignored(self, engine):
        voter, author = _make_user(engine, "voter"), _make_user(engine, "author")
        give = _make_mission(engine, {"type": "vote_helpful", "count": 5})
        track(
            engine,
            VoteCast(voter_id=voter, review_id=1, review_author_id=author,
                     vote_type=VoteType.NOT_HELPFUL),
            now=NOW,
        )
        assert _progress(engine, voter, give) is None

    def test_follow_moves_both_sides(self, engine):
        fan, star = _make_user(engine, "fan"), _make_user(engine, "star")
        follow = _make_mission(engine, {"type": "follow_users", "count": 2})
        gain = _make_mission(
            engine, {"type": "gain_followers", "count": 5},
            mission_type="weekly", reset_frequency="weekly",
        )
        track(engine, FollowCreated(follower_id=fan, following_id=star), now=NOW)
        assert _progress(engine, fan, follow).progress == 1
        assert _progress(engine, star, gain).progress == 1
        assert _progress(engine, fan, gain) is None

    def test_self_follow_ignored(self, engine):
        uid = _make_user(engine)
        follow = _make_mission(engine, {"type": "follow_users", "count": 2})
        result = track(engine, FollowCreated(follower_id=uid, following_id=uid), now=NOW)
        assert result.completed == []
        assert _progress(engine, uid, follow) is None

    def test_high_res_photo_filter(self, engine):
        uid = _make_user(engine)
        any_photo = _make_mission(engine, {"type": "upload_photos", "count": 3})
        hi_res = _make_mission(engine, {"type": "upload_photos", "count": 3, "high_res": True})
        track(engine, PhotoUploaded(user_id=uid, width=640, height=480), now=NOW)
        track(engine, PhotoUploaded(user_id=uid, width=1920, height=1080), now=NOW)
        assert _progress(engine, uid, any_photo).progress == 2
        assert _progress(engine, uid, hi_res).progress == 1


# ===========================================================================
# Mission selection and failure isolation
# ===========================================================================
class TestMissionSelection:
    def test_inactive_mission_ignored(self, engine):
        uid = _make_user(engine)
        mid = _make_mission(engine, {"type": "follow_users", "count": 1}, is_active=False)
        track(engine, FollowCreated(follower_id=uid, following_id=_make_user(engine, "b")), now=NOW)
        assert _progress(engine, uid, mid) is None

    def test_event_window_respected(self, engine):
        uid = _make_user(engine)
        other = _make_user(engine, "other")
        over = _make_mission(
            engine, {"type": "follow_users", "count": 1, "event": "halloween"},
            mission_type="event", reset_frequency="never",
            start_date=datetime(2025, 10, 31, 11, 0, tzinfo=UTC),
            end_date=datetime(2025, 10, 31, 23, 0, tzinfo=UTC),
        )
        running = _make_mission(
            engine, {"type": "follow_users", "count": 1, "event": "loy_krathong"},
            mission_type="event", reset_frequency="never",
            start_date=NOW - timedelta(days=1), end_date=NOW + timedelta(days=1),
        )
        track(engine, FollowCreated(follower_id=uid, following_id=other), now=NOW)
        assert _progress(engine, uid, over) is None
        assert _progress(engine, uid, running).completed

    def test_invalid_requirements_skipped(self, engine, caplog):
        uid = _make_user(engine)
        broken = _make_mission(engine, {"type": "follow_users", "count": "lots"})
        good = _make_mission(engine, {"type": "follow_users", "count": 2})
        with caplog.at_level(logging.WARNING, logger="questboard.services.tracking_service"):
            track(engine, FollowCreated(follower_id=uid, following_id=_make_user(engine, "b")), now=NOW)
        assert _progress(engine, uid, broken) is None
        assert _progress(engine, uid, good).progress == 1
        assert "invalid requirements" in caplog.text

    def test_one_failing_mission_does_not_block_others(self, engine, caplog):
        uid = _make_user(engine)
        first = _make_mission(engine, {"type": "follow_users", "count": 5}, name="A")
        second = _make_mission(engine, {"type": "follow_users", "count": 5}, name="B")
        real = tracking_service.apply_increment

        def flaky(session, user_id, mission_id, *args, **kwargs):
            if mission_id == first:
                raise RuntimeError("boom")
            return real(session, user_id, mission_id, *args, **kwargs)

        target = _make_user(engine, "target")
        with caplog.at_level(logging.ERROR, logger="questboard.services.tracking_service"):
            with pytest.MonkeyPatch.context() as mp:
                mp.setattr(tracking_service, "apply_increment", flaky)
                result = track(engine, FollowCreated(follower_id=uid, following_id=target), now=NOW)

        assert result.errors == 1
        assert _progress(engine, uid, first) is None
        assert _progress(engine, uid, second).progress == 1
        assert "Mission tracking failed" in caplog.text

    def test_non_mapping_requirements_row_does_not_reach_producer(self, engine):
        uid = _make_user(engine)
        # no step 1 exists, so the gate scans every active row for a predecessor
        step2 = _make_mission(
            engine,
            {"type": "write_reviews", "count": 1, "quest_id": "food_crawl", "step": 2},
            name="Food Crawl: 2", mission_type="narrative", reset_frequency="never",
        )
        broken = _make_mission(engine, ["oops"], name="Broken")  # type: ignore[arg-type]
        plain = _make_mission(engine, {"type": "write_reviews", "count": 1}, name="Plain")

        result = track(engine, _review_event(engine, uid), now=NOW)

        assert result.errors == 0
        assert result.completed == [(uid, step2), (uid, plain)]
        assert _progress(engine, uid, broken) is None
        assert result.bonus_xp == 50

    def test_quest_gate_failure_is_isolated(self, engine, caplog):
        uid = _make_user(engine)
        step2 = _make_mission(
            engine,
            {"type": "write_reviews", "count": 1, "quest_id": "food_crawl", "step": 2},
            name="Food Crawl: 2", mission_type="narrative", reset_frequency="never",
        )
        plain = _make_mission(engine, {"type": "write_reviews", "count": 1}, name="Plain")

        def gate(engine, user_id, req):
            if req.step == 2:
                raise RuntimeError("db down")
            return True

        with caplog.at_level(logging.ERROR, logger="questboard.services.tracking_service"):
            with pytest.MonkeyPatch.context() as mp:
                mp.setattr(tracking_service, "_quest_step_open", gate)
                result = track(engine, _review_event(engine, uid), now=NOW)

        assert result.errors == 1
        assert _progress(engine, uid, step2) is None
        assert result.completed == [(uid, plain)]
        assert result.bonus_xp > 0

    def test_mission_load_failure_still_grants_bonus(self, engine, caplog):
        uid = _make_user(engine)

        def broken_load(*args, **kwargs):
            raise RuntimeError("db down")

        with caplog.at_level(logging.ERROR, logger="questboard.services.tracking_service"):
            with pytest.MonkeyPatch.context() as mp:
                mp.setattr(tracking_service, "_load_active_missions", broken_load)
                result = track(engine, _review_event(engine, uid), now=NOW)

        assert result.errors == 1
        assert result.bonus_xp > 0
        assert _total_xp(engine, uid) == result.bonus_xp
        assert "Loading missions failed" in caplog.text

    def test_zone_lookup_failure_is_counted(self, caplog):
        # no tables: the lookup query itself fails
        bare = create_engine("sqlite://")
        result = tracking_service.TrackingResult()
        with caplog.at_level(logging.ERROR, logger="questboard.services.tracking_service"):
            assert tracking_service._establishment_zone(bare, 1, result) is None
        assert result.errors == 1
        assert "Zone lookup failed" in caplog.text

    def test_zone_lookup_failure_skips_only_zone_missions(self, engine):
        uid = _make_user(engine)
        soi6 = _make_establishment(engine, zone="Soi 6")
        zoned = _make_mission(engine, {"type": "check_in_zone", "zone": "Soi 6", "count": 1})
        plain = _make_mission(engine, {"type": "check_in", "count": 1})
        event = _check_in_event(engine, uid, soi6)

        def no_zone(engine, establishment_id, result):
            result.errors += 1
            return None

        with pytest.MonkeyPatch.context() as mp:
            mp.setattr(tracking_service, "_establishment_zone", no_zone)
            result = track(engine, event, now=NOW)

        assert result.errors == 1
        assert _progress(engine, uid, zoned) is None
        assert (uid, plain) in result.completed
        assert result.bonus_xp == 15

    def test_unknown_event_type(self, engine):
        with pytest.raises(TypeError, match="Unsupported event type"):
            track(engine, object(), now=NOW)  # type: ignore[arg-type]
