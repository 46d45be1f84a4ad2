"""
questboard.services.tracking_service — Event → Mission Progress Dispatch
=========================================================================

Entry point for event producers.  After a review, check-in, vote, follow
or photo upload has been committed, the producer calls :func:`track` with
the matching :mod:`questboard.engine.events` variant.

For every active mission whose requirement the event can move:

* ``INCREMENT`` requirements get ``record_progress(+1)``.
* ``ABSOLUTE`` requirements are recounted from the activity tables over
  the mission's period window and written with ``set_progress_absolute``.
  The recount runs *after* the progress row is locked so concurrent
  recounts serialize and each sees every committed activity row.

Narrative quest steps beyond the first are only tracked once the previous
step is completed.

Tracking never raises into the producer: a failure on one mission is
logged with its traceback and the remaining missions still run.  The
producer's own write (the review, the check-in…) is never undone by a
gamification problem.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import distinct, func, select
from sqlalchemy.orm import Session

from questboard.config import QuestboardConfig
from questboard.constants import EntityType, QUALITY_REVIEW_MIN_LENGTH, XpReason
from questboard.database.engine import run_in_transaction
from questboard.database.models import (
    CheckIn,
    Establishment,
    Mission,
    MissionProgress,
    Review,
)
from questboard.engine.events import (
    CheckInPerformed,
    DomainEvent,
    EventKind,
    FollowCreated,
    PhotoUploaded,
    ReviewCreated,
    VoteCast,
)
from questboard.engine.periods import is_within, utcnow, window_start
from questboard.engine.requirements import (
    CheckInRequirement,
    PhotoRequirement,
    ProgressPolicy,
    Requirement,
    RequirementType,
    ReviewRequirement,
    ZoneCheckInRequirement,
    ZoneCoverageRequirement,
    parse_requirement,
    quest_position,
)
from questboard.exceptions import InvalidRequirementError
from questboard.services import badge_service
from questboard.services.progress_service import (
    ProgressOutcome,
    apply_absolute,
    apply_increment,
    ensure_progress_row,
    lock_progress_row,
)
from questboard.services.xp_service import grant_xp

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TrackingResult:
    """What one tracked event changed.  ``errors`` counts isolated failures."""

    completed: list[tuple[int, int]] = field(default_factory=list)  # (user_id, mission_id)
    badges_awarded: list[tuple[int, int]] = field(default_factory=list)  # (user_id, badge_id)
    bonus_xp: int = 0
    errors: int = 0


@dataclass(frozen=True, slots=True)
class _ActiveMission:
    id: int
    name: str
    reset_frequency: str
    start_date: datetime | None
    requirement: Requirement


# ---------------------------------------------------------------------------
# Mission selection
# ---------------------------------------------------------------------------
def _load_active_missions(
    engine: Engine, types: set[RequirementType], now: datetime
) -> list[_ActiveMission]:
    """Active, in-window missions whose requirement type is in *types*."""
    with Session(engine) as session:
        missions = session.scalars(
            select(Mission)
            .where(Mission.is_active.is_(True))
            .order_by(Mission.sort_order, Mission.id)
        ).all()

        selected: list[_ActiveMission] = []
        for mission in missions:
            if not is_within(now, mission.start_date, mission.end_date):
                continue
            try:
                req = parse_requirement(mission.requirements)
            except InvalidRequirementError:
                logger.warning(
                    "Skipping mission %d with invalid requirements", mission.id,
                    extra={"mission_id": mission.id},
                )
                continue
            if req.type in types:
                selected.append(_ActiveMission(
                    id=mission.id,
                    name=mission.name,
                    reset_frequency=mission.reset_frequency,
                    start_date=mission.start_date,
                    requirement=req,
                ))
        return selected


def _missions_for(
    engine: Engine, types: set[RequirementType], result: TrackingResult, *, now: datetime
) -> list[_ActiveMission]:
    """:func:`_load_active_missions`, counting a failed load as one error."""
    try:
        return _load_active_missions(engine, types, now)
    except Exception:
        result.errors += 1
        logger.exception(
            "Loading missions failed for %s", ", ".join(sorted(types)),
            extra={"requirement_types": sorted(types)},
        )
        return []


def _quest_step_open(engine: Engine, user_id: int, req: Requirement) -> bool:
    """Steps after the first wait for the previous step to be completed."""
    if req.quest_id is None or req.step is None or req.step <= 1:
        return True
    with Session(engine) as session:
        rows = session.execute(
            select(Mission.id, Mission.requirements).where(Mission.is_active.is_(True))
        ).all()
        previous_ids = [
            row.id for row in rows
            if quest_position(row.requirements) == (req.quest_id, req.step - 1)
        ]
        if not previous_ids:
            return True
        completed = session.scalar(
            select(MissionProgress.id).where(
                MissionProgress.user_id == user_id,
                MissionProgress.mission_id.in_(previous_ids),
                MissionProgress.completed.is_(True),
            ).limit(1)
        )
        return completed is not None


# ---------------------------------------------------------------------------
# Recounts for ABSOLUTE requirements
# ---------------------------------------------------------------------------
def _count_reviews(
    session: Session, user_id: int, req: ReviewRequirement, since: datetime | None
) -> int:
    query = select(func.count(Review.id)).where(Review.user_id == user_id)
    if since is not None:
        query = query.where(Review.created_at >= since)
    min_length = req.min_length
    if min_length is None and req.type == RequirementType.WRITE_QUALITY_REVIEW:
        min_length = QUALITY_REVIEW_MIN_LENGTH
    if min_length is not None:
        query = query.where(func.length(Review.content) >= min_length)
    if req.with_photos:
        query = query.where(Review.has_photos.is_(True))
    return session.scalar(query) or 0


def _verified_check_ins(user_id: int, since: datetime | None):
    query = (
        select(CheckIn)
        .join(Establishment, Establishment.id == CheckIn.establishment_id)
        .where(CheckIn.user_id == user_id, CheckIn.verified.is_(True))
    )
    if since is not None:
        query = query.where(CheckIn.created_at >= since)
    return query.subquery()


def _count_check_ins(
    session: Session, user_id: int, req: Requirement, since: datetime | None
) -> int:
    sub = _verified_check_ins(user_id, since)
    match req:
        case CheckInRequirement(unique=True):
            query = select(func.count(distinct(sub.c.establishment_id)))
        case ZoneCheckInRequirement(zone=zone):
            query = (
                select(func.count(sub.c.id))
                .join(Establishment, Establishment.id == sub.c.establishment_id)
                .where(Establishment.zone == zone)
            )
        case ZoneCoverageRequirement():
            query = (
                select(func.count(distinct(Establishment.zone)))
                .select_from(sub)
                .join(Establishment, Establishment.id == sub.c.establishment_id)
                .where(Establishment.zone.is_not(None))
            )
        case _:
            query = select(func.count(sub.c.id))
    return session.scalar(query) or 0


def recount(
    session: Session, user_id: int, req: Requirement, since: datetime | None
) -> int:
    """Current value of an ABSOLUTE requirement for *user_id*."""
    if isinstance(req, ReviewRequirement):
        return _count_reviews(session, user_id, req, since)
    return _count_check_ins(session, user_id, req, since)


def _recount_and_set(
    session: Session,
    user_id: int,
    mission: _ActiveMission,
    *,
    now: datetime,
    config: QuestboardConfig,
) -> ProgressOutcome | None:
    ensure_progress_row(session, user_id, mission.id)
    row = lock_progress_row(session, user_id, mission.id)
    if row.completed:
        return None
    since = window_start(
        mission.reset_frequency, now, config.tz, mission_start=mission.start_date
    )
    value = recount(session, user_id, mission.requirement, since)
    return apply_absolute(session, user_id, mission.id, value, now=now, tz=config.tz)


# ---------------------------------------------------------------------------
# Per-mission update with failure isolation
# ---------------------------------------------------------------------------
def _advance(
    engine: Engine,
    user_id: int,
    mission: _ActiveMission,
    result: TrackingResult,
    *,
    now: datetime,
    config: QuestboardConfig,
) -> None:
    try:
        if not _quest_step_open(engine, user_id, mission.requirement):
            return
        if mission.requirement.policy is ProgressPolicy.ABSOLUTE:
            outcome = run_in_transaction(
                engine, _recount_and_set, user_id, mission, now=now, config=config
            )
        else:
            outcome = run_in_transaction(
                engine, apply_increment, user_id, mission.id, 1, now=now, tz=config.tz
            )
    except Exception:
        result.errors += 1
        logger.exception(
            "Mission tracking failed for user %d mission %d", user_id, mission.id,
            extra={"user_id": user_id, "mission_id": mission.id},
        )
        return
    if outcome is not None and outcome.completed:
        result.completed.append((user_id, mission.id))


def _grant_bonus(
    engine: Engine,
    user_id: int,
    amount: int,
    reason: XpReason,
    entity: tuple[EntityType, int] | None,
    result: TrackingResult,
    *,
    now: datetime,
    config: QuestboardConfig,
) -> None:
    if amount <= 0:
        return
    try:
        run_in_transaction(engine, grant_xp, user_id, amount, reason, entity, now=now, tz=config.tz)
    except Exception:
        result.errors += 1
        logger.exception(
            "Bonus XP failed for user %d (%s)", user_id, reason,
            extra={"user_id": user_id, "reason": str(reason)},
        )
        return
    result.bonus_xp += amount


def _check_badges(
    engine: Engine, user_id: int, action: EventKind, result: TrackingResult, *, now: datetime
) -> None:
    try:
        awarded = badge_service.check_and_award(engine, user_id, action, now=now)
    except Exception:
        result.errors += 1
        logger.exception(
            "Badge check failed for user %d (%s)", user_id, action,
            extra={"user_id": user_id, "action": str(action)},
        )
        return
    result.badges_awarded.extend((user_id, badge_id) for badge_id in awarded)


# ---------------------------------------------------------------------------
# Event handlers
# ---------------------------------------------------------------------------
def on_review_created(
    engine: Engine, event: ReviewCreated, *, config: QuestboardConfig, now: datetime
) -> TrackingResult:
    result = TrackingResult()
    missions = _missions_for(
        engine,
        {RequirementType.WRITE_REVIEWS, RequirementType.WRITE_QUALITY_REVIEW},
        result,
        now=now,
    )
    for mission in missions:
        _advance(engine, event.user_id, mission, result, now=now, config=config)
    _grant_bonus(
        engine, event.user_id, config.review_bonus_xp, XpReason.REVIEW_CREATED,
        (EntityType.REVIEW, event.review_id), result, now=now, config=config,
    )
    _check_badges(engine, event.user_id, EventKind.REVIEW_CREATED, result, now=now)
    return result


def _establishment_zone(
    engine: Engine, establishment_id: int, result: TrackingResult
) -> str | None:
    """Zone of the checked-in venue; None (zone missions skipped) if the lookup fails."""
    try:
        with Session(engine) as session:
            return session.scalar(
                select(Establishment.zone).where(Establishment.id == establishment_id)
            )
    except Exception:
        result.errors += 1
        logger.exception(
            "Zone lookup failed for establishment %d", establishment_id,
            extra={"establishment_id": establishment_id},
        )
        return None


def on_check_in(
    engine: Engine, event: CheckInPerformed, *, config: QuestboardConfig, now: datetime
) -> TrackingResult:
    result = TrackingResult()
    if not event.verified:
        logger.debug(
            "Unverified check-in by user %d ignored for missions", event.user_id,
            extra={"user_id": event.user_id, "establishment_id": event.establishment_id},
        )
        return result

    zone = _establishment_zone(engine, event.establishment_id, result)
    missions = _missions_for(
        engine,
        {
            RequirementType.CHECK_IN,
            RequirementType.CHECK_IN_ZONE,
            RequirementType.CHECK_IN_ALL_ZONES,
            RequirementType.VISIT_ZONES,
        },
        result,
        now=now,
    )
    for mission in missions:
        req = mission.requirement
        if isinstance(req, ZoneCheckInRequirement) and req.zone != zone:
            continue
        _advance(engine, event.user_id, mission, result, now=now, config=config)

    entity = (EntityType.CHECK_IN, event.check_in_id) if event.check_in_id else None
    _grant_bonus(
        engine, event.user_id, config.check_in_bonus_xp, XpReason.CHECK_IN,
        entity, result, now=now, config=config,
    )
    _check_badges(engine, event.user_id, EventKind.CHECK_IN, result, now=now)
    return result


def on_vote_cast(
    engine: Engine, event: VoteCast, *, config: QuestboardConfig, now: datetime
) -> TrackingResult:
    result = TrackingResult()
    if not event.is_helpful:
        return result

    for mission in _missions_for(engine, {RequirementType.VOTE_HELPFUL}, result, now=now):
        _advance(engine, event.voter_id, mission, result, now=now, config=config)
    _check_badges(engine, event.voter_id, EventKind.VOTE_CAST, result, now=now)

    if event.review_author_id == event.voter_id:
        return result
    for mission in _missions_for(
        engine, {RequirementType.RECEIVE_HELPFUL_VOTES}, result, now=now
    ):
        _advance(engine, event.review_author_id, mission, result, now=now, config=config)
    _check_badges(
        engine, event.review_author_id, EventKind.HELPFUL_VOTE_RECEIVED, result, now=now
    )
    return result


def on_follow(
    engine: Engine, event: FollowCreated, *, config: QuestboardConfig, now: datetime
) -> TrackingResult:
    result = TrackingResult()
    if event.follower_id == event.following_id:
        return result

    for mission in _missions_for(engine, {RequirementType.FOLLOW_USERS}, result, now=now):
        _advance(engine, event.follower_id, mission, result, now=now, config=config)
    _check_badges(engine, event.follower_id, EventKind.FOLLOW_CREATED, result, now=now)

    for mission in _missions_for(engine, {RequirementType.GAIN_FOLLOWERS}, result, now=now):
        _advance(engine, event.following_id, mission, result, now=now, config=config)
    _check_badges(engine, event.following_id, EventKind.FOLLOWER_GAINED, result, now=now)
    return result


def on_photo_uploaded(
    engine: Engine, event: PhotoUploaded, *, config: QuestboardConfig, now: datetime
) -> TrackingResult:
    result = TrackingResult()
    for mission in _missions_for(engine, {RequirementType.UPLOAD_PHOTOS}, result, now=now):
        req = mission.requirement
        if isinstance(req, PhotoRequirement) and req.high_res and not event.is_high_res:
            continue
        _advance(engine, event.user_id, mission, result, now=now, config=config)
    _check_badges(engine, event.user_id, EventKind.PHOTO_UPLOADED, result, now=now)
    return result


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def track(
    engine: Engine,
    event: DomainEvent,
    *,
    config: QuestboardConfig | None = None,
    now: datetime | None = None,
) -> TrackingResult:
    """Route *event* to its handler.

    Failures while loading missions, advancing one of them, granting the
    flat bonus or checking badges are logged and counted in
    ``result.errors``; they never reach the caller.

    Raises
    ------
    TypeError
        If *event* is not one of the :data:`DomainEvent` variants.
    """
    config = config or QuestboardConfig()
    now = now or utcnow()

    match event:
        case ReviewCreated():
            result = on_review_created(engine, event, config=config, now=now)
        case CheckInPerformed():
            result = on_check_in(engine, event, config=config, now=now)
        case VoteCast():
            result = on_vote_cast(engine, event, config=config, now=now)
        case FollowCreated():
            result = on_follow(engine, event, config=config, now=now)
        case PhotoUploaded():
            result = on_photo_uploaded(engine, event, config=config, now=now)
        case _:
            raise TypeError(f"Unsupported event type: {type(event).__name__}")

    if result.completed or result.errors:
        logger.info(
            "Tracked %s: %d mission(s) completed, %d error(s)",
            event.kind, len(result.completed), result.errors,
            extra={"event": str(event.kind), "errors": result.errors},
        )
    return result
