"""
questboard.services.progress_service — Mission Progress Engine
===============================================================

The two entry points that mutate ``mission_progress``:

* :func:`record_progress` — ADD an increment (event-counted missions).
* :func:`set_progress_absolute` — SET a recounted value (missions whose
  progress is an externally computed count).

Both run "read → modify → compare → act" as one transaction per
(user, mission):

1. Validate inputs (unknown user / mission / negative value → raise).
2. Create the progress row if absent (SAVEPOINT; a concurrent creator's
   unique-violation is absorbed).
3. Lock the progress row ``FOR UPDATE``.  A second caller for the same
   pair blocks here until the first commits, so increments are additive
   and completion is observed exactly once.
4. If already completed → no-op, report ``already_completed``.
5. Apply the change; on first crossing of the target, grant the mission's
   XP (locks the user row — always *after* the progress row), grant its
   badge idempotently and open the next quest step.
6. Commit.  Rewards and the completed flag become visible together.

Transient lock conflicts are retried by
:func:`questboard.database.engine.run_in_transaction`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from questboard.constants import EntityType, XpReason
from questboard.database.engine import insert_if_absent, run_in_transaction
from questboard.database.models import (
    BadgeSource,
    Mission,
    MissionProgress,
    User,
    UserBadge,
)
from questboard.engine.periods import DEFAULT_TZ, utcnow
from questboard.engine.requirements import quest_position, required_count
from questboard.exceptions import (
    InvalidIncrementError,
    MissionNotFoundError,
    UserNotFoundError,
)
from questboard.services.xp_service import grant_badge_unlocks, grant_xp

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ProgressOutcome:
    """Result of one progress call.

    ``completed`` is True only for the call that crossed the target.
    ``already_completed`` marks the idempotent no-op on a finished mission.
    """

    completed: bool
    progress: int
    required: int
    already_completed: bool = False
    xp_awarded: int = 0
    badge_awarded: bool = False


# ---------------------------------------------------------------------------
# Row access
# ---------------------------------------------------------------------------
def _get_mission(session: Session, mission_id: int) -> Mission:
    mission = session.get(Mission, mission_id)
    if mission is None:
        raise MissionNotFoundError(mission_id)
    return mission


def _ensure_user(session: Session, user_id: int) -> None:
    exists = session.scalar(select(User.id).where(User.id == user_id))
    if exists is None:
        raise UserNotFoundError(user_id)


def ensure_progress_row(session: Session, user_id: int, mission_id: int) -> bool:
    """Create the (user, mission) progress row at 0 if missing.

    Returns True if this call created it.
    """
    exists = session.scalar(
        select(MissionProgress.id).where(
            MissionProgress.user_id == user_id,
            MissionProgress.mission_id == mission_id,
        )
    )
    if exists is not None:
        return False
    return insert_if_absent(
        session,
        MissionProgress(user_id=user_id, mission_id=mission_id, progress=0, completed=False),
    )


def lock_progress_row(session: Session, user_id: int, mission_id: int) -> MissionProgress:
    """Return the progress row under ``FOR UPDATE`` with fresh column values."""
    return session.scalars(
        select(MissionProgress)
        .where(
            MissionProgress.user_id == user_id,
            MissionProgress.mission_id == mission_id,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    ).one()


# ---------------------------------------------------------------------------
# Completion side effects
# ---------------------------------------------------------------------------
def grant_badge(
    session: Session,
    user_id: int,
    badge_id: int,
    *,
    source: BadgeSource = BadgeSource.MISSION,
    now: datetime | None = None,
) -> bool:
    """Insert a :class:`UserBadge`; False if the user already had it."""
    now = now or utcnow()
    granted = insert_if_absent(
        session,
        UserBadge(user_id=user_id, badge_id=badge_id, source=source.value, earned_at=now),
    )
    if granted:
        grant_badge_unlocks(session, user_id, badge_id, now=now)
        logger.info(
            "Badge %d granted to user %d (%s)", badge_id, user_id, source.value,
            extra={"user_id": user_id, "badge_id": badge_id, "source": source.value},
        )
    return granted


def open_next_quest_step(session: Session, user_id: int, mission: Mission) -> int | None:
    """Create the progress row for the step after *mission* in its quest.

    Returns the next step's mission id, or None when *mission* is not a
    quest step or was the last one.
    """
    quest_id, step = quest_position(mission.requirements)
    if quest_id is None:
        return None

    candidates = session.scalars(
        select(Mission).where(Mission.is_active.is_(True), Mission.type == mission.type)
    ).all()
    for candidate in candidates:
        if quest_position(candidate.requirements) == (quest_id, step + 1):
            ensure_progress_row(session, user_id, candidate.id)
            logger.info(
                "Quest %r step %d opened for user %d", quest_id, step + 1, user_id,
                extra={"user_id": user_id, "quest_id": quest_id, "step": step + 1},
            )
            return candidate.id
    return None


def _complete(
    session: Session,
    row: MissionProgress,
    mission: Mission,
    *,
    now: datetime,
    tz: tzinfo,
) -> tuple[int, bool]:
    """Flip *row* to completed and apply the mission's rewards.

    Returns ``(xp_awarded, badge_newly_granted)``.
    """
    row.completed = True
    row.completed_at = now
    row.updated_at = now

    grant_xp(
        session,
        row.user_id,
        mission.xp_reward,
        XpReason.MISSION_COMPLETED,
        (EntityType.MISSION, mission.id),
        metadata={"mission_name": mission.name},
        now=now,
        tz=tz,
    )

    badge_granted = False
    if mission.badge_id is not None:
        badge_granted = grant_badge(
            session, row.user_id, mission.badge_id, source=BadgeSource.MISSION, now=now
        )

    open_next_quest_step(session, row.user_id, mission)

    logger.info(
        "Mission %d (%s) completed by user %d",
        mission.id, mission.name, row.user_id,
        extra={"user_id": row.user_id, "mission_id": mission.id, "xp": mission.xp_reward},
    )
    return mission.xp_reward, badge_granted


def _apply(
    session: Session,
    user_id: int,
    mission_id: int,
    value: int,
    *,
    absolute: bool,
    now: datetime | None,
    tz: tzinfo,
) -> ProgressOutcome:
    """Shared body of the two entry points, run inside one transaction."""
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidIncrementError(
            "Progress values must be non-negative integers",
            {"user_id": user_id, "mission_id": mission_id, "value": value},
        )

    mission = _get_mission(session, mission_id)
    _ensure_user(session, user_id)
    required = required_count(mission.requirements)
    now = now or utcnow()

    ensure_progress_row(session, user_id, mission_id)
    row = lock_progress_row(session, user_id, mission_id)

    if row.completed:
        return ProgressOutcome(
            completed=False,
            progress=row.progress,
            required=required,
            already_completed=True,
        )

    row.progress = value if absolute else row.progress + value
    row.updated_at = now

    if row.progress < required:
        session.flush()
        return ProgressOutcome(completed=False, progress=row.progress, required=required)

    xp_awarded, badge_granted = _complete(session, row, mission, now=now, tz=tz)
    session.flush()
    return ProgressOutcome(
        completed=True,
        progress=row.progress,
        required=required,
        xp_awarded=xp_awarded,
        badge_awarded=badge_granted,
    )


# ---------------------------------------------------------------------------
# Session-level entry points (compose into a caller's transaction)
# ---------------------------------------------------------------------------
def apply_increment(
    session: Session,
    user_id: int,
    mission_id: int,
    increment: int,
    *,
    now: datetime | None = None,
    tz: tzinfo = DEFAULT_TZ,
) -> ProgressOutcome:
    return _apply(session, user_id, mission_id, increment, absolute=False, now=now, tz=tz)


def apply_absolute(
    session: Session,
    user_id: int,
    mission_id: int,
    new_value: int,
    *,
    now: datetime | None = None,
    tz: tzinfo = DEFAULT_TZ,
) -> ProgressOutcome:
    return _apply(session, user_id, mission_id, new_value, absolute=True, now=now, tz=tz)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def record_progress(
    engine: Engine,
    user_id: int,
    mission_id: int,
    increment: int,
    *,
    now: datetime | None = None,
    tz: tzinfo = DEFAULT_TZ,
) -> ProgressOutcome:
    """Add *increment* to the user's progress on *mission_id*.

    Idempotent against duplicate delivery once the mission is completed:
    further calls return ``already_completed=True`` and change nothing.

    Raises
    ------
    InvalidIncrementError
        If *increment* is negative.
    UserNotFoundError, MissionNotFoundError
        If either id is unknown.
    """
    return run_in_transaction(
        engine, apply_increment, user_id, mission_id, increment, now=now, tz=tz
    )


def set_progress_absolute(
    engine: Engine,
    user_id: int,
    mission_id: int,
    new_value: int,
    *,
    now: datetime | None = None,
    tz: tzinfo = DEFAULT_TZ,
) -> ProgressOutcome:
    """Overwrite the user's progress on *mission_id* with *new_value*.

    Last writer wins on the stored value, but completion is sticky: once
    reached, later calls (including smaller values) are no-ops.
    """
    return run_in_transaction(
        engine, apply_absolute, user_id, mission_id, new_value, now=now, tz=tz
    )
