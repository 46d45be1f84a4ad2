"""
questboard.services.xp_service — XP Ledger, Levels, Streaks & Unlocks
======================================================================

:func:`grant_xp` is the only writer of ``xp_transactions`` and of the XP
aggregates on ``users``.  One call:

1. Locks the user row (``SELECT … FOR UPDATE``).
2. Appends an :class:`XpTransaction`.
3. Adds the amount to ``total_xp`` and ``monthly_xp``.
4. Recomputes the level from :data:`questboard.constants.LEVEL_THRESHOLDS`.
5. Advances the activity streak in the operator timezone.
6. Grants any level/XP feature unlocks that just became reachable.

It works on the caller's session so a mission completion can grant its
reward in the same transaction that flips ``completed``.  It is **not**
idempotent: callers guarantee one call per rewardable event.

Invariant: ``SUM(xp_transactions.xp_amount) == users.total_xp`` per user.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from questboard.constants import XP_HISTORY_PERIODS, EntityType, level_for
from questboard.database.engine import insert_if_absent, run_in_transaction
from questboard.database.models import (
    FeatureUnlock,
    UnlockType,
    User,
    UserUnlock,
    XpTransaction,
)
from questboard.engine.periods import DEFAULT_TZ, local_today, next_streak, utcnow
from questboard.exceptions import InvalidAmountError, InvalidPeriodError, UserNotFoundError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

RelatedEntity = tuple[EntityType | str, int]


@dataclass(frozen=True, slots=True)
class XpGrant:
    """What one :func:`grant_xp` call changed."""

    transaction_id: int
    amount: int
    total_xp: int
    monthly_xp: int
    old_level: int
    new_level: int
    current_streak: int
    longest_streak: int
    unlocks_granted: tuple[int, ...] = ()

    @property
    def leveled_up(self) -> bool:
        return self.new_level > self.old_level


def lock_user(session: Session, user_id: int) -> User:
    """Load *user_id* with a row lock, refreshing any stale identity-map copy."""
    user = session.get(User, user_id, with_for_update=True, populate_existing=True)
    if user is None:
        raise UserNotFoundError(user_id)
    return user


def grant_xp(
    session: Session,
    user_id: int,
    amount: int,
    reason: str,
    related_entity: RelatedEntity | None = None,
    *,
    metadata: dict[str, Any] | None = None,
    now: datetime | None = None,
    tz: tzinfo = DEFAULT_TZ,
) -> XpGrant:
    """Append a ledger entry and apply it to the user's aggregates.

    Negative amounts are revocations: they are allowed as long as the
    total stays non-negative, and they do not count as streak activity.
    A revocation therefore leaves ``current_streak``, ``longest_streak``
    and ``last_activity_date`` exactly as they were; only grants of zero
    or more XP move the last-activity date to today.

    Raises
    ------
    UserNotFoundError
        If the user does not exist.
    InvalidAmountError
        If *amount* is not an int or would drive ``total_xp`` below zero.
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError("XP amount must be an integer", {"amount": amount})

    now = now or utcnow()
    user = lock_user(session, user_id)

    new_total = user.total_xp + amount
    if new_total < 0:
        raise InvalidAmountError(
            "XP grant would make total XP negative",
            {"user_id": user_id, "total_xp": user.total_xp, "amount": amount},
        )

    entity_type, entity_id = related_entity if related_entity else (None, None)
    txn = XpTransaction(
        user_id=user_id,
        xp_amount=amount,
        reason=str(reason),
        related_entity_type=str(entity_type) if entity_type is not None else None,
        related_entity_id=entity_id,
        metadata_=metadata,
        created_at=now,
    )
    session.add(txn)

    old_level = user.level
    user.total_xp = new_total
    user.monthly_xp = max(0, user.monthly_xp + amount)
    user.level = level_for(new_total)

    if amount >= 0:
        streak = next_streak(
            user.current_streak,
            user.longest_streak,
            user.last_activity_date,
            local_today(now, tz),
        )
        user.current_streak = streak.current
        user.longest_streak = streak.longest
        user.last_activity_date = streak.last_activity_date

    unlocked: tuple[int, ...] = ()
    if amount > 0:
        unlocked = grant_threshold_unlocks(session, user, now=now)

    session.flush()

    if user.level > old_level:
        logger.info(
            "User %d leveled up %d → %d",
            user_id, old_level, user.level,
            extra={"user_id": user_id, "old_level": old_level, "new_level": user.level},
        )

    return XpGrant(
        transaction_id=txn.id,
        amount=amount,
        total_xp=user.total_xp,
        monthly_xp=user.monthly_xp,
        old_level=old_level,
        new_level=user.level,
        current_streak=user.current_streak,
        longest_streak=user.longest_streak,
        unlocks_granted=unlocked,
    )


def award_xp(
    engine: Engine,
    user_id: int,
    amount: int,
    reason: str,
    related_entity: RelatedEntity | None = None,
    *,
    metadata: dict[str, Any] | None = None,
    now: datetime | None = None,
    tz: tzinfo = DEFAULT_TZ,
) -> XpGrant:
    """Engine-level :func:`grant_xp` in its own (retried) transaction.

    For flat, non-mission rewards such as the per-review bonus.
    """
    return run_in_transaction(
        engine,
        grant_xp,
        user_id,
        amount,
        reason,
        related_entity,
        metadata=metadata,
        now=now,
        tz=tz,
    )


# ---------------------------------------------------------------------------
# Ledger read
# ---------------------------------------------------------------------------
def get_xp_history(
    session: Session,
    user_id: int,
    *,
    period_days: int = 30,
    page: int = 1,
    page_size: int = 25,
    now: datetime | None = None,
) -> dict:
    """One user's ledger over the last *period_days*, newest first.

    ``total_xp_gained`` and ``breakdown`` (net XP per reason) cover the
    whole window; ``entries`` is one page of it.

    Raises
    ------
    UserNotFoundError
        If the user does not exist.
    InvalidPeriodError
        If *period_days* is not one of :data:`XP_HISTORY_PERIODS`.
    """
    if period_days not in XP_HISTORY_PERIODS:
        raise InvalidPeriodError(
            f"Period must be one of {', '.join(map(str, XP_HISTORY_PERIODS))} days",
            {"period": period_days, "allowed": list(XP_HISTORY_PERIODS)},
        )
    if session.get(User, user_id) is None:
        raise UserNotFoundError(user_id)

    since = (now or utcnow()) - timedelta(days=period_days)
    window = (XpTransaction.user_id == user_id, XpTransaction.created_at >= since)

    breakdown = {
        reason: int(amount)
        for reason, amount in session.execute(
            select(XpTransaction.reason, func.sum(XpTransaction.xp_amount))
            .where(*window)
            .group_by(XpTransaction.reason)
            .order_by(XpTransaction.reason)
        )
    }
    total = session.scalar(select(func.count(XpTransaction.id)).where(*window)) or 0
    rows = session.scalars(
        select(XpTransaction)
        .where(*window)
        .order_by(XpTransaction.created_at.desc(), XpTransaction.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).all()
    return {
        "user_id": user_id,
        "period": period_days,
        "total_xp_gained": sum(breakdown.values()),
        "breakdown": breakdown,
        "total": total,
        "page": page,
        "page_size": page_size,
        "entries": [
            {
                "id": t.id,
                "xp_amount": t.xp_amount,
                "reason": t.reason,
                "related_entity_type": t.related_entity_type,
                "related_entity_id": t.related_entity_id,
                "metadata": t.metadata_,
                "created_at": t.created_at.isoformat() if t.created_at else None,
            }
            for t in rows
        ],
    }


# ---------------------------------------------------------------------------
# Feature unlocks
# ---------------------------------------------------------------------------
def grant_threshold_unlocks(
    session: Session, user: User, *, now: datetime | None = None
) -> tuple[int, ...]:
    """Grant every active level/XP unlock *user* now qualifies for.

    Returns the ids newly granted.  Already-owned unlocks are skipped.
    """
    owned = set(session.scalars(
        select(UserUnlock.unlock_id).where(UserUnlock.user_id == user.id)
    ))
    reachable = session.scalars(
        select(FeatureUnlock).where(
            FeatureUnlock.is_active.is_(True),
            or_(
                (FeatureUnlock.unlock_type == UnlockType.LEVEL.value)
                & (FeatureUnlock.unlock_value <= user.level),
                (FeatureUnlock.unlock_type == UnlockType.XP.value)
                & (FeatureUnlock.unlock_value <= user.total_xp),
            ),
        )
    ).all()

    granted: list[int] = []
    for unlock in reachable:
        if unlock.id in owned:
            continue
        if insert_if_absent(
            session,
            UserUnlock(user_id=user.id, unlock_id=unlock.id, unlocked_at=now or utcnow()),
        ):
            granted.append(unlock.id)
            logger.info(
                "User %d unlocked %r", user.id, unlock.name,
                extra={"user_id": user.id, "unlock": unlock.name},
            )
    return tuple(granted)


def grant_badge_unlocks(
    session: Session, user_id: int, badge_id: int, *, now: datetime | None = None
) -> tuple[int, ...]:
    """Grant unlocks gated on earning *badge_id*."""
    unlocks = session.scalars(
        select(FeatureUnlock).where(
            FeatureUnlock.is_active.is_(True),
            FeatureUnlock.unlock_type == UnlockType.BADGE.value,
            FeatureUnlock.unlock_value == badge_id,
        )
    ).all()
    granted = [
        unlock.id
        for unlock in unlocks
        if insert_if_absent(
            session,
            UserUnlock(user_id=user_id, unlock_id=unlock.id, unlocked_at=now or utcnow()),
        )
    ]
    return tuple(granted)
