"""
questboard.services.badge_service — Automatic Badge Awards
===========================================================

Gathers a :class:`~questboard.engine.badges.BadgeStats` snapshot from the
activity tables and hands it to the pure rule registry in
:mod:`questboard.engine.badges`.  Newly satisfied badges are inserted with
``source="auto"`` through the same idempotent path mission badges use, so
a badge earned twice by two racing checks is stored once.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import and_, distinct, func, select
from sqlalchemy.orm import Session

from questboard.constants import HIGH_RES_MIN_PIXELS, QUALITY_REVIEW_MIN_LENGTH
from questboard.database.engine import run_in_transaction
from questboard.database.models import (
    Badge,
    BadgeSource,
    CheckIn,
    Establishment,
    PhotoStatus,
    PhotoUpload,
    Review,
    ReviewVote,
    User,
    UserBadge,
    UserFollow,
    VoteType,
)
from questboard.engine.badges import BadgeCandidate, BadgeStats, evaluate_badges
from questboard.engine.periods import as_utc, utcnow
from questboard.exceptions import UserNotFoundError
from questboard.services.progress_service import grant_badge

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

DETAILED_REVIEW_MIN_LENGTH = 200


def _count(session: Session, query) -> int:
    return session.scalar(query) or 0


def gather_stats(session: Session, user_id: int, *, now: datetime | None = None) -> BadgeStats:
    """Lifetime counters for *user_id*.

    Raises
    ------
    UserNotFoundError
        If the user does not exist.
    """
    user = session.get(User, user_id)
    if user is None:
        raise UserNotFoundError(user_id)
    now = now or utcnow()

    reviews = select(func.count(Review.id)).where(Review.user_id == user_id)
    verified = and_(CheckIn.user_id == user_id, CheckIn.verified.is_(True))
    approved = and_(
        PhotoUpload.user_id == user_id,
        PhotoUpload.status == PhotoStatus.APPROVED.value,
    )
    helpful = ReviewVote.vote_type == VoteType.HELPFUL.value

    age_days = 0
    if user.created_at is not None:
        age_days = max(0, (as_utc(now) - as_utc(user.created_at)).days)

    return BadgeStats(
        review_count=_count(session, reviews),
        quality_reviews=_count(
            session, reviews.where(func.length(Review.content) >= QUALITY_REVIEW_MIN_LENGTH)
        ),
        detailed_reviews=_count(
            session, reviews.where(func.length(Review.content) >= DETAILED_REVIEW_MIN_LENGTH)
        ),
        complete_reviews=_count(
            session,
            reviews.where(
                Review.has_photos.is_(True),
                func.length(Review.content) >= QUALITY_REVIEW_MIN_LENGTH,
            ),
        ),
        check_in_count=_count(session, select(func.count(CheckIn.id)).where(verified)),
        unique_establishments=_count(
            session, select(func.count(distinct(CheckIn.establishment_id))).where(verified)
        ),
        unique_zones=_count(
            session,
            select(func.count(distinct(Establishment.zone)))
            .select_from(CheckIn)
            .join(Establishment, Establishment.id == CheckIn.establishment_id)
            .where(verified, Establishment.zone.is_not(None)),
        ),
        photo_count=_count(session, select(func.count(PhotoUpload.id)).where(approved)),
        high_res_photos=_count(
            session,
            select(func.count(PhotoUpload.id)).where(
                approved,
                PhotoUpload.width * PhotoUpload.height >= HIGH_RES_MIN_PIXELS,
            ),
        ),
        follower_count=_count(
            session,
            select(func.count()).select_from(UserFollow).where(UserFollow.following_id == user_id),
        ),
        following_count=_count(
            session,
            select(func.count()).select_from(UserFollow).where(UserFollow.follower_id == user_id),
        ),
        helpful_votes_received=_count(
            session,
            select(func.count(ReviewVote.id))
            .join(Review, Review.id == ReviewVote.review_id)
            .where(Review.user_id == user_id, ReviewVote.voter_id != user_id, helpful),
        ),
        helpful_votes_given=_count(
            session,
            select(func.count(ReviewVote.id)).where(ReviewVote.voter_id == user_id, helpful),
        ),
        level=user.level,
        longest_streak=user.longest_streak,
        account_age_days=age_days,
    )


def award_earned_badges(
    session: Session,
    user_id: int,
    action: str | None = None,
    *,
    now: datetime | None = None,
) -> list[int]:
    """Evaluate and grant badges inside the caller's transaction.

    Returns the ids actually inserted by this call.
    """
    now = now or utcnow()
    stats = gather_stats(session, user_id, now=now)
    candidates = [
        BadgeCandidate(id=row.id, requirement_type=row.requirement_type,
                       requirement_value=row.requirement_value)
        for row in session.execute(
            select(Badge.id, Badge.requirement_type, Badge.requirement_value)
            .where(Badge.is_active.is_(True), Badge.requirement_type.is_not(None))
            .order_by(Badge.sort_order, Badge.id)
        )
    ]
    earned = set(session.scalars(
        select(UserBadge.badge_id).where(UserBadge.user_id == user_id)
    ))

    granted: list[int] = []
    for badge_id in evaluate_badges(candidates, stats, earned, action=action):
        if grant_badge(session, user_id, badge_id, source=BadgeSource.AUTO, now=now):
            granted.append(badge_id)
    return granted


def check_and_award(
    engine: Engine,
    user_id: int,
    action: str | None = None,
    *,
    now: datetime | None = None,
) -> list[int]:
    """Engine-level :func:`award_earned_badges` in its own transaction.

    ``action=None`` re-checks every rule; pass an
    :class:`~questboard.engine.events.EventKind` to limit the check to the
    rules that action can move.
    """
    granted = run_in_transaction(engine, award_earned_badges, user_id, action, now=now)
    if granted:
        logger.info(
            "Auto-awarded %d badge(s) to user %d", len(granted), user_id,
            extra={"user_id": user_id, "badge_ids": granted},
        )
    return granted
