"""
questboard.engine.badges — Badge Rule Registry
================================================

Handler-registry evaluation of badge unlock requirements.  Each
``badges.requirement_type`` maps to a pure handler that receives a
:class:`BadgeStats` snapshot and the badge's ``requirement_value``.

Badges with an unknown requirement type never auto-award (they can still
be granted by a mission or an admin).

This module is pure calculation — no database I/O.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from questboard.engine.events import EventKind

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Stats snapshot — passed to every rule handler
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class BadgeStats:
    """Lifetime counters for one user, gathered by the badge service.

    Parameters
    ----------
    review_count : Reviews written.
    quality_reviews : Reviews with 100+ characters.
    detailed_reviews : Reviews with 200+ characters.
    complete_reviews : Reviews with photos and 100+ characters.
    check_in_count : Verified check-ins.
    unique_establishments : Distinct establishments with a verified check-in.
    unique_zones : Distinct zones with a verified check-in.
    photo_count : Approved photo uploads.
    high_res_photos : Approved uploads at or above the high-res pixel floor.
    follower_count / following_count : Follow graph degree.
    helpful_votes_received / helpful_votes_given : Helpful review votes.
    level / longest_streak / account_age_days : From the user row.
    """

    review_count: int = 0
    quality_reviews: int = 0
    detailed_reviews: int = 0
    complete_reviews: int = 0
    check_in_count: int = 0
    unique_establishments: int = 0
    unique_zones: int = 0
    photo_count: int = 0
    high_res_photos: int = 0
    follower_count: int = 0
    following_count: int = 0
    helpful_votes_received: int = 0
    helpful_votes_given: int = 0
    level: int = 1
    longest_streak: int = 0
    account_age_days: int = 0


def _threshold(attr: str) -> Callable[[BadgeStats, int], bool]:
    def _check(stats: BadgeStats, value: int) -> bool:
        return getattr(stats, attr) >= value

    _check.__name__ = f"_check_{attr}"
    return _check


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------
BADGE_RULES: dict[str, Callable[[BadgeStats, int], bool]] = {
    "review_count": _threshold("review_count"),
    "quality_review_count": _threshold("quality_reviews"),
    "detailed_reviews": _threshold("detailed_reviews"),
    "complete_reviews": _threshold("complete_reviews"),
    "check_in_count": _threshold("check_in_count"),
    "unique_establishments_visited": _threshold("unique_establishments"),
    "unique_zones_visited": _threshold("unique_zones"),
    "photo_count": _threshold("photo_count"),
    "high_res_photos": _threshold("high_res_photos"),
    "follower_count": _threshold("follower_count"),
    "following_count": _threshold("following_count"),
    "helpful_votes_received": _threshold("helpful_votes_received"),
    "helpful_votes_given": _threshold("helpful_votes_given"),
    "level_reached": _threshold("level"),
    "streak_days": _threshold("longest_streak"),
    "account_age_days": _threshold("account_age_days"),
}

# Which requirement types are worth re-checking after each action
ACTION_REQUIREMENTS: dict[str, frozenset[str]] = {
    EventKind.REVIEW_CREATED: frozenset({
        "review_count", "quality_review_count", "detailed_reviews", "complete_reviews",
        "level_reached", "streak_days",
    }),
    EventKind.CHECK_IN: frozenset({
        "check_in_count", "unique_establishments_visited", "unique_zones_visited",
        "level_reached", "streak_days",
    }),
    EventKind.PHOTO_UPLOADED: frozenset({"photo_count", "high_res_photos"}),
    EventKind.FOLLOW_CREATED: frozenset({"following_count"}),
    EventKind.FOLLOWER_GAINED: frozenset({"follower_count"}),
    EventKind.VOTE_CAST: frozenset({"helpful_votes_given"}),
    EventKind.HELPFUL_VOTE_RECEIVED: frozenset({"helpful_votes_received"}),
}


@dataclass(frozen=True, slots=True)
class BadgeCandidate:
    """The fields of a badge definition the rules need."""

    id: int
    requirement_type: str | None
    requirement_value: int | None


def evaluate_badges(
    candidates: Iterable[BadgeCandidate],
    stats: BadgeStats,
    earned_ids: set[int],
    *,
    action: str | None = None,
) -> list[int]:
    """Return ids of badges newly satisfied by *stats*.

    ``action`` narrows the check to the requirement types that action can
    move; ``None`` checks every rule (used by full re-syncs).
    """
    relevant = ACTION_REQUIREMENTS.get(action, frozenset()) if action is not None else None
    newly_earned: list[int] = []
    for badge in candidates:
        if badge.id in earned_ids:
            continue
        if badge.requirement_type is None or badge.requirement_value is None:
            continue
        if relevant is not None and badge.requirement_type not in relevant:
            continue
        handler = BADGE_RULES.get(badge.requirement_type)
        if handler is None:
            logger.debug(
                "No rule for badge requirement %r (badge %d)",
                badge.requirement_type, badge.id,
            )
            continue
        if handler(stats, badge.requirement_value):
            newly_earned.append(badge.id)
    return newly_earned
