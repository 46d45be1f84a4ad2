"""
questboard.engine.events — Domain Events from Event Producers
==============================================================

The review, check-in, vote, follow and photo-upload handlers emit one of
these after their own write commits.  :mod:`questboard.services.tracking_service`
pattern-matches on the variant to decide which missions move.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from questboard.constants import HIGH_RES_MIN_PIXELS
from questboard.database.models import VoteType

__all__ = [
    "EventKind",
    "ReviewCreated",
    "CheckInPerformed",
    "VoteCast",
    "FollowCreated",
    "PhotoUploaded",
    "DomainEvent",
]


class EventKind(enum.StrEnum):
    """Stable names used for logging and badge re-check routing."""
    REVIEW_CREATED = "review_created"
    CHECK_IN = "check_in"
    VOTE_CAST = "vote_cast"
    HELPFUL_VOTE_RECEIVED = "helpful_vote_received"
    FOLLOW_CREATED = "follow_created"
    FOLLOWER_GAINED = "follower_gained"
    PHOTO_UPLOADED = "photo_uploaded"


@dataclass(frozen=True, slots=True)
class ReviewCreated:
    user_id: int
    review_id: int
    content_length: int = 0
    has_photos: bool = False

    kind = EventKind.REVIEW_CREATED


@dataclass(frozen=True, slots=True)
class CheckInPerformed:
    """``verified`` comes from :func:`questboard.engine.geo.verify_check_in`."""

    user_id: int
    establishment_id: int
    check_in_id: int | None = None
    verified: bool = False

    kind = EventKind.CHECK_IN


@dataclass(frozen=True, slots=True)
class VoteCast:
    voter_id: int
    review_id: int
    review_author_id: int
    vote_type: VoteType = VoteType.HELPFUL

    kind = EventKind.VOTE_CAST

    @property
    def is_helpful(self) -> bool:
        return self.vote_type == VoteType.HELPFUL


@dataclass(frozen=True, slots=True)
class FollowCreated:
    follower_id: int
    following_id: int

    kind = EventKind.FOLLOW_CREATED


@dataclass(frozen=True, slots=True)
class PhotoUploaded:
    user_id: int
    photo_id: int | None = None
    width: int | None = None
    height: int | None = None

    kind = EventKind.PHOTO_UPLOADED

    @property
    def is_high_res(self) -> bool:
        if not self.width or not self.height:
            return False
        return self.width * self.height >= HIGH_RES_MIN_PIXELS


DomainEvent = ReviewCreated | CheckInPerformed | VoteCast | FollowCreated | PhotoUploaded
