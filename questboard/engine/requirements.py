"""
questboard.engine.requirements — Mission Requirement Variants
==============================================================

A mission's ``requirements`` JSONB is parsed into one of a closed set of
frozen dataclasses.  Parsing happens when a mission is *defined* (admin
create/update, seeding) so a malformed requirement is rejected up front
instead of being skipped silently during event tracking.

Each variant declares its :class:`ProgressPolicy`:

* ``ABSOLUTE`` — progress is a recount of stored rows over the mission's
  period window (distinct establishments, zone coverage, reviews filtered
  by length/photos).  Written with ``set_progress_absolute`` so duplicate
  or out-of-order events can never over-count.
* ``INCREMENT`` — progress counts one occurrence per event (votes,
  follows, uploads, plain check-ins).  Written with ``record_progress``.

This module is pure — no database I/O.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, fields
from typing import Any

from questboard.exceptions import InvalidRequirementError

__all__ = [
    "RequirementType",
    "ProgressPolicy",
    "Requirement",
    "ReviewRequirement",
    "CheckInRequirement",
    "ZoneCheckInRequirement",
    "ZoneCoverageRequirement",
    "SocialRequirement",
    "PhotoRequirement",
    "parse_requirement",
]


class RequirementType(enum.StrEnum):
    """The ``type`` tag stored in ``missions.requirements``."""
    WRITE_REVIEWS = "write_reviews"
    WRITE_QUALITY_REVIEW = "write_quality_review"
    CHECK_IN = "check_in"
    CHECK_IN_ZONE = "check_in_zone"
    CHECK_IN_ALL_ZONES = "check_in_all_zones"
    VISIT_ZONES = "visit_zones"
    VOTE_HELPFUL = "vote_helpful"
    RECEIVE_HELPFUL_VOTES = "receive_helpful_votes"
    FOLLOW_USERS = "follow_users"
    GAIN_FOLLOWERS = "gain_followers"
    UPLOAD_PHOTOS = "upload_photos"


class ProgressPolicy(enum.StrEnum):
    INCREMENT = "increment"
    ABSOLUTE = "absolute"


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Requirement:
    """Fields shared by every variant.

    ``quest_id``/``step`` place a narrative mission in a chain; ``event``
    tags a seasonal mission.
    """

    type: RequirementType
    count: int = 1
    quest_id: str | None = None
    step: int | None = None
    event: str | None = None

    @property
    def policy(self) -> ProgressPolicy:
        return ProgressPolicy.ABSOLUTE

    @property
    def is_quest_step(self) -> bool:
        return self.quest_id is not None

    def to_dict(self) -> dict[str, Any]:
        """Serialize back to the JSONB layout, omitting defaulted fields."""
        out: dict[str, Any] = {"type": self.type.value, "count": self.count}
        for f in fields(self):
            if f.name in ("type", "count"):
                continue
            value = getattr(self, f.name)
            if value != f.default:
                out[f.name] = value
        return out


@dataclass(frozen=True, slots=True)
class ReviewRequirement(Requirement):
    """Reviews written in the window, optionally filtered."""

    min_length: int | None = None
    with_photos: bool = False


@dataclass(frozen=True, slots=True)
class CheckInRequirement(Requirement):
    """Verified check-ins; ``unique`` counts distinct establishments."""

    unique: bool = False

    @property
    def policy(self) -> ProgressPolicy:
        return ProgressPolicy.ABSOLUTE if self.unique else ProgressPolicy.INCREMENT


@dataclass(frozen=True, slots=True)
class ZoneCheckInRequirement(Requirement):
    """Verified check-ins inside one named zone."""

    zone: str = ""


@dataclass(frozen=True, slots=True)
class ZoneCoverageRequirement(Requirement):
    """Distinct zones with at least one verified check-in."""


@dataclass(frozen=True, slots=True)
class SocialRequirement(Requirement):
    """One step per vote / follow event."""

    @property
    def policy(self) -> ProgressPolicy:
        return ProgressPolicy.INCREMENT


@dataclass(frozen=True, slots=True)
class PhotoRequirement(Requirement):
    """One step per uploaded photo; ``high_res`` only counts large photos."""

    high_res: bool = False

    @property
    def policy(self) -> ProgressPolicy:
        return ProgressPolicy.INCREMENT


_VARIANTS: dict[RequirementType, type[Requirement]] = {
    RequirementType.WRITE_REVIEWS: ReviewRequirement,
    RequirementType.WRITE_QUALITY_REVIEW: ReviewRequirement,
    RequirementType.CHECK_IN: CheckInRequirement,
    RequirementType.CHECK_IN_ZONE: ZoneCheckInRequirement,
    RequirementType.CHECK_IN_ALL_ZONES: ZoneCoverageRequirement,
    RequirementType.VISIT_ZONES: ZoneCoverageRequirement,
    RequirementType.VOTE_HELPFUL: SocialRequirement,
    RequirementType.RECEIVE_HELPFUL_VOTES: SocialRequirement,
    RequirementType.FOLLOW_USERS: SocialRequirement,
    RequirementType.GAIN_FOLLOWERS: SocialRequirement,
    RequirementType.UPLOAD_PHOTOS: PhotoRequirement,
}

# Legacy spellings accepted on input, normalized on output
_ALIASES: dict[str, str] = {"with_photo": "with_photos"}

# Accepted for compatibility but carried by quest_id/step
_IGNORED_KEYS: frozenset[str] = frozenset({"prerequisite"})


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------
def _int_field(raw: dict, key: str, *, minimum: int) -> int | None:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRequirementError(
            f"'{key}' must be an integer", {"key": key, "value": value}
        )
    if value < minimum:
        raise InvalidRequirementError(
            f"'{key}' must be >= {minimum}", {"key": key, "value": value}
        )
    return value


def parse_requirement(raw: dict[str, Any]) -> Requirement:
    """Validate a requirements mapping and return its variant.

    Raises
    ------
    InvalidRequirementError
        Unknown type, unknown keys for the variant, non-positive count,
        half-specified quest step, or a zone requirement without a zone.
    """
    if not isinstance(raw, dict):
        raise InvalidRequirementError("Requirements must be a JSON object")

    data = {_ALIASES.get(k, k): v for k, v in raw.items() if k not in _IGNORED_KEYS}

    try:
        req_type = RequirementType(data.pop("type", None))
    except ValueError:
        raise InvalidRequirementError(
            "Unknown requirement type", {"type": raw.get("type")}
        ) from None

    variant = _VARIANTS[req_type]
    allowed = {f.name for f in fields(variant)} - {"type"}
    # visit_zones is always distinct; the flag is tolerated on input
    if variant is ZoneCoverageRequirement:
        data.pop("unique", None)
    unknown = set(data) - allowed
    if unknown:
        raise InvalidRequirementError(
            f"Unsupported keys for {req_type.value}",
            {"type": req_type.value, "keys": sorted(unknown)},
        )

    data["count"] = _int_field(data, "count", minimum=1) or 1
    step = _int_field(data, "step", minimum=1)
    if "min_length" in data:
        data["min_length"] = _int_field(data, "min_length", minimum=1)

    quest_id = data.get("quest_id")
    if (quest_id is None) != (step is None):
        raise InvalidRequirementError(
            "quest_id and step must be given together",
            {"quest_id": quest_id, "step": step},
        )
    if quest_id is not None and not isinstance(quest_id, str):
        raise InvalidRequirementError("quest_id must be a string", {"quest_id": quest_id})

    for flag in ("unique", "with_photos", "high_res"):
        if flag in data and not isinstance(data[flag], bool):
            raise InvalidRequirementError(f"'{flag}' must be a boolean", {flag: data[flag]})

    if variant is ZoneCheckInRequirement and not data.get("zone"):
        raise InvalidRequirementError("check_in_zone requires a 'zone'")

    return variant(type=req_type, **data)


def required_count(raw: dict[str, Any] | None) -> int:
    """Target count stored in a requirements mapping (default 1)."""
    if not isinstance(raw, dict):
        return 1
    count = raw.get("count", 1)
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        return 1
    return count


def quest_position(raw: Any) -> tuple[str | None, int | None]:
    """``(quest_id, step)`` of a stored requirements mapping.

    Rows that are not a mapping, or carry a malformed pair, belong to no quest.
    """
    if not isinstance(raw, dict):
        return None, None
    quest_id, step = raw.get("quest_id"), raw.get("step")
    if not isinstance(quest_id, str) or isinstance(step, bool) or not isinstance(step, int):
        return None, None
    return quest_id, step
