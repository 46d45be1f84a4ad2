"""
questboard.constants — Shared Constants & Level Calculator
===========================================================

Single source of truth for the level thresholds, titles, XP reason codes
and presentation constants.  Import from here instead of duplicating in
services and routes.
"""

from __future__ import annotations

import enum
from bisect import bisect_right

# ---------------------------------------------------------------------------
# Level thresholds — cumulative XP needed to *reach* each level
# ---------------------------------------------------------------------------
LEVEL_THRESHOLDS: tuple[int, ...] = (0, 100, 300, 700, 1500, 3000, 6000)

LEVEL_TITLES: dict[int, str] = {
    1: "Newbie",
    2: "Explorer",
    3: "Regular",
    4: "Insider",
    5: "VIP",
    6: "Legend",
    7: "Ambassador",
}

MAX_LEVEL: int = len(LEVEL_THRESHOLDS)


def level_for(total_xp: int) -> int:
    """Level (1..7) reached with *total_xp* cumulative XP.

    Negative totals are treated as zero, so the result is always a valid
    level and never decreases as XP grows.
    """
    return max(1, bisect_right(LEVEL_THRESHOLDS, max(total_xp, 0)))


def title_for(level: int) -> str:
    """Display title for *level* (clamped into 1..7)."""
    return LEVEL_TITLES[min(max(level, 1), MAX_LEVEL)]


def xp_for_next_level(total_xp: int) -> int | None:
    """XP threshold of the next level, or ``None`` at max level."""
    level = level_for(total_xp)
    if level >= MAX_LEVEL:
        return None
    return LEVEL_THRESHOLDS[level]


def level_progress(total_xp: int) -> float:
    """Fraction (0.0–1.0) of the way from the current level to the next."""
    level = level_for(total_xp)
    if level >= MAX_LEVEL:
        return 1.0
    floor = LEVEL_THRESHOLDS[level - 1]
    ceiling = LEVEL_THRESHOLDS[level]
    return (max(total_xp, 0) - floor) / (ceiling - floor)


# ---------------------------------------------------------------------------
# XP ledger vocabulary
# ---------------------------------------------------------------------------
class XpReason(enum.StrEnum):
    """Why an XP transaction was written."""
    REVIEW_CREATED = "review_created"
    COMMENT_REPLY = "comment_reply"
    CHECK_IN = "check_in"
    PROFILE_UPDATED = "profile_updated"
    DAILY_LOGIN = "daily_login"
    MISSION_COMPLETED = "mission_completed"
    BADGE_UNLOCKED = "badge_unlocked"
    ADMIN_MANUAL = "admin_manual"


class EntityType(enum.StrEnum):
    """What an XP transaction's ``related_entity`` points at."""
    COMMENT = "comment"
    REVIEW = "review"
    ESTABLISHMENT = "establishment"
    MISSION = "mission"
    BADGE = "badge"
    USER = "user"
    CHECK_IN = "check_in"
    PHOTO = "photo"


# ---------------------------------------------------------------------------
# Activity thresholds
# ---------------------------------------------------------------------------
# Default floor for write_quality_review missions without an explicit min_length
QUALITY_REVIEW_MIN_LENGTH = 100

# Reviews shorter than this don't count toward the reviewers board
MEANINGFUL_REVIEW_MIN_LENGTH = 20

# width * height at or above this counts as a high-resolution photo
HIGH_RES_MIN_PIXELS = 1920 * 1080

# Look-back windows (days) offered by the XP history read
XP_HISTORY_PERIODS: tuple[int, ...] = (7, 30, 90)

# ---------------------------------------------------------------------------
# Rarity presentation
# ---------------------------------------------------------------------------
RARITY_EMOJI: dict[str, str] = {
    "common": "\u26aa",        # ⚪
    "rare": "\U0001f535",      # 🔵
    "epic": "\U0001f7e3",      # 🟣
    "legendary": "\U0001f7e1", # 🟡
}

RANK_BADGES: list[str] = ["\U0001f947", "\U0001f948", "\U0001f949"]  # 🥇🥈🥉
