"""
questboard.engine.periods — Operator-Timezone Windows & Streak Rule
====================================================================

"Today", "this week" and "this month" are always computed in the single
operator timezone from ``config.yaml`` (not the server's local time, not
the user's).  Weeks start on Monday.

All returned boundaries are timezone-aware and converted to UTC so they
compare correctly against the UTC timestamps stored in the database.

This module is pure calculation — no database I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from zoneinfo import ZoneInfo

from questboard.config import DEFAULT_TIMEZONE
from questboard.database.models import ResetFrequency

DEFAULT_TZ = ZoneInfo(DEFAULT_TIMEZONE)


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def local_today(now: datetime, tz: tzinfo) -> date:
    return as_utc(now).astimezone(tz).date()


def _local_midnight(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz).astimezone(UTC)


def day_start(now: datetime, tz: tzinfo) -> datetime:
    """UTC instant of local midnight today."""
    return _local_midnight(local_today(now, tz), tz)


def week_start(now: datetime, tz: tzinfo) -> datetime:
    """UTC instant of local Monday 00:00 of the current week."""
    today = local_today(now, tz)
    return _local_midnight(today - timedelta(days=today.weekday()), tz)


def month_start(now: datetime, tz: tzinfo) -> datetime:
    """UTC instant of local 00:00 on the 1st of the current month."""
    return _local_midnight(local_today(now, tz).replace(day=1), tz)


def window_start(
    reset_frequency: str,
    now: datetime,
    tz: tzinfo,
    *,
    mission_start: datetime | None = None,
) -> datetime | None:
    """Lower bound for recounting a mission's progress.

    Resetting missions count from the start of their current period;
    ``never`` missions count from their validity start (or all time).
    """
    match reset_frequency:
        case ResetFrequency.DAILY:
            return day_start(now, tz)
        case ResetFrequency.WEEKLY:
            return week_start(now, tz)
        case ResetFrequency.MONTHLY:
            return month_start(now, tz)
        case _:
            return as_utc(mission_start) if mission_start is not None else None


def is_within(
    now: datetime, start: datetime | None, end: datetime | None
) -> bool:
    """True if *now* lies inside the (open-ended) validity window."""
    now = as_utc(now)
    if start is not None and now < as_utc(start):
        return False
    if end is not None and now > as_utc(end):
        return False
    return True


# ---------------------------------------------------------------------------
# Activity streaks
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class StreakUpdate:
    current: int
    longest: int
    last_activity_date: date


def next_streak(
    current: int,
    longest: int,
    last_activity: date | None,
    today: date,
) -> StreakUpdate:
    """Apply one day of activity on *today*.

    * last activity yesterday → streak + 1
    * last activity today     → unchanged
    * anything else           → streak restarts at 1
    """
    if last_activity == today:
        new_current = current
    elif last_activity == today - timedelta(days=1):
        new_current = current + 1
    else:
        new_current = 1
    return StreakUpdate(
        current=new_current,
        longest=max(longest, new_current),
        last_activity_date=today,
    )
