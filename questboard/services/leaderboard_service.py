"""
questboard.services.leaderboard_service — Ranked Leaderboard Snapshots
=======================================================================

Rebuilds the ``leaderboard_entries`` snapshot from users and the activity
tables.  Boards:

==============  ===========================================  ====================
board           score                                         secondary
==============  ===========================================  ====================
global          ``users.total_xp``                            —
monthly         ``users.monthly_xp``                          —
weekly          XP earned since local Monday 00:00            —
reviewers       reviews with 20+ characters                   —
photographers   approved photo uploads                        distinct venues
checkins        verified check-ins                            total check-ins
helpful         helpful votes received                        —
==============  ===========================================  ====================

Per-zone rankings (verified check-ins inside one zone) are computed on read
by :func:`get_zone_leaderboard` instead of being snapshotted.

Every board leaves out non-player account types and deactivated users.
Ties are broken by earliest sign-up, then lowest user id, so ranks are
deterministic.  Only ``global`` lists users with a zero score.

All boards are replaced in one transaction (DELETE + INSERT): a reader sees
either the previous snapshot or the new one, never a mix.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import Engine, case, delete, distinct, func, insert, select
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from questboard.config import QuestboardConfig
from questboard.constants import MEANINGFUL_REVIEW_MIN_LENGTH, RANK_BADGES, title_for
from questboard.database.engine import get_session
from questboard.database.models import (
    CheckIn,
    Establishment,
    LeaderboardEntry,
    PhotoStatus,
    PhotoUpload,
    Review,
    ReviewVote,
    User,
    VoteType,
    XpTransaction,
)
from questboard.engine.periods import utcnow, week_start
from questboard.exceptions import ZoneNotFoundError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Board queries — (user_id, score[, secondary]) columns
# ---------------------------------------------------------------------------
def _global(config: QuestboardConfig, now: datetime) -> Select:
    return select(User.id, User.total_xp.label("score"))


def _monthly(config: QuestboardConfig, now: datetime) -> Select:
    return select(User.id, User.monthly_xp.label("score")).where(User.monthly_xp > 0)


def _weekly(config: QuestboardConfig, now: datetime) -> Select:
    since = week_start(now, config.tz)
    earned = (
        select(
            XpTransaction.user_id.label("user_id"),
            func.sum(XpTransaction.xp_amount).label("score"),
        )
        .where(XpTransaction.created_at >= since)
        .group_by(XpTransaction.user_id)
        .subquery()
    )
    return (
        select(User.id, earned.c.score)
        .join(earned, earned.c.user_id == User.id)
        .where(earned.c.score > 0)
    )


def _reviewers(config: QuestboardConfig, now: datetime) -> Select:
    counts = (
        select(Review.user_id.label("user_id"), func.count(Review.id).label("score"))
        .where(func.length(Review.content) >= MEANINGFUL_REVIEW_MIN_LENGTH)
        .group_by(Review.user_id)
        .subquery()
    )
    return select(User.id, counts.c.score).join(counts, counts.c.user_id == User.id)


def _photographers(config: QuestboardConfig, now: datetime) -> Select:
    counts = (
        select(
            PhotoUpload.user_id.label("user_id"),
            func.count(PhotoUpload.id).label("score"),
            func.count(distinct(PhotoUpload.establishment_id)).label("secondary"),
        )
        .where(PhotoUpload.status == PhotoStatus.APPROVED.value)
        .group_by(PhotoUpload.user_id)
        .subquery()
    )
    return (
        select(User.id, counts.c.score, counts.c.secondary)
        .join(counts, counts.c.user_id == User.id)
    )


def _checkins(config: QuestboardConfig, now: datetime) -> Select:
    counts = (
        select(
            CheckIn.user_id.label("user_id"),
            func.sum(case((CheckIn.verified.is_(True), 1), else_=0)).label("score"),
            func.count(CheckIn.id).label("secondary"),
        )
        .group_by(CheckIn.user_id)
        .subquery()
    )
    return (
        select(User.id, counts.c.score, counts.c.secondary)
        .join(counts, counts.c.user_id == User.id)
        .where(counts.c.score > 0)
    )


def _helpful(config: QuestboardConfig, now: datetime) -> Select:
    counts = (
        select(Review.user_id.label("user_id"), func.count(ReviewVote.id).label("score"))
        .join(ReviewVote, ReviewVote.review_id == Review.id)
        .where(
            ReviewVote.vote_type == VoteType.HELPFUL.value,
            ReviewVote.voter_id != Review.user_id,
        )
        .group_by(Review.user_id)
        .subquery()
    )
    return select(User.id, counts.c.score).join(counts, counts.c.user_id == User.id)


BOARDS: dict[str, Callable[[QuestboardConfig, datetime], Select]] = {
    "global": _global,
    "monthly": _monthly,
    "weekly": _weekly,
    "reviewers": _reviewers,
    "photographers": _photographers,
    "checkins": _checkins,
    "helpful": _helpful,
}


def _zone(zone: str) -> Select:
    """Verified check-ins inside *zone*; secondary is distinct venues there."""
    counts = (
        select(
            CheckIn.user_id.label("user_id"),
            func.count(CheckIn.id).label("score"),
            func.count(distinct(CheckIn.establishment_id)).label("secondary"),
        )
        .join(Establishment, Establishment.id == CheckIn.establishment_id)
        .where(CheckIn.verified.is_(True), Establishment.zone == zone)
        .group_by(CheckIn.user_id)
        .subquery()
    )
    return (
        select(User.id, counts.c.score, counts.c.secondary)
        .join(counts, counts.c.user_id == User.id)
    )


def _players_in_order(query: Select, config: QuestboardConfig) -> Select:
    """Drop non-players and deactivated users; order by score columns then tie-break."""
    columns = list(query.selected_columns)
    ordering = [column.desc() for column in columns[1:]]
    return (
        query.where(
            User.is_active.is_(True),
            User.account_type.not_in(config.non_player_account_types),
        )
        .order_by(*ordering, User.created_at.asc(), User.id.asc())
    )


def _rows(session: Session, query: Select) -> list[tuple[int, int, int | None]]:
    ranked = []
    for row in session.execute(query):
        secondary = int(row[2]) if len(row) > 2 and row[2] is not None else None
        ranked.append((row[0], int(row[1] or 0), secondary))
    return ranked


def _ranked(
    session: Session, board: str, config: QuestboardConfig, now: datetime
) -> list[tuple[int, int, int | None]]:
    query = _players_in_order(BOARDS[board](config, now), config)
    return _rows(session, query.limit(config.leaderboard_limit(board)))


def _display(rank: int, user: User, score: int, secondary: int | None) -> dict:
    return {
        "rank": rank,
        "medal": RANK_BADGES[rank - 1] if rank <= len(RANK_BADGES) else None,
        "user_id": user.id,
        "username": user.username,
        "level": user.level,
        "title": title_for(user.level),
        "score": score,
        "secondary_score": secondary,
    }


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def refresh_leaderboards(
    engine: Engine,
    *,
    config: QuestboardConfig | None = None,
    now: datetime | None = None,
    boards: list[str] | None = None,
) -> dict:
    """Recompute *boards* (default: all) and swap them in atomically.

    Returns ``{"boards": {board: rows_written}, "refreshed_at": iso}``.

    Raises
    ------
    KeyError
        If *boards* names an unknown board.
    """
    config = config or QuestboardConfig()
    now = now or utcnow()
    names = list(boards) if boards is not None else list(BOARDS)
    unknown = [name for name in names if name not in BOARDS]
    if unknown:
        raise KeyError(f"Unknown leaderboard(s): {', '.join(unknown)}")

    started = time.monotonic()
    summary: dict[str, int] = {}
    with get_session(engine) as session:
        for board in names:
            rows = _ranked(session, board, config, now)
            session.execute(delete(LeaderboardEntry).where(LeaderboardEntry.board == board))
            if rows:
                session.execute(
                    insert(LeaderboardEntry),
                    [
                        {
                            "board": board,
                            "rank": rank,
                            "user_id": user_id,
                            "score": score,
                            "secondary_score": secondary,
                            "refreshed_at": now,
                        }
                        for rank, (user_id, score, secondary) in enumerate(rows, start=1)
                    ],
                )
            summary[board] = len(rows)

    logger.info(
        "Leaderboards refreshed in %.2fs: %s",
        time.monotonic() - started,
        ", ".join(f"{board}={count}" for board, count in summary.items()),
        extra={"boards": summary},
    )
    return {"boards": summary, "refreshed_at": now.isoformat()}


def get_leaderboard(
    session: Session,
    board: str,
    *,
    limit: int = 50,
    offset: int = 0,
) -> list[dict]:
    """Read one board's snapshot with user display data, ordered by rank.

    Raises
    ------
    KeyError
        If *board* is not a known board.
    """
    if board not in BOARDS:
        raise KeyError(f"Unknown leaderboard: {board}")

    rows = session.execute(
        select(LeaderboardEntry, User)
        .join(User, User.id == LeaderboardEntry.user_id)
        .where(LeaderboardEntry.board == board)
        .order_by(LeaderboardEntry.rank)
        .offset(offset)
        .limit(limit)
    ).all()
    return [
        {
            **_display(entry.rank, user, entry.score, entry.secondary_score),
            "refreshed_at": entry.refreshed_at.isoformat() if entry.refreshed_at else None,
        }
        for entry, user in rows
    ]


def get_zone_leaderboard(
    session: Session,
    zone: str,
    *,
    config: QuestboardConfig | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict]:
    """Top contributors in *zone* by verified check-ins there, computed live.

    Zones are whatever ``establishments.zone`` holds, so there is no stored
    snapshot.  Same exclusion and tie-break as the snapshot boards; the
    ``zone`` limit caps how deep the ranking goes.

    Raises
    ------
    ZoneNotFoundError
        If no establishment is in *zone*.
    """
    config = config or QuestboardConfig()
    known = session.scalar(
        select(Establishment.id).where(Establishment.zone == zone).limit(1)
    )
    if known is None:
        raise ZoneNotFoundError(zone)

    depth = config.leaderboard_limit("zone")
    if offset >= depth:
        return []
    query = (
        _players_in_order(_zone(zone), config)
        .offset(offset)
        .limit(min(limit, depth - offset))
    )
    ranked = _rows(session, query)
    users = {
        user.id: user
        for user in session.scalars(select(User).where(User.id.in_([r[0] for r in ranked])))
    }
    return [
        _display(rank, users[user_id], score, secondary)
        for rank, (user_id, score, secondary) in enumerate(ranked, start=offset + 1)
    ]
