"""
questboard.api.routes.public — Read-only public endpoints
===========================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import case, select
from sqlalchemy.orm import Session

from questboard.api.deps import get_config, get_session
from questboard.config import QuestboardConfig
from questboard.constants import (
    RARITY_EMOJI,
    level_progress,
    title_for,
    xp_for_next_level,
)
from questboard.database.models import (
    Badge,
    FeatureUnlock,
    Mission,
    MissionProgress,
    MissionType,
    User,
    UserBadge,
    UserUnlock,
)
from questboard.engine.requirements import quest_position, required_count
from questboard.exceptions import UserNotFoundError
from questboard.services.leaderboard_service import (
    BOARDS,
    get_leaderboard,
    get_zone_leaderboard,
)
from questboard.services.xp_service import get_xp_history

router = APIRouter(tags=["public"])

# daily → weekly → narrative → event
_TYPE_ORDER = case(
    {t.value: i for i, t in enumerate(MissionType)},
    value=Mission.type,
    else_=len(MissionType),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _load_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise UserNotFoundError(user_id)
    return user


def _mission_dict(m: Mission) -> dict:
    return {
        "id": m.id,
        "name": m.name,
        "description": m.description,
        "type": m.type,
        "xp_reward": m.xp_reward,
        "badge_id": m.badge_id,
        "requirements": m.requirements,
        "reset_frequency": m.reset_frequency,
        "start_date": _iso(m.start_date),
        "end_date": _iso(m.end_date),
    }


def _quest_locks(missions: list[Mission], completed_ids: set[int]) -> dict[int, bool]:
    """Mission id → locked flag for quest steps whose predecessor is open."""
    by_step = {}
    for m in missions:
        quest_id, step = quest_position(m.requirements)
        if quest_id is not None:
            by_step[(quest_id, step)] = m.id
    locks: dict[int, bool] = {}
    for (quest_id, step), mission_id in by_step.items():
        previous = by_step.get((quest_id, step - 1))
        locks[mission_id] = previous is not None and previous not in completed_ids
    return locks


# ---------------------------------------------------------------------------
# GET /leaderboards/zones/{zone}
# ---------------------------------------------------------------------------
@router.get("/leaderboards/zones/{zone}")
def read_zone_leaderboard(
    zone: str,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    session: Session = Depends(get_session),
    cfg: QuestboardConfig = Depends(get_config),
):
    """Top contributors in one zone by verified check-ins, computed live."""
    return {
        "board": "zone",
        "zone": zone,
        "entries": get_zone_leaderboard(
            session, zone, config=cfg, limit=limit, offset=offset
        ),
    }


# ---------------------------------------------------------------------------
# GET /leaderboards/{board}
# ---------------------------------------------------------------------------
@router.get("/leaderboards/{board}")
def read_leaderboard(
    board: str,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    session: Session = Depends(get_session),
):
    """Latest snapshot of one leaderboard."""
    if board not in BOARDS:
        raise HTTPException(404, f"Unknown leaderboard '{board}'")
    return {
        "board": board,
        "entries": get_leaderboard(session, board, limit=limit, offset=offset),
    }


# ---------------------------------------------------------------------------
# GET /users/{user_id}
# ---------------------------------------------------------------------------
@router.get("/users/{user_id}")
def read_user(user_id: int, session: Session = Depends(get_session)):
    """Profile: XP, level, title, streak and unlocked features."""
    user = _load_user(session, user_id)
    unlocks = session.scalars(
        select(FeatureUnlock.name)
        .join(UserUnlock, UserUnlock.unlock_id == FeatureUnlock.id)
        .where(UserUnlock.user_id == user_id)
        .order_by(FeatureUnlock.unlock_value)
    ).all()
    return {
        "id": user.id,
        "username": user.username,
        "total_xp": user.total_xp,
        "monthly_xp": user.monthly_xp,
        "level": user.level,
        "title": title_for(user.level),
        "xp_for_next": xp_for_next_level(user.total_xp),
        "level_progress": level_progress(user.total_xp),
        "current_streak": user.current_streak,
        "longest_streak": user.longest_streak,
        "unlocks": list(unlocks),
        "created_at": _iso(user.created_at),
    }


# ---------------------------------------------------------------------------
# GET /users/{user_id}/xp-history
# ---------------------------------------------------------------------------
@router.get("/users/{user_id}/xp-history")
def read_xp_history(
    user_id: int,
    period: int = Query(30),
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    session: Session = Depends(get_session),
):
    """Ledger entries over the last 7, 30 or 90 days with a per-reason breakdown."""
    return get_xp_history(
        session, user_id, period_days=period, page=page, page_size=page_size
    )


# ---------------------------------------------------------------------------
# GET /users/{user_id}/missions
# ---------------------------------------------------------------------------
@router.get("/users/{user_id}/missions")
def read_user_missions(
    user_id: int,
    type: str | None = Query(None),
    session: Session = Depends(get_session),
):
    """Active missions joined with this user's progress."""
    _load_user(session, user_id)
    query = (
        select(Mission, MissionProgress)
        .outerjoin(
            MissionProgress,
            (MissionProgress.mission_id == Mission.id) & (MissionProgress.user_id == user_id),
        )
        .where(Mission.is_active.is_(True))
        .order_by(_TYPE_ORDER, Mission.sort_order, Mission.id)
    )
    if type is not None:
        query = query.where(Mission.type == type)
    rows = session.execute(query).all()

    completed_ids = {m.id for m, p in rows if p is not None and p.completed}
    locks = _quest_locks([m for m, _ in rows], completed_ids)

    return {
        "missions": [
            {
                **_mission_dict(m),
                "progress": p.progress if p else 0,
                "required": required_count(m.requirements),
                "completed": bool(p and p.completed),
                "completed_at": _iso(p.completed_at) if p else None,
                "locked": locks.get(m.id, False),
            }
            for m, p in rows
        ],
    }


# ---------------------------------------------------------------------------
# GET /users/{user_id}/badges
# ---------------------------------------------------------------------------
@router.get("/users/{user_id}/badges")
def read_user_badges(user_id: int, session: Session = Depends(get_session)):
    """Badges the user has earned, newest first."""
    _load_user(session, user_id)
    rows = session.execute(
        select(UserBadge, Badge)
        .join(Badge, Badge.id == UserBadge.badge_id)
        .where(UserBadge.user_id == user_id)
        .order_by(UserBadge.earned_at.desc(), Badge.sort_order)
    ).all()
    return {
        "badges": [
            {
                "id": b.id,
                "name": b.name,
                "description": b.description,
                "icon": b.icon,
                "category": b.category,
                "rarity": b.rarity,
                "rarity_emoji": RARITY_EMOJI.get(b.rarity, ""),
                "source": ub.source,
                "earned_at": _iso(ub.earned_at),
            }
            for ub, b in rows
        ],
    }


# ---------------------------------------------------------------------------
# GET /missions
# ---------------------------------------------------------------------------
@router.get("/missions")
def list_missions(
    type: str | None = Query(None),
    session: Session = Depends(get_session),
):
    """Catalogue of active missions."""
    query = (
        select(Mission)
        .where(Mission.is_active.is_(True))
        .order_by(_TYPE_ORDER, Mission.sort_order, Mission.id)
    )
    if type is not None:
        query = query.where(Mission.type == type)
    return {"missions": [_mission_dict(m) for m in session.scalars(query)]}
