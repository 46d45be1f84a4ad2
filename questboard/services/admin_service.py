"""
questboard.services.admin_service — Audited Admin Mutations
============================================================

Every admin write follows the same pattern:
  1. Begin transaction
  2. Read "before" snapshot
  3. Validate and apply the change
  4. Write admin_log with before/after JSONB
  5. Commit

Mission requirements are parsed with
:func:`questboard.engine.requirements.parse_requirement` before anything is
written, so a malformed definition never reaches the tracker.  The stored
JSON is the parsed requirement's normalized form.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session

from questboard.constants import XpReason
from questboard.database.engine import run_in_transaction
from questboard.database.models import (
    AdminActionType,
    AdminLog,
    Badge,
    BadgeSource,
    Mission,
    MissionType,
    ResetFrequency,
    User,
)
from questboard.engine.requirements import parse_requirement
from questboard.exceptions import (
    BadgeNotFoundError,
    InvalidAmountError,
    InvalidRequirementError,
    MissionNotFoundError,
    UserNotFoundError,
)
from questboard.services.progress_service import grant_badge as _insert_badge
from questboard.services.xp_service import XpGrant, grant_xp

logger = logging.getLogger(__name__)

# Mission columns an admin may change after creation
MUTABLE_MISSION_FIELDS = frozenset({
    "name", "description", "xp_reward", "badge_id", "requirements",
    "reset_frequency", "is_active", "start_date", "end_date", "sort_order",
})


# ---------------------------------------------------------------------------
# Generic audit helpers
# ---------------------------------------------------------------------------
def _row_to_dict(obj: Any) -> dict | None:
    """Convert a SQLAlchemy model instance to a JSON-serializable dict."""
    if obj is None:
        return None
    result = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key if col.key != "metadata" else "metadata_", None)
        if isinstance(val, (datetime, date)):
            val = val.isoformat()
        result[col.name] = val
    return result


def _log_admin_action(
    session: Session,
    *,
    actor_id: int,
    action_type: str,
    target_table: str,
    target_id: str | None,
    before: dict | None,
    after: dict | None,
    reason: str | None = None,
) -> None:
    """Insert a row into admin_log within the current transaction."""
    session.add(AdminLog(
        actor_id=actor_id,
        action_type=action_type,
        target_table=target_table,
        target_id=target_id,
        before_snapshot=before,
        after_snapshot=after,
        reason=reason,
    ))


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def _validate_mission_fields(session: Session, fields: dict[str, Any]) -> dict[str, Any]:
    """Check and normalize mission columns; returns the cleaned mapping."""
    cleaned = dict(fields)
    if "requirements" in cleaned:
        cleaned["requirements"] = parse_requirement(cleaned["requirements"]).to_dict()
    if "type" in cleaned and cleaned["type"] not in set(MissionType):
        raise InvalidRequirementError(
            f"Unknown mission type {cleaned['type']!r}",
            {"allowed": sorted(MissionType)},
        )
    if "reset_frequency" in cleaned and cleaned["reset_frequency"] not in set(ResetFrequency):
        raise InvalidRequirementError(
            f"Unknown reset frequency {cleaned['reset_frequency']!r}",
            {"allowed": sorted(ResetFrequency)},
        )
    if "xp_reward" in cleaned:
        xp = cleaned["xp_reward"]
        if isinstance(xp, bool) or not isinstance(xp, int) or xp < 0:
            raise InvalidAmountError("Mission XP reward must be a non-negative integer",
                                     {"xp_reward": xp})
    if cleaned.get("badge_id") is not None and session.get(Badge, cleaned["badge_id"]) is None:
        raise BadgeNotFoundError(cleaned["badge_id"])
    start, end = cleaned.get("start_date"), cleaned.get("end_date")
    if start is not None and end is not None and end <= start:
        raise InvalidRequirementError(
            "Mission end_date must be after start_date",
            {"start_date": str(start), "end_date": str(end)},
        )
    return cleaned


# ---------------------------------------------------------------------------
# Missions
# ---------------------------------------------------------------------------
def create_mission(
    engine: Engine,
    *,
    actor_id: int,
    name: str,
    type: str,
    requirements: dict[str, Any],
    xp_reward: int = 0,
    reset_frequency: str = ResetFrequency.NEVER.value,
    description: str | None = None,
    badge_id: int | None = None,
    is_active: bool = True,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    sort_order: int = 0,
) -> Mission:
    """Validate and insert a mission.  Returns the detached row.

    Raises
    ------
    InvalidRequirementError
        If the requirement, type, cadence or validity window is invalid.
    InvalidAmountError
        If *xp_reward* is negative.
    BadgeNotFoundError
        If *badge_id* does not exist.
    """
    def _create(session: Session) -> Mission:
        fields = _validate_mission_fields(session, {
            "name": name,
            "type": type,
            "requirements": requirements,
            "xp_reward": xp_reward,
            "reset_frequency": reset_frequency,
            "description": description,
            "badge_id": badge_id,
            "is_active": is_active,
            "start_date": start_date,
            "end_date": end_date,
            "sort_order": sort_order,
        })
        mission = Mission(**fields)
        session.add(mission)
        session.flush()
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.CREATE,
            target_table="missions",
            target_id=str(mission.id),
            before=None,
            after=_row_to_dict(mission),
        )
        return mission

    mission = run_in_transaction(engine, _create)
    logger.info("Mission %d (%s) created by admin %d", mission.id, mission.name, actor_id)
    return mission


def update_mission(
    engine: Engine,
    mission_id: int,
    *,
    actor_id: int,
    reason: str | None = None,
    **changes: Any,
) -> Mission:
    """Apply *changes* to a mission with an audit entry.

    Unknown or immutable column names are rejected.

    Raises
    ------
    MissionNotFoundError
        If the mission does not exist.
    InvalidRequirementError
        If a changed value fails validation.
    """
    illegal = set(changes) - MUTABLE_MISSION_FIELDS
    if illegal:
        raise InvalidRequirementError(
            "Cannot update mission field(s): " + ", ".join(sorted(illegal)),
            {"fields": sorted(illegal)},
        )

    def _update(session: Session) -> Mission:
        mission = session.get(Mission, mission_id)
        if mission is None:
            raise MissionNotFoundError(mission_id)
        before = _row_to_dict(mission)
        merged = {
            "start_date": mission.start_date,
            "end_date": mission.end_date,
            **changes,
        }
        cleaned = _validate_mission_fields(session, merged)
        for key in changes:
            setattr(mission, key, cleaned[key])
        session.flush()
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.UPDATE,
            target_table="missions",
            target_id=str(mission.id),
            before=before,
            after=_row_to_dict(mission),
            reason=reason,
        )
        return mission

    return run_in_transaction(engine, _update)


def update_mission_requirements(
    engine: Engine,
    mission_id: int,
    requirements: dict[str, Any],
    *,
    actor_id: int,
    reason: str | None = None,
) -> Mission:
    return update_mission(
        engine, mission_id, actor_id=actor_id, reason=reason, requirements=requirements
    )


def set_mission_active(
    engine: Engine,
    mission_id: int,
    is_active: bool,
    *,
    actor_id: int,
    reason: str | None = None,
) -> Mission:
    return update_mission(
        engine, mission_id, actor_id=actor_id, reason=reason, is_active=is_active
    )


# ---------------------------------------------------------------------------
# Manual awards
# ---------------------------------------------------------------------------
def award_manual_xp(
    engine: Engine,
    *,
    actor_id: int,
    user_id: int,
    amount: int,
    reason: str,
) -> XpGrant:
    """Grant (or revoke, if negative) XP by hand.  Goes through the ledger."""
    def _award(session: Session) -> XpGrant:
        before = _row_to_dict(session.get(User, user_id))
        grant = grant_xp(
            session,
            user_id,
            amount,
            XpReason.ADMIN_MANUAL,
            metadata={"actor_id": actor_id, "reason": reason},
        )
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.MANUAL_AWARD,
            target_table="users",
            target_id=str(user_id),
            before=before,
            after=_row_to_dict(session.get(User, user_id)),
            reason=reason,
        )
        return grant

    grant = run_in_transaction(engine, _award)
    logger.info(
        "Admin %d awarded %d XP to user %d", actor_id, amount, user_id,
        extra={"actor_id": actor_id, "user_id": user_id, "amount": amount},
    )
    return grant


def grant_badge(
    engine: Engine,
    *,
    actor_id: int,
    user_id: int,
    badge_id: int,
    reason: str | None = None,
) -> bool:
    """Give *badge_id* to *user_id*.  Returns False if they already had it."""
    def _grant(session: Session) -> bool:
        if session.get(User, user_id) is None:
            raise UserNotFoundError(user_id)
        if session.get(Badge, badge_id) is None:
            raise BadgeNotFoundError(badge_id)
        granted = _insert_badge(session, user_id, badge_id, source=BadgeSource.ADMIN)
        if granted:
            _log_admin_action(
                session,
                actor_id=actor_id,
                action_type=AdminActionType.BADGE_GRANT,
                target_table="user_badges",
                target_id=f"{user_id}:{badge_id}",
                before=None,
                after={"user_id": user_id, "badge_id": badge_id, "source": BadgeSource.ADMIN.value},
                reason=reason,
            )
        return granted

    return run_in_transaction(engine, _grant)


def log_job_run(engine: Engine, *, actor_id: int, job: str, summary: dict) -> None:
    """Record an admin-triggered scheduler job in the audit trail."""
    def _log(session: Session) -> None:
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.JOB_RUN,
            target_table="job_locks",
            target_id=job,
            before=None,
            after=summary,
        )

    run_in_transaction(engine, _log)


# ---------------------------------------------------------------------------
# Audit read
# ---------------------------------------------------------------------------
def get_audit_log(session: Session, *, page: int = 1, page_size: int = 25) -> dict:
    """Paginated admin audit log, newest first."""
    total = session.scalar(select(func.count()).select_from(AdminLog)) or 0
    rows = session.scalars(
        select(AdminLog)
        .order_by(AdminLog.timestamp.desc(), AdminLog.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    ).all()
    return {
        "total": total,
        "page": page,
        "page_size": page_size,
        "entries": [
            {
                "id": r.id,
                "actor_id": str(r.actor_id),
                "action_type": r.action_type,
                "target_table": r.target_table,
                "target_id": r.target_id,
                "before_snapshot": r.before_snapshot,
                "after_snapshot": r.after_snapshot,
                "reason": r.reason,
                "timestamp": r.timestamp.isoformat() if r.timestamp else None,
            }
            for r in rows
        ],
    }
