"""
questboard.api.routes.admin — Admin endpoints (JWT‑protected)
===============================================================
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from questboard.api.deps import (
    AdminPrincipal,
    get_config,
    get_current_admin,
    get_engine,
    get_session,
)
from questboard.config import QuestboardConfig
from questboard.database.models import ResetFrequency
from questboard.services import admin_service
from questboard.worker.scheduler import JOBS, execute_job

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class MissionCreate(BaseModel):
    name: str
    type: str
    requirements: dict[str, Any]
    xp_reward: int = 0
    reset_frequency: str = ResetFrequency.NEVER.value
    description: str | None = None
    badge_id: int | None = None
    is_active: bool = True
    start_date: datetime | None = None
    end_date: datetime | None = None
    sort_order: int = 0


class MissionUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    xp_reward: int | None = None
    badge_id: int | None = None
    requirements: dict[str, Any] | None = None
    reset_frequency: str | None = None
    is_active: bool | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    sort_order: int | None = None
    reason: str | None = None


class ManualXpAward(BaseModel):
    user_id: int
    amount: int
    reason: str = Field(min_length=1)


class BadgeGrant(BaseModel):
    user_id: int
    badge_id: int
    reason: str | None = None


def _mission_summary(m) -> dict:
    return {
        "id": m.id,
        "name": m.name,
        "type": m.type,
        "xp_reward": m.xp_reward,
        "requirements": m.requirements,
        "reset_frequency": m.reset_frequency,
        "is_active": m.is_active,
    }


# ---------------------------------------------------------------------------
# Missions
# ---------------------------------------------------------------------------
@router.post("/missions", status_code=201)
def create_mission(
    body: MissionCreate,
    admin: AdminPrincipal = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    mission = admin_service.create_mission(
        engine,
        actor_id=admin.actor_id,
        **body.model_dump(),
    )
    return _mission_summary(mission)


@router.patch("/missions/{mission_id}")
def update_mission(
    mission_id: int,
    body: MissionUpdate,
    admin: AdminPrincipal = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    kwargs = body.model_dump(exclude_none=True)
    reason = kwargs.pop("reason", None)
    if not kwargs:
        raise HTTPException(400, "No fields to update")
    mission = admin_service.update_mission(
        engine,
        mission_id,
        actor_id=admin.actor_id,
        reason=reason,
        **kwargs,
    )
    return _mission_summary(mission)


# ---------------------------------------------------------------------------
# Manual Awards
# ---------------------------------------------------------------------------
@router.post("/awards/xp")
def award_xp(
    body: ManualXpAward,
    admin: AdminPrincipal = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    grant = admin_service.award_manual_xp(
        engine,
        actor_id=admin.actor_id,
        user_id=body.user_id,
        amount=body.amount,
        reason=body.reason,
    )
    return {
        "user_id": body.user_id,
        "total_xp": grant.total_xp,
        "level": grant.new_level,
        "leveled_up": grant.leveled_up,
        "transaction_id": grant.transaction_id,
    }


@router.post("/awards/badge")
def grant_badge(
    body: BadgeGrant,
    admin: AdminPrincipal = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    granted = admin_service.grant_badge(
        engine,
        actor_id=admin.actor_id,
        user_id=body.user_id,
        badge_id=body.badge_id,
        reason=body.reason,
    )
    return {"user_id": body.user_id, "badge_id": body.badge_id, "granted": granted}


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------
@router.post("/jobs/{job_id}")
def run_job(
    job_id: str,
    admin: AdminPrincipal = Depends(get_current_admin),
    engine=Depends(get_engine),
    cfg: QuestboardConfig = Depends(get_config),
):
    """Run a scheduler job now, under the same lease the worker uses."""
    if job_id not in JOBS:
        raise HTTPException(404, f"Unknown job '{job_id}'")
    summary = execute_job(engine, cfg, job_id)
    if summary is None:
        raise HTTPException(409, f"Job '{job_id}' is already running")
    admin_service.log_job_run(engine, actor_id=admin.actor_id, job=job_id, summary=summary)
    return {"job": job_id, "summary": summary}


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------
@router.get("/audit")
def get_audit_log(
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    admin: AdminPrincipal = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    """Paginated admin audit log."""
    return admin_service.get_audit_log(session, page=page, page_size=page_size)
