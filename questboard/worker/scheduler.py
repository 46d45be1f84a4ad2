"""
questboard.worker.scheduler — Scheduled Jobs
=============================================

Four jobs, each on a crontab schedule evaluated in the operator timezone:

============================  ===================  ===============================
job id                        default schedule     does
============================  ===================  ===============================
``daily_reset``               ``0 0 * * *``        reset daily-cadence missions
``weekly_reset``              ``0 0 * * mon``      reset weekly-cadence missions
``monthly_xp_reset``          ``0 0 1 * *``        zero ``users.monthly_xp``
``leaderboard_refresh``       ``0 * * * *``        rebuild leaderboard snapshots
============================  ===================  ===============================

Overlap protection is two-layered: APScheduler's ``max_instances=1`` inside
one process, and the ``job_locks`` lease across processes.  A run that finds
the lease taken is skipped, not queued.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import Engine

from questboard.config import QuestboardConfig
from questboard.database.models import ResetFrequency
from questboard.services.job_lock import job_lock
from questboard.services.leaderboard_service import refresh_leaderboards
from questboard.services.reset_service import reset_missions, reset_monthly_xp

logger = logging.getLogger(__name__)

Heartbeat = Callable[[], None]
JobFunc = Callable[[Engine, QuestboardConfig, Heartbeat], dict]


def _daily_reset(engine: Engine, cfg: QuestboardConfig, heartbeat: Heartbeat) -> dict:
    return reset_missions(
        engine, ResetFrequency.DAILY, batch_size=cfg.reset_batch_size, heartbeat=heartbeat
    )


def _weekly_reset(engine: Engine, cfg: QuestboardConfig, heartbeat: Heartbeat) -> dict:
    return reset_missions(
        engine, ResetFrequency.WEEKLY, batch_size=cfg.reset_batch_size, heartbeat=heartbeat
    )


# The monthly reset and the refresh are single transactions and ignore heartbeat
def _monthly_xp_reset(engine: Engine, cfg: QuestboardConfig, heartbeat: Heartbeat) -> dict:
    return reset_monthly_xp(engine)


def _leaderboard_refresh(engine: Engine, cfg: QuestboardConfig, heartbeat: Heartbeat) -> dict:
    return refresh_leaderboards(engine, config=cfg)


JOBS: dict[str, JobFunc] = {
    "daily_reset": _daily_reset,
    "weekly_reset": _weekly_reset,
    "monthly_xp_reset": _monthly_xp_reset,
    "leaderboard_refresh": _leaderboard_refresh,
}


def job_schedule(cfg: QuestboardConfig) -> dict[str, str]:
    """Crontab expression per job id."""
    return {
        "daily_reset": cfg.daily_reset_cron,
        "weekly_reset": cfg.weekly_reset_cron,
        "monthly_xp_reset": cfg.monthly_reset_cron,
        "leaderboard_refresh": cfg.leaderboard_refresh_cron,
    }


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------
def execute_job(engine: Engine, cfg: QuestboardConfig, job_id: str) -> dict | None:
    """Run *job_id* once under its lease.

    Returns the job's summary, or None if another holder has the lease.
    Job errors propagate, including :class:`LeaseLostError` when a long job
    finds its lease taken over between batches.

    Raises
    ------
    KeyError
        If *job_id* is not a known job.
    """
    func = JOBS[job_id]
    with job_lock(engine, job_id, ttl_seconds=cfg.lock_ttl_seconds) as lease:
        if not lease:
            return None
        return func(engine, cfg, lease.heartbeat)


def run_scheduled_job(engine: Engine, cfg: QuestboardConfig, job_id: str) -> None:
    """Scheduler entry point: log start/stop and never let an error escape."""
    started_at = datetime.now(UTC)
    logger.info(
        "scheduler.job.start",
        extra={"job_id": job_id, "started_at": started_at.isoformat()},
    )
    try:
        summary = execute_job(engine, cfg, job_id)
    except Exception:
        logger.exception("scheduler.job.error", extra={"job_id": job_id})
        return

    finished_at = datetime.now(UTC)
    if summary is None:
        logger.info("scheduler.job.skipped", extra={"job_id": job_id, "reason": "locked"})
        return
    logger.info(
        "scheduler.job.stop",
        extra={
            "job_id": job_id,
            "finished_at": finished_at.isoformat(),
            "duration_s": (finished_at - started_at).total_seconds(),
            "summary": summary,
        },
    )


# ---------------------------------------------------------------------------
# Scheduler wiring
# ---------------------------------------------------------------------------
def register_jobs(
    scheduler: BaseScheduler, engine: Engine, cfg: QuestboardConfig
) -> list[str]:
    """Add every job to *scheduler*.  Returns the registered job ids."""
    for job_id, cron in job_schedule(cfg).items():
        scheduler.add_job(
            run_scheduled_job,
            trigger=CronTrigger.from_crontab(cron, timezone=cfg.tz),
            args=(engine, cfg, job_id),
            id=job_id,
            name=job_id.replace("_", " "),
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
            replace_existing=True,
        )
        logger.info("Scheduled %s (%s, %s)", job_id, cron, cfg.timezone)
    return list(JOBS)


def build_scheduler(engine: Engine, cfg: QuestboardConfig) -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone=cfg.tz)
    register_jobs(scheduler, engine, cfg)
    return scheduler
