"""
questboard.services.reset_service — Periodic Mission & Monthly XP Resets
=========================================================================

Invoked by the scheduler worker (``questboard.worker``) at operator-timezone
boundaries:

* :func:`reset_missions` ``("daily")`` at 00:00 every day.
* :func:`reset_missions` ``("weekly")`` at 00:00 every Monday.
* :func:`reset_monthly_xp` at 00:00 on the 1st of every month.

**Resets are batched** so a large ``mission_progress`` table is never
locked in one long transaction: rows are reset in chunks of
``batch_size``, each committed on its own.  A crash mid-run leaves some
users reset and others not; re-running finishes the job because rows that
are already zero and not completed are never selected.

The XP ledger, badges and users' total XP are never touched.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from sqlalchemy import or_, select, update

from questboard.database.engine import get_session
from questboard.database.models import Mission, MissionProgress, ResetFrequency, User
from questboard.exceptions import InvalidCadenceError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# Rows reset per transaction
BATCH_SIZE = 1_000

RESETTABLE_CADENCES = frozenset({ResetFrequency.DAILY, ResetFrequency.WEEKLY})


def reset_missions(
    engine: Engine,
    cadence: str,
    *,
    batch_size: int = BATCH_SIZE,
    heartbeat: Callable[[], None] | None = None,
) -> dict:
    """Zero every progress row of missions with ``reset_frequency == cadence``.

    *heartbeat* is called after each committed batch; the scheduler passes
    the job lease's renewal so a long reset keeps its lease.

    Returns a summary dict: ``{"cadence": ..., "missions": N, "rows_reset": M}``.

    Raises
    ------
    InvalidCadenceError
        If *cadence* is not ``daily`` or ``weekly``.
    LeaseLostError
        Propagated from *heartbeat*; batches already committed stay reset.
    """
    if cadence not in RESETTABLE_CADENCES:
        raise InvalidCadenceError(
            f"Cannot reset missions with cadence {cadence!r}",
            {"cadence": cadence, "allowed": sorted(RESETTABLE_CADENCES)},
        )

    started = time.monotonic()
    with get_session(engine) as session:
        mission_ids = session.scalars(
            select(Mission.id).where(Mission.reset_frequency == cadence)
        ).all()

    rows_reset = 0
    if mission_ids:
        dirty = or_(MissionProgress.progress != 0, MissionProgress.completed.is_(True))
        while True:
            with get_session(engine) as session:
                ids = session.scalars(
                    select(MissionProgress.id)
                    .where(MissionProgress.mission_id.in_(mission_ids), dirty)
                    .order_by(MissionProgress.id)
                    .limit(batch_size)
                ).all()
                if not ids:
                    break

                result = session.execute(
                    update(MissionProgress)
                    .where(MissionProgress.id.in_(ids), dirty)
                    .values(
                        progress=0,
                        completed=False,
                        completed_at=None,
                        reset_count=MissionProgress.reset_count + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                rows_reset += result.rowcount  # type: ignore[operator]
                logger.info(
                    "Reset %s: %d progress rows in batch (total so far: %d)",
                    cadence, result.rowcount, rows_reset,
                )
            if heartbeat is not None:
                heartbeat()

    logger.info(
        "Mission reset complete — cadence=%s, %d missions, %d rows in %.2fs",
        cadence, len(mission_ids), rows_reset, time.monotonic() - started,
        extra={"cadence": str(cadence), "rows_reset": rows_reset},
    )
    return {"cadence": str(cadence), "missions": len(mission_ids), "rows_reset": rows_reset}


def reset_monthly_xp(engine: Engine) -> dict[str, int]:
    """Set every user's ``monthly_xp`` to 0.  ``total_xp`` is untouched."""
    with get_session(engine) as session:
        result = session.execute(
            update(User)
            .where(User.monthly_xp != 0)
            .values(monthly_xp=0)
            .execution_options(synchronize_session=False)
        )
        users_reset = result.rowcount  # type: ignore[assignment]

    logger.info("Monthly XP reset for %d users", users_reset, extra={"users_reset": users_reset})
    return {"users_reset": users_reset}
