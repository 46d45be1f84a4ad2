"""
questboard.services.job_lock — Cross-Process Single-Run Leases
===============================================================

APScheduler's ``max_instances=1`` stops one worker from overlapping itself.
This lease table stops two workers (or a worker and an admin-triggered run)
from running the same job at once.

Acquire is a single conditional ``UPDATE``:

.. code-block:: sql

    UPDATE job_locks SET holder = :me, locked_until = :now + ttl
    WHERE name = :job AND (locked_until IS NULL OR locked_until < :now)

``rowcount == 1`` means the lease is ours.  The TTL bounds how long a
crashed holder can block the job; a live holder renews it between batches
(:meth:`Lease.heartbeat`) and stops if someone else has taken it over.
"""

from __future__ import annotations

import logging
import os
import socket
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import Engine, or_, update

from questboard.database.engine import get_session, insert_if_absent
from questboard.database.models import JobLock
from questboard.engine.periods import utcnow
from questboard.exceptions import LeaseLostError

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 1800


def make_holder_id() -> str:
    """``host:pid:nonce`` — unique per acquisition attempt."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def acquire(
    engine: Engine,
    name: str,
    holder: str,
    *,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
    now: datetime | None = None,
) -> bool:
    """Try to take the lease for *name*.  Never blocks."""
    now = now or utcnow()
    with get_session(engine) as session:
        insert_if_absent(session, JobLock(name=name, holder=None, locked_until=None))
        result = session.execute(
            update(JobLock)
            .where(
                JobLock.name == name,
                or_(JobLock.locked_until.is_(None), JobLock.locked_until < now),
            )
            .values(holder=holder, locked_until=now + timedelta(seconds=ttl_seconds))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def release(engine: Engine, name: str, holder: str) -> bool:
    """Drop the lease if *holder* still owns it."""
    with get_session(engine) as session:
        result = session.execute(
            update(JobLock)
            .where(JobLock.name == name, JobLock.holder == holder)
            .values(holder=None, locked_until=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def renew(
    engine: Engine,
    name: str,
    holder: str,
    *,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
    now: datetime | None = None,
) -> bool:
    """Push the lease's expiry to ``now + ttl`` if *holder* still owns it."""
    now = now or utcnow()
    with get_session(engine) as session:
        result = session.execute(
            update(JobLock)
            .where(JobLock.name == name, JobLock.holder == holder)
            .values(locked_until=now + timedelta(seconds=ttl_seconds))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


@dataclass(slots=True)
class Lease:
    """Outcome of :func:`job_lock`.  Truthy when the lease was acquired."""

    engine: Engine
    name: str
    holder: str
    ttl_seconds: int
    acquired: bool

    def __bool__(self) -> bool:
        return self.acquired

    def heartbeat(self) -> None:
        """Renew the lease between units of work.

        Raises
        ------
        LeaseLostError
            If the lease expired and another holder took it.
        """
        if not renew(self.engine, self.name, self.holder, ttl_seconds=self.ttl_seconds):
            logger.warning(
                "Lease for job %s lost mid-run", self.name, extra={"job_id": self.name}
            )
            raise LeaseLostError(
                f"Lease for job {self.name!r} was taken over",
                {"job_id": self.name, "holder": self.holder},
            )


@contextmanager
def job_lock(
    engine: Engine,
    name: str,
    *,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
) -> Iterator[Lease]:
    """Hold the lease for the body of the ``with`` block.

    Yields a falsy :class:`Lease` (and runs nothing on the lock's behalf)
    if another holder has it; callers skip their work in that case.  Long
    jobs call :meth:`Lease.heartbeat` between batches so the lease outlives
    the TTL::

        with job_lock(engine, "daily_reset") as lease:
            if lease:
                reset_missions(engine, "daily", heartbeat=lease.heartbeat)
    """
    holder = make_holder_id()
    acquired = acquire(engine, name, holder, ttl_seconds=ttl_seconds)
    lease = Lease(engine, name, holder, ttl_seconds, acquired)
    if not acquired:
        logger.info("Job %s already running elsewhere, skipping", name, extra={"job_id": name})
        yield lease
        return
    try:
        yield lease
    finally:
        if not release(engine, name, holder):
            logger.warning(
                "Lease for job %s expired before release", name, extra={"job_id": name}
            )
