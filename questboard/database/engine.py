"""
questboard.database.engine — Database Connection, Sessions & Retry
===================================================================

Everything that touches the database goes through one of three helpers:

* :func:`get_session` — commit-on-success / rollback-on-error context
  manager for plain read/write blocks.
* :func:`run_in_transaction` — runs ``fn(session, ...)`` in a single
  transaction and transparently retries it when the database reports a
  transient conflict (serialization failure, deadlock, SQLite busy).
  The progress engine uses this so lock contention never surfaces as a
  user-visible error.
* :func:`run_db` — ships a synchronous function to a worker thread so
  async callers (FastAPI handlers, event producers) never block their
  event loop on psycopg2.

Usage::

    from questboard.database.engine import create_db_engine, init_db

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS … + seed
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Callable
from contextlib import contextmanager
from typing import Concatenate, ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from questboard.database.models import Base
from questboard.exceptions import TransactionRetryExhausted

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# PostgreSQL SQLSTATEs worth retrying: serialization_failure, deadlock_detected,
# lock_not_available
_TRANSIENT_PGCODES = frozenset({"40001", "40P01", "55P03"})

DEFAULT_ATTEMPTS = 3
_BACKOFF_SECONDS = 0.05


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Build a SQLAlchemy :class:`Engine` from ``DATABASE_URL``.

    Pool sizing suits an API process plus a scheduler worker:
    * ``pool_size=5`` — five persistent connections.
    * ``max_overflow=10`` — up to 10 extra connections under load.
    * ``pool_timeout=10`` — fail after 10 s if no connection is available.
    * ``pool_recycle=3600`` — recycle connections after 1 hour.

    Raises
    ------
    RuntimeError
        If no URL is given and ``DATABASE_URL`` is not set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    engine = create_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_timeout=10,
        pool_recycle=3600,
    )
    logger.info("Database engine created → %s", engine.url.host)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine, *, seed: bool = True) -> None:
    """Create all tables and (optionally) seed the default catalogue.

    Safe on every startup: ``create_all`` only creates missing tables and
    the seeder skips rows that already exist by name.

    .. note::

        In production the schema is managed by Alembic (``alembic upgrade
        head``).  ``create_all`` covers dev/test environments.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")

    if seed:
        from questboard.database.seed import seed_reference_data

        seed_reference_data(engine)


# ---------------------------------------------------------------------------
# Session helpers
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Yield a :class:`Session` that auto-commits on success and rolls back
    on exception.

    Usage::

        with get_session(engine) as session:
            session.add(Establishment(name="Bar 1", zone="soi6"))
    """
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def is_transient_error(exc: DBAPIError) -> bool:
    """True if *exc* is a lock/serialization conflict worth retrying."""
    pgcode = getattr(exc.orig, "pgcode", None)
    if pgcode in _TRANSIENT_PGCODES:
        return True
    return "database is locked" in str(exc.orig).lower()


def run_in_transaction(
    engine: Engine,
    fn: Callable[Concatenate[Session, P], T],
    *args: P.args,
    **kwargs: P.kwargs,
) -> T:
    """Run ``fn(session, *args, **kwargs)`` as one transaction, with retry.

    The whole unit of work is re-executed from scratch on a transient
    conflict, so *fn* must not have side effects outside the session.
    Non-transient errors (including every :class:`QuestboardInputError`)
    propagate on the first attempt with the transaction rolled back.

    Raises
    ------
    TransactionRetryExhausted
        If the conflict persists for ``DEFAULT_ATTEMPTS`` attempts.
    """
    for attempt in range(1, DEFAULT_ATTEMPTS + 1):
        try:
            with Session(engine, expire_on_commit=False) as session:
                with session.begin():
                    return fn(session, *args, **kwargs)
        except DBAPIError as exc:
            if not is_transient_error(exc):
                raise
            if attempt == DEFAULT_ATTEMPTS:
                raise TransactionRetryExhausted(
                    f"{fn.__name__} kept conflicting after {attempt} attempts",
                    {"function": fn.__name__},
                ) from exc
            logger.warning(
                "Transient conflict in %s (attempt %d/%d), retrying",
                fn.__name__, attempt, DEFAULT_ATTEMPTS,
                extra={"function": fn.__name__, "attempt": attempt},
            )
            time.sleep(_BACKOFF_SECONDS * attempt)
    raise AssertionError("unreachable")


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** database function on a background thread.

    Async event producers call the engine through this wrapper::

        outcome = await run_db(record_progress, engine, user_id, mission_id, 1)
    """
    return await asyncio.to_thread(func, *args, **kwargs)


# ---------------------------------------------------------------------------
# Idempotent insert
# ---------------------------------------------------------------------------
def insert_if_absent(session: Session, row: object) -> bool:
    """Insert *row* inside a SAVEPOINT; return False if it already existed.

    A unique/PK violation rolls back only the SAVEPOINT, so the caller's
    transaction stays alive.  Used for every "exactly once" row: progress
    records, badge grants, feature unlocks.
    """
    try:
        with session.begin_nested():
            session.add(row)
            session.flush()
    except IntegrityError:
        return False
    return True
