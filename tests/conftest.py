"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of questboard.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine, event  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from questboard.database.models import Base  # noqa: E402

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


def _explicit_sqlite_transactions(engine: Engine, begin: str = "BEGIN") -> None:
    """Let SQLAlchemy, not pysqlite, emit BEGIN.

    pysqlite defers BEGIN until the first DML statement, so a SAVEPOINT
    issued before it becomes the outermost transaction and its RELEASE
    commits.  Emitting BEGIN ourselves keeps ``insert_if_absent`` nested.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql(begin)


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Questboard tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so every session (and ``asyncio.to_thread``) shares the
    same in-memory database.
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _explicit_sqlite_transactions(engine)
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def engine(db_engine: Engine) -> Engine:
    """Alias used by service tests."""
    return db_engine


@pytest.fixture
def file_engine(tmp_path) -> Engine:
    """File-backed SQLite engine for multi-threaded contention tests.

    Each thread gets its own connection.  Transactions start with
    ``BEGIN IMMEDIATE`` so the first statement of a transaction takes the
    database write lock, which serializes concurrent read-modify-write
    units the way ``SELECT … FOR UPDATE`` does on PostgreSQL.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'questboard.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    _explicit_sqlite_transactions(engine, "BEGIN IMMEDIATE")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a session for read-only assertions; rolled back afterwards."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


@pytest.fixture
def admin_token():
    """Generate a valid admin JWT for use in API integration tests."""
    return make_admin_token()


def make_admin_token(sub: str = "99999", username: str = "FixtureAdmin") -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    import jwt

    from questboard.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username, "is_admin": True},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


@pytest.fixture
def client(db_engine):
    """FastAPI TestClient wired to the in-memory engine and default config."""
    from fastapi.testclient import TestClient

    from questboard.api import deps
    from questboard.api.main import app
    from questboard.config import QuestboardConfig

    app.dependency_overrides[deps.get_engine] = lambda: db_engine
    app.dependency_overrides[deps.get_config] = lambda: QuestboardConfig()
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
