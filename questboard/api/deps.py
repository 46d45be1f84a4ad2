"""
questboard.api.deps — FastAPI dependency injection
====================================================

Engine, config and session providers, plus the admin guard.

Admin requests carry ``Authorization: Bearer <jwt>``.  The token is HS256
signed with ``JWT_SECRET`` and must hold ``is_admin: true`` and a numeric
``sub`` (the admin's user id).  :func:`get_current_admin` turns it into an
:class:`AdminPrincipal`, whose ``actor_id`` is what the audit log records.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated, Any

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from questboard.config import QuestboardConfig, load_config
from questboard.database.engine import create_db_engine

_WEAK_SECRETS = frozenset({
    "questboard-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def validate_jwt_secret(secret: str) -> str:
    """Return *secret* if it is fit for signing admin tokens.

    Raises
    ------
    RuntimeError
        If it is blank, a known weak default, or shorter than 32 characters.
    """
    if not secret.strip():
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret.lower() in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


# Checked at import: the API refuses to start without a usable secret
JWT_SECRET: str = validate_jwt_secret(os.getenv("JWT_SECRET", ""))


@dataclass(frozen=True, slots=True)
class AdminPrincipal:
    """The admin behind a request."""

    actor_id: int
    username: str | None = None

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> AdminPrincipal:
        """Build from decoded JWT claims.  Raises ValueError for a non-numeric ``sub``."""
        sub = claims.get("sub")
        if not isinstance(sub, str) or not sub.isdigit():
            raise ValueError(f"Token subject {sub!r} is not a user id")
        return cls(actor_id=int(sub), username=claims.get("username"))


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> QuestboardConfig:
    return load_config()


def get_session(engine: Annotated[Engine, Depends(get_engine)]):
    with Session(engine) as session:
        yield session


def get_current_admin(
    authorization: Annotated[str | None, Header()] = None,
) -> AdminPrincipal:
    """Validate the bearer token.  401 if missing or invalid, 403 if not an admin."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    if claims.get("is_admin") is not True:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    try:
        return AdminPrincipal.from_claims(claims)
    except ValueError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token subject")
