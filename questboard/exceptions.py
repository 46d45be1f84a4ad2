"""
questboard.exceptions — Error Hierarchy
========================================

Two families:

* **Input errors** (:class:`QuestboardInputError`) — caller bugs such as an
  unknown user, an unknown mission or a negative increment.  Raised before
  any write, never retried, never swallowed by the engine.
* **Contention errors** (:class:`TransactionRetryExhausted`) — a transient
  lock/serialization conflict that kept recurring after the transparent
  retries in :func:`questboard.database.engine.run_in_transaction`.

"Already done" outcomes (mission already completed, badge already owned)
are *not* errors; services report them through their return values.
"""

from __future__ import annotations

from typing import Any


class QuestboardError(Exception):
    """Base exception carrying a message and structured details for logs."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details: dict[str, Any] = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict (API error bodies, logs)."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        details_str = f" | Details: {self.details}" if self.details else ""
        return f"{self.message}{details_str}"


# ---------------------------------------------------------------------------
# Input errors — fatal, caller bug
# ---------------------------------------------------------------------------
class QuestboardInputError(QuestboardError):
    """Rejected input; no state was changed."""


class UserNotFoundError(QuestboardInputError):
    def __init__(self, user_id: int) -> None:
        super().__init__(f"User {user_id} does not exist", {"user_id": user_id})


class MissionNotFoundError(QuestboardInputError):
    def __init__(self, mission_id: int) -> None:
        super().__init__(f"Mission {mission_id} does not exist", {"mission_id": mission_id})


class BadgeNotFoundError(QuestboardInputError):
    def __init__(self, badge_id: int) -> None:
        super().__init__(f"Badge {badge_id} does not exist", {"badge_id": badge_id})


class ZoneNotFoundError(QuestboardInputError):
    def __init__(self, zone: str) -> None:
        super().__init__(f"No establishment is in zone {zone!r}", {"zone": zone})


class InvalidPeriodError(QuestboardInputError):
    """XP history windows are limited to a fixed set of day counts."""


class InvalidIncrementError(QuestboardInputError):
    """Progress increments and absolute values must be >= 0."""


class InvalidAmountError(QuestboardInputError):
    """An XP grant would drive the user's total below zero."""


class InvalidCadenceError(QuestboardInputError):
    """Mission resets only exist for the ``daily`` and ``weekly`` cadences."""


class InvalidRequirementError(QuestboardInputError):
    """A mission requirement failed validation at definition time."""


# ---------------------------------------------------------------------------
# Contention
# ---------------------------------------------------------------------------
class TransactionRetryExhausted(QuestboardError):
    """A transient conflict persisted past the retry budget."""


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------
class LeaseLostError(QuestboardError):
    """A running job's lease expired and was taken over; the job stops."""
