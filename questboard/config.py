"""
questboard.config — YAML Configuration Loader
==============================================

Reads ``config.yaml`` for operator settings: the timezone every "today"
and "this week" is computed in, who counts as a non-player, leaderboard
sizes, job schedules and the flat XP bonuses paid by the tracker.

Secrets and the database URL stay in the environment (``.env``).

Usage::

    from questboard.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.timezone)          # "Asia/Bangkok"
    print(cfg.tz)                # ZoneInfo('Asia/Bangkok')
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from zoneinfo import ZoneInfo

import yaml

DEFAULT_TIMEZONE = "Asia/Bangkok"

DEFAULT_LEADERBOARD_LIMITS: dict[str, int] = {
    "global": 100,
    "monthly": 50,
    "weekly": 100,
    "reviewers": 50,
    "photographers": 50,
    "checkins": 50,
    "helpful": 50,
    "zone": 50,
}


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class QuestboardConfig:
    """Immutable configuration loaded from ``config.yaml``.

    Every field has a default so a partial file (or none, in tests) still
    yields a usable config.
    """

    # Time
    timezone: str = DEFAULT_TIMEZONE

    # Gamification audience
    non_player_account_types: tuple[str, ...] = ("employee",)

    # Leaderboards
    leaderboard_limits: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_LEADERBOARD_LIMITS)
    )

    # Scheduler (crontab expressions, evaluated in ``timezone``)
    daily_reset_cron: str = "0 0 * * *"
    weekly_reset_cron: str = "0 0 * * mon"
    monthly_reset_cron: str = "0 0 1 * *"
    leaderboard_refresh_cron: str = "0 * * * *"
    lock_ttl_seconds: int = 1800

    # Resets
    reset_batch_size: int = 1000

    # Check-ins
    checkin_radius_m: float = 100.0
    checkin_dev_mode: bool = False

    # Flat XP bonuses granted by the tracker
    review_bonus_xp: int = 50
    check_in_bonus_xp: int = 15

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def leaderboard_limit(self, board: str) -> int:
        return self.leaderboard_limits.get(board, DEFAULT_LEADERBOARD_LIMITS.get(board, 50))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path | None = None) -> QuestboardConfig:
    """Read *path* and return a :class:`QuestboardConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.  Defaults to
        ``$QUESTBOARD_CONFIG`` or ``config.yaml`` in the working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If ``timezone`` is not a known IANA zone.
    """
    config_path = Path(path or os.getenv("QUESTBOARD_CONFIG", "config.yaml"))
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return config_from_dict(raw)


def config_from_dict(raw: dict) -> QuestboardConfig:
    """Build a config from an already-parsed mapping (YAML layout)."""
    defaults = QuestboardConfig()
    leaderboards = raw.get("leaderboards") or {}
    schedule = raw.get("schedule") or {}
    jobs = raw.get("jobs") or {}
    checkin = raw.get("checkin") or {}
    xp = raw.get("xp") or {}
    reset = raw.get("reset") or {}

    timezone = str(raw.get("timezone", defaults.timezone))
    try:
        ZoneInfo(timezone)
    except (KeyError, ValueError) as exc:
        raise ValueError(f"Unknown timezone in config: {timezone!r}") from exc

    limits = dict(DEFAULT_LEADERBOARD_LIMITS)
    limits.update({k: int(v) for k, v in (leaderboards.get("limits") or {}).items()})

    return QuestboardConfig(
        timezone=timezone,
        non_player_account_types=tuple(
            raw.get("non_player_account_types", defaults.non_player_account_types)
        ),
        leaderboard_limits=limits,
        daily_reset_cron=schedule.get("daily_reset", defaults.daily_reset_cron),
        weekly_reset_cron=schedule.get("weekly_reset", defaults.weekly_reset_cron),
        monthly_reset_cron=schedule.get("monthly_reset", defaults.monthly_reset_cron),
        leaderboard_refresh_cron=leaderboards.get(
            "refresh_cron", defaults.leaderboard_refresh_cron
        ),
        lock_ttl_seconds=int(jobs.get("lock_ttl_seconds", defaults.lock_ttl_seconds)),
        reset_batch_size=int(reset.get("batch_size", defaults.reset_batch_size)),
        checkin_radius_m=float(checkin.get("radius_m", defaults.checkin_radius_m)),
        checkin_dev_mode=bool(checkin.get("dev_mode", defaults.checkin_dev_mode)),
        review_bonus_xp=int(xp.get("review_bonus", defaults.review_bonus_xp)),
        check_in_bonus_xp=int(xp.get("check_in_bonus", defaults.check_in_bonus_xp)),
    )
