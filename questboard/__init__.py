"""
Questboard — Mission, XP & Badge Progress Engine
=================================================
Tracks what community members do (reviews, check-ins, helpful votes,
follows, photo uploads), turns it into mission progress, XP, levels,
badges and feature unlocks, and publishes ranked leaderboards.

Package layout::

    questboard/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Level thresholds, titles, reason codes
    ├── exceptions.py      # Input / contention error hierarchy
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, sessions, retry helper
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Default missions, badges, unlocks
    ├── engine/            # Pure logic, no I/O
    │   ├── requirements.py  # Mission requirement variants
    │   ├── events.py      # Domain events from producers
    │   ├── periods.py     # Operator-timezone windows + streak rule
    │   ├── badges.py      # Badge rule registry
    │   └── geo.py         # Check-in distance verification
    ├── services/
    │   ├── xp_service.py        # grant_xp: ledger, level, streak, unlocks
    │   ├── progress_service.py  # record_progress / set_progress_absolute
    │   ├── tracking_service.py  # Event → mission progress dispatch
    │   ├── badge_service.py     # Badge auto-award
    │   ├── reset_service.py     # Daily / weekly / monthly resets
    │   ├── leaderboard_service.py  # Snapshot rebuilds
    │   ├── job_lock.py          # Cross-process single-run guard
    │   └── admin_service.py     # Audit-logged admin mutations
    ├── worker/            # APScheduler process (python -m questboard.worker)
    └── api/               # FastAPI read + admin surface
"""

__version__ = "0.1.0"
