"""
questboard.worker.__main__ — Entry point for ``python -m questboard.worker``
===========================================================================

Wiring:
1. Load .env (secrets, DATABASE_URL).
2. Load config.yaml (timezone, schedules, limits).
3. Create the SQLAlchemy engine and ensure tables + seed data exist.
4. Either run one job and exit (``--run-once <job>``) or start the
   blocking scheduler.

Run with::

    python -m questboard.worker
    python -m questboard.worker --run-once leaderboard_refresh
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

from dotenv import load_dotenv

from questboard.config import load_config
from questboard.database.engine import create_db_engine, init_db
from questboard.worker.scheduler import JOBS, build_scheduler, execute_job

logger = logging.getLogger("questboard")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="python -m questboard.worker")
    parser.add_argument(
        "--run-once",
        metavar="JOB",
        choices=sorted(JOBS),
        help="run a single job immediately and exit",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Bootstrap and run the scheduler worker."""
    # 1. Environment variables.
    load_dotenv()
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
        datefmt="%H:%M:%S",
    )
    args = _parse_args(argv)

    # 2. Soft configuration.
    cfg = load_config()
    logger.info("Config loaded — timezone: %s", cfg.timezone)

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)

    # 4a. One-shot.
    if args.run_once:
        summary = execute_job(engine, cfg, args.run_once)
        if summary is None:
            logger.warning("Job %s is already running elsewhere; nothing done", args.run_once)
            return 1
        logger.info("Job %s finished: %s", args.run_once, summary)
        return 0

    # 4b. Scheduler (blocks until Ctrl+C or SIGTERM).
    scheduler = build_scheduler(engine, cfg)
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Worker shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
