"""
questboard.engine.geo — Check-in Proximity Verification
=========================================================

A check-in only counts toward missions when the user was physically close
to the establishment.  Event producers call :func:`verify_check_in` before
emitting :class:`~questboard.engine.events.CheckInPerformed`.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from questboard.config import QuestboardConfig

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_000.0
DEFAULT_RADIUS_M = 100.0


@dataclass(frozen=True, slots=True)
class CheckInVerification:
    verified: bool
    distance_m: float | None


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in metres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


def verify_check_in(
    user_lat: float | None,
    user_lng: float | None,
    est_lat: float | None,
    est_lng: float | None,
    *,
    radius_m: float = DEFAULT_RADIUS_M,
    dev_mode: bool = False,
) -> CheckInVerification:
    """Decide whether a check-in is verified (within *radius_m*).

    Missing coordinates on either side never verify.  ``dev_mode`` verifies
    unconditionally for local testing and logs a warning every time.
    """
    distance = None
    if None not in (user_lat, user_lng, est_lat, est_lng):
        distance = haversine_m(user_lat, user_lng, est_lat, est_lng)

    if dev_mode:
        logger.warning(
            "Check-in verification bypassed (dev mode)",
            extra={"distance_m": distance},
        )
        return CheckInVerification(verified=True, distance_m=distance)

    if distance is None:
        return CheckInVerification(verified=False, distance_m=None)
    return CheckInVerification(verified=distance <= radius_m, distance_m=round(distance, 1))


def verify_with_config(
    cfg: QuestboardConfig,
    user_lat: float | None,
    user_lng: float | None,
    est_lat: float | None,
    est_lng: float | None,
) -> CheckInVerification:
    """:func:`verify_check_in` with radius and dev mode from ``config.yaml``."""
    return verify_check_in(
        user_lat, user_lng, est_lat, est_lng,
        radius_m=cfg.checkin_radius_m,
        dev_mode=cfg.checkin_dev_mode,
    )
