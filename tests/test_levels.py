"""
tests/test_levels.py — Level Calculator
========================================

Pure calculation tests for the threshold table in questboard.constants.
"""

from __future__ import annotations

import pytest

from questboard.constants import (
    LEVEL_THRESHOLDS,
    MAX_LEVEL,
    level_for,
    level_progress,
    title_for,
    xp_for_next_level,
)


class TestLevelFor:
    @pytest.mark.parametrize(
        ("total_xp", "expected"),
        [
            (0, 1),
            (99, 1),
            (100, 2),
            (299, 2),
            (300, 3),
            (699, 3),
            (700, 4),
            (1499, 4),
            (1500, 5),
            (2999, 5),
            (3000, 6),
            (5999, 6),
            (6000, 7),
            (1_000_000, 7),
        ],
    )
    def test_threshold_boundaries(self, total_xp, expected):
        assert level_for(total_xp) == expected

    def test_negative_total_is_level_one(self):
        assert level_for(-50) == 1

    def test_monotonic(self):
        levels = [level_for(xp) for xp in range(0, 7000, 7)]
        assert levels == sorted(levels)

    def test_every_threshold_maps_to_its_level(self):
        for level, threshold in enumerate(LEVEL_THRESHOLDS, start=1):
            assert level_for(threshold) == level


class TestTitles:
    def test_known_titles(self):
        assert title_for(1) == "Newbie"
        assert title_for(4) == "Insider"
        assert title_for(7) == "Ambassador"

    def test_out_of_range_is_clamped(self):
        assert title_for(0) == "Newbie"
        assert title_for(99) == "Ambassador"


class TestNextLevel:
    def test_next_threshold(self):
        assert xp_for_next_level(0) == 100
        assert xp_for_next_level(150) == 300
        assert xp_for_next_level(5999) == 6000

    def test_none_at_max_level(self):
        assert xp_for_next_level(6000) is None
        assert level_for(6000) == MAX_LEVEL

    def test_progress_fraction(self):
        assert level_progress(0) == 0.0
        assert level_progress(200) == pytest.approx(0.5)
        assert level_progress(6000) == 1.0
