"""Unit tests for level lookup."""

from __future__ import annotations

import pytest

from questline.progression.levels import LEVEL_THRESHOLDS, compute_level


class TestComputeLevel:
    """Level thresholds."""

    def test_zero_xp(self):
        info = compute_level(0)
        assert info.level == 1
        assert info.name == "Explorer"
        assert info.next_level_xp == 100

    @pytest.mark.parametrize(
        ("xp", "level"),
        [(99, 1), (100, 2), (249, 2), (250, 3), (500, 4), (1199, 5), (1200, 6), (9999, 11), (10000, 12)],
    )
    def test_boundaries(self, xp, level):
        assert compute_level(xp).level == level

    def test_max_level(self):
        info = compute_level(250_000)
        assert info.level == 12
        assert info.name == "Legend"
        assert info.next_level_xp is None
        assert info.progress == 1.0

    def test_negative_clamps_to_first_level(self):
        assert compute_level(-50).level == 1

    def test_progress(self):
        """Halfway between 100 and 250."""
        assert compute_level(175).progress == pytest.approx(0.5)

    def test_thresholds_strictly_increasing(self):
        mins = [row[1] for row in LEVEL_THRESHOLDS]
        assert mins == sorted(set(mins))
        assert [row[0] for row in LEVEL_THRESHOLDS] == list(range(1, len(LEVEL_THRESHOLDS) + 1))
