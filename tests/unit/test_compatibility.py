"""Unit tests for compatibility scorers."""

from __future__ import annotations

import pytest

from questline.squads.compatibility import AxisDistanceScorer, CosineTraitScorer, mean_pairwise_score


class TestCosineTraitScorer:
    def test_identical_vectors(self):
        scorer = CosineTraitScorer()
        assert scorer.score({"energy": 0.5, "social": 0.5}, {"energy": 0.5, "social": 0.5}) == pytest.approx(1.0)

    def test_opposite_vectors(self):
        scorer = CosineTraitScorer()
        assert scorer.score({"energy": 1.0}, {"energy": -1.0}) == pytest.approx(-1.0)

    def test_no_shared_axes_is_neutral(self):
        """Users with no common axis score 0."""
        assert CosineTraitScorer().score({"energy": 1.0}, {"outdoor": 1.0}) == 0.0

    def test_zero_vector_is_neutral(self):
        assert CosineTraitScorer().score({"energy": 0.0}, {"energy": 1.0}) == 0.0

    def test_out_of_range_values_clamped(self):
        scorer = CosineTraitScorer()
        assert scorer.score({"energy": 5.0}, {"energy": 1.0}) == pytest.approx(1.0)

    def test_symmetric(self):
        scorer = CosineTraitScorer()
        a = {"energy": 0.3, "social": -0.4, "budget": 0.9}
        b = {"energy": -0.1, "social": 0.6, "budget": 0.2}
        assert scorer.score(a, b) == pytest.approx(scorer.score(b, a))


class TestAxisDistanceScorer:
    def test_identical(self):
        assert AxisDistanceScorer().score({"energy": 0.2}, {"energy": 0.2}) == pytest.approx(1.0)

    def test_opposite_extremes(self):
        assert AxisDistanceScorer().score({"energy": 1.0}, {"energy": -1.0}) == pytest.approx(-1.0)

    def test_magnitude_matters(self):
        """Mildly and strongly positive users are not identical."""
        assert AxisDistanceScorer().score({"energy": 0.2}, {"energy": 1.0}) < 1.0


class TestMeanPairwise:
    def test_fewer_than_two(self):
        assert mean_pairwise_score(CosineTraitScorer(), [{"energy": 1.0}]) == 0.0

    def test_three_members(self):
        profiles = [{"energy": 1.0}, {"energy": 1.0}, {"energy": -1.0}]
        # pairs: +1, -1, -1
        assert mean_pairwise_score(CosineTraitScorer(), profiles) == pytest.approx(-1 / 3)
