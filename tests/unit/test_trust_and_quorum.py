"""Unit tests for the trust formula and removal vote quorum."""

from __future__ import annotations

import pytest

from questline.progression.trust_service import TrustCounters, compute_trust_score
from questline.squads.warmup import ReadinessReport, removal_quorum


class TestComputeTrustScore:
    """Fixed weighted trust formula."""

    def test_baseline(self):
        assert compute_trust_score(TrustCounters()) == 50.0

    def test_weights(self):
        counters = TrustCounters(
            successful_quests=10, cancelled_quests=1, no_show_quests=1, flags_received=1, warnings_issued=1,
        )
        # 50 + 20 - 3 - 4 - 5 - 10
        assert compute_trust_score(counters) == 48.0

    def test_rating_adjusts_around_neutral(self):
        assert compute_trust_score(TrustCounters(avg_rating=4.5)) == 65.0
        assert compute_trust_score(TrustCounters(avg_rating=3.0)) == 50.0

    def test_clamped(self):
        assert compute_trust_score(TrustCounters(successful_quests=100)) == 100.0
        assert compute_trust_score(TrustCounters(warnings_issued=9)) == 0.0

    def test_rounded(self):
        assert compute_trust_score(TrustCounters(avg_rating=3.333)) == 53.33


class TestRemovalQuorum:
    @pytest.mark.parametrize(
        ("others", "fraction", "expected"),
        [(1, 0.5, 1), (2, 0.5, 1), (3, 0.5, 2), (5, 0.5, 3), (0, 0.5, 1), (4, 1.0, 4)],
    )
    def test_quorum(self, others, fraction, expected):
        assert removal_quorum(others, fraction) == expected


class TestReadinessReport:
    def test_threshold(self):
        report = ReadinessReport(squad_id=1, status="warming_up", ready_count=3, total=4, threshold_pct=75)
        assert report.ready_pct == 75.0
        assert report.is_ready

    def test_empty_squad_never_ready(self):
        report = ReadinessReport(squad_id=1, status="warming_up", ready_count=0, total=0, threshold_pct=0)
        assert not report.is_ready
