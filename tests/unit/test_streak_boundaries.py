"""Unit tests for streak evaluation and interval boundaries."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from questline.progression.streak_service import StreakChange, StreakState, evaluate_streak, interval_index


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestIntervalIndex:
    """ISO week and calendar month boundaries."""

    def test_monday_starts_new_week(self):
        # 2026-03-08 is a Sunday, 2026-03-09 a Monday.
        sunday = interval_index("weekly", _utc(2026, 3, 8, 23, 59))
        monday = interval_index("weekly", _utc(2026, 3, 9, 0, 0))
        assert monday == sunday + 1

    def test_same_week(self):
        assert interval_index("weekly", _utc(2026, 3, 9)) == interval_index("weekly", _utc(2026, 3, 15, 22))

    def test_month_rollover(self):
        dec = interval_index("monthly", _utc(2025, 12, 31))
        jan = interval_index("monthly", _utc(2026, 1, 1))
        assert jan == dec + 1

    def test_naive_treated_as_utc(self):
        assert interval_index("weekly", datetime(2026, 3, 9)) == interval_index("weekly", _utc(2026, 3, 9))

    def test_unknown_interval(self):
        with pytest.raises(ValueError):
            interval_index("daily", _utc(2026, 1, 1))


class TestEvaluateStreak:
    """Weekly streak with one grace period."""

    def test_first_activity_starts(self):
        state, change = evaluate_streak(StreakState(), "weekly", 1, _utc(2026, 3, 10))
        assert change == StreakChange.STARTED
        assert state.current_count == 1
        assert state.longest_count == 1
        assert state.grace_remaining == 1

    def test_same_week_no_change(self):
        start, _ = evaluate_streak(StreakState(), "weekly", 1, _utc(2026, 3, 10))
        state, change = evaluate_streak(start, "weekly", 1, _utc(2026, 3, 12))
        assert change == StreakChange.SAME_INTERVAL
        assert state.current_count == 1
        assert state.last_activity_at == _utc(2026, 3, 12)

    def test_next_week_extends(self):
        start, _ = evaluate_streak(StreakState(), "weekly", 1, _utc(2026, 3, 10))
        state, change = evaluate_streak(start, "weekly", 1, _utc(2026, 3, 17))
        assert change == StreakChange.EXTENDED
        assert state.current_count == 2
        assert state.longest_count == 2

    def test_one_missed_week_uses_grace(self):
        start, _ = evaluate_streak(StreakState(), "weekly", 1, _utc(2026, 3, 10))
        state, change = evaluate_streak(start, "weekly", 1, _utc(2026, 3, 24))
        assert change == StreakChange.GRACE_USED
        assert state.current_count == 1
        assert state.grace_remaining == 0

    def test_grace_exhausted_resets(self):
        start, _ = evaluate_streak(StreakState(), "weekly", 1, _utc(2026, 3, 10))
        used, _ = evaluate_streak(start, "weekly", 1, _utc(2026, 3, 24))
        state, change = evaluate_streak(used, "weekly", 1, _utc(2026, 4, 7))
        assert change == StreakChange.RESET
        assert state.current_count == 1
        assert state.grace_remaining == 1
        assert state.streak_broken_at == _utc(2026, 4, 7)

    def test_reset_keeps_longest(self):
        state = StreakState(
            current_count=5, longest_count=5, grace_remaining=0, last_activity_at=_utc(2026, 3, 10),
        )
        new, change = evaluate_streak(state, "weekly", 1, _utc(2026, 5, 5))
        assert change == StreakChange.RESET
        assert new.longest_count == 5

    def test_older_activity_ignored(self):
        start, _ = evaluate_streak(StreakState(), "weekly", 1, _utc(2026, 3, 17))
        state, change = evaluate_streak(start, "weekly", 1, _utc(2026, 3, 2))
        assert change == StreakChange.IGNORED
        assert state == start

    def test_monthly_without_grace(self):
        start, _ = evaluate_streak(StreakState(), "monthly", 0, _utc(2026, 1, 20))
        state, change = evaluate_streak(start, "monthly", 0, _utc(2026, 3, 2))
        assert change == StreakChange.RESET
