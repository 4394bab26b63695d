"""Unit tests for the achievement criteria language."""

from __future__ import annotations

import pytest

from questline.errors import InvalidCriteria
from questline.progression.criteria import evaluate_criteria, validate_criteria


class TestValidateCriteria:
    @pytest.mark.parametrize(
        "criteria",
        [
            {"metric": "completed_quests", "op": ">=", "value": 5},
            {"type": "quest_count", "count": 1},
            {"type": "total_xp", "amount": 1000},
            {"all": [{"metric": "no_shows", "op": "==", "value": 0}, {"type": "quest_count", "count": 5}]},
            {"not": {"metric": "level", "op": "<", "value": 3}},
        ],
    )
    def test_valid(self, criteria):
        validate_criteria(criteria)

    @pytest.mark.parametrize(
        "criteria",
        [
            ["completed_quests"],
            {"metric": "karma", "value": 1},
            {"metric": "total_xp", "op": "~", "value": 1},
            {"metric": "total_xp", "value": "lots"},
            {"metric": "total_xp", "value": True},
            {"type": "quest_count"},
            {"type": "mystery", "count": 1},
            {"any": []},
        ],
    )
    def test_invalid(self, criteria):
        with pytest.raises(InvalidCriteria):
            validate_criteria(criteria)


class TestEvaluateCriteria:
    def test_shorthand(self):
        assert evaluate_criteria({"type": "quest_count", "count": 5}, {"completed_quests": 5})
        assert not evaluate_criteria({"type": "quest_count", "count": 5}, {"completed_quests": 4})

    def test_missing_metric_defaults_to_zero(self):
        assert not evaluate_criteria({"metric": "friend_recruits", "op": ">=", "value": 1}, {})

    def test_composition(self):
        reliable = {
            "all": [
                {"type": "quest_count", "count": 5},
                {"metric": "no_shows", "op": "==", "value": 0},
            ]
        }
        assert evaluate_criteria(reliable, {"completed_quests": 6, "no_shows": 0})
        assert not evaluate_criteria(reliable, {"completed_quests": 6, "no_shows": 1})

    def test_any_and_not(self):
        expr = {"any": [{"type": "level", "level": 5}, {"not": {"metric": "total_xp", "op": "<", "value": 900}}]}
        assert evaluate_criteria(expr, {"level": 2, "total_xp": 950})
        assert not evaluate_criteria(expr, {"level": 2, "total_xp": 100})
