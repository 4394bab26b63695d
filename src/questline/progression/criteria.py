"""Achievement criteria: a small predicate language over an activity snapshot.

Criteria are stored as JSON on the achievement template::

    {"metric": "completed_quests", "op": ">=", "value": 5}
    {"all": [<criteria>, ...]}
    {"any": [<criteria>, ...]}
    {"not": <criteria>}

The shorthand forms ``{"type": "quest_count", "count": 5}``,
``{"type": "total_xp", "amount": 1000}`` and
``{"type": "friend_recruit_count", "count": 3}`` are accepted too.
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Mapping
from typing import Any

from questline.errors import InvalidCriteria

METRICS: frozenset[str] = frozenset({
    "completed_quests",
    "no_shows",
    "cancelled_signups",
    "total_xp",
    "level",
    "proofs_submitted",
    "proofs_approved",
    "squads_completed",
    "current_streak",
    "longest_streak",
    "friend_recruits",
    "achievements_unlocked",
})

OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    ">=": operator.ge,
    ">": operator.gt,
    "<=": operator.le,
    "<": operator.lt,
    "==": operator.eq,
    "!=": operator.ne,
}

# shorthand type -> (metric, key holding the threshold)
_SHORTHAND: dict[str, tuple[str, str]] = {
    "quest_count": ("completed_quests", "count"),
    "total_xp": ("total_xp", "amount"),
    "friend_recruit_count": ("friend_recruits", "count"),
    "streak_count": ("current_streak", "count"),
    "level": ("level", "level"),
}


def _normalize(criteria: Mapping[str, Any]) -> Mapping[str, Any]:
    kind = criteria.get("type")
    if kind is None:
        return criteria
    if kind not in _SHORTHAND:
        raise InvalidCriteria(f"Unknown criteria type: {kind}")
    metric, key = _SHORTHAND[kind]
    if key not in criteria:
        raise InvalidCriteria(f"Criteria type '{kind}' requires '{key}'")
    return {"metric": metric, "op": ">=", "value": criteria[key]}


def validate_criteria(criteria: Any) -> None:
    """Raise InvalidCriteria if the expression is malformed."""
    if not isinstance(criteria, Mapping):
        raise InvalidCriteria(f"Criteria must be an object, got {type(criteria).__name__}")

    criteria = _normalize(criteria)
    if "all" in criteria or "any" in criteria:
        key = "all" if "all" in criteria else "any"
        children = criteria[key]
        if not isinstance(children, list) or not children:
            raise InvalidCriteria(f"'{key}' requires a non-empty list")
        for child in children:
            validate_criteria(child)
        return
    if "not" in criteria:
        validate_criteria(criteria["not"])
        return

    metric = criteria.get("metric")
    if metric not in METRICS:
        raise InvalidCriteria(f"Unknown metric: {metric}")
    if criteria.get("op", ">=") not in OPERATORS:
        raise InvalidCriteria(f"Unknown operator: {criteria.get('op')}")
    value = criteria.get("value")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidCriteria(f"Criteria value for '{metric}' must be a number")


def evaluate_criteria(criteria: Mapping[str, Any], snapshot: Mapping[str, int | float]) -> bool:
    """Evaluate a validated criteria expression against a metrics snapshot."""
    criteria = _normalize(criteria)
    if "all" in criteria:
        return all(evaluate_criteria(c, snapshot) for c in criteria["all"])
    if "any" in criteria:
        return any(evaluate_criteria(c, snapshot) for c in criteria["any"])
    if "not" in criteria:
        return not evaluate_criteria(criteria["not"], snapshot)

    compare = OPERATORS[criteria.get("op", ">=")]
    return compare(snapshot.get(criteria["metric"], 0), criteria["value"])
