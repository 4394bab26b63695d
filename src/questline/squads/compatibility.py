"""Pairwise compatibility scoring over trait vectors.

Traits are declared per user as axis name -> value in [-1, 1] (e.g.
``energy``, ``social``, ``outdoor``). Scores are bounded to [-1, 1]. The
scorer is a strategy: partitioning only depends on the ``score`` method.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Protocol

Traits = Mapping[str, float]

DEFAULT_WEIGHTS: dict[str, float] = {
    "energy": 1.5,
    "social": 1.0,
    "outdoor": 1.0,
    "intensity": 1.0,
    "budget": 0.5,
}


class CompatibilityScorer(Protocol):
    def score(self, a: Traits, b: Traits) -> float:
        """Compatibility of two users in [-1, 1]."""
        ...


def _clamp_axis(value: float) -> float:
    return max(-1.0, min(1.0, float(value)))


class CosineTraitScorer:
    """Weighted cosine similarity over the axes both users declared.

    Users with no shared axes score 0.0 (neutral).
    """

    def __init__(self, weights: Mapping[str, float] | None = None, default_weight: float = 1.0) -> None:
        self.weights = dict(DEFAULT_WEIGHTS if weights is None else weights)
        self.default_weight = default_weight

    def score(self, a: Traits, b: Traits) -> float:
        axes = set(a) & set(b)
        if not axes:
            return 0.0

        dot = norm_a = norm_b = 0.0
        for axis in axes:
            w = self.weights.get(axis, self.default_weight)
            va, vb = _clamp_axis(a[axis]), _clamp_axis(b[axis])
            dot += w * va * vb
            norm_a += w * va * va
            norm_b += w * vb * vb

        if norm_a == 0.0 or norm_b == 0.0:
            return 0.0
        return max(-1.0, min(1.0, dot / math.sqrt(norm_a * norm_b)))


class AxisDistanceScorer:
    """1 - mean absolute distance per shared axis, rescaled to [-1, 1].

    Unlike cosine, two users who are both mildly positive and both
    strongly positive on an axis are not treated as identical.
    """

    def __init__(self, weights: Mapping[str, float] | None = None) -> None:
        self.weights = dict(DEFAULT_WEIGHTS if weights is None else weights)

    def score(self, a: Traits, b: Traits) -> float:
        axes = set(a) & set(b)
        if not axes:
            return 0.0
        total_w = 0.0
        distance = 0.0
        for axis in axes:
            w = self.weights.get(axis, 1.0)
            # Max distance on one axis is 2.
            distance += w * abs(_clamp_axis(a[axis]) - _clamp_axis(b[axis])) / 2.0
            total_w += w
        if total_w == 0.0:
            return 0.0
        return 1.0 - 2.0 * (distance / total_w)


def mean_pairwise_score(scorer: CompatibilityScorer, profiles: list[Traits]) -> float:
    """Mean score over all pairs; 0.0 for groups of fewer than two."""
    n = len(profiles)
    if n < 2:
        return 0.0
    total = 0.0
    pairs = 0
    for i in range(n):
        for j in range(i + 1, n):
            total += scorer.score(profiles[i], profiles[j])
            pairs += 1
    return total / pairs
