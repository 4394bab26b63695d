"""Level thresholds and lookup."""

from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass

# (level, min_xp, name), strictly increasing in min_xp.
LEVEL_THRESHOLDS: list[tuple[int, int, str]] = [
    (1, 0, "Explorer"),
    (2, 100, "Explorer"),
    (3, 250, "Explorer"),
    (4, 500, "Regular"),
    (5, 800, "Regular"),
    (6, 1200, "Regular"),
    (7, 1800, "Local"),
    (8, 2500, "Local"),
    (9, 3500, "Local"),
    (10, 5000, "Connector"),
    (11, 7000, "Connector"),
    (12, 10000, "Legend"),
]

_MIN_XP = [row[1] for row in LEVEL_THRESHOLDS]


@dataclass(frozen=True)
class LevelInfo:
    level: int
    name: str
    current_xp: int
    level_min_xp: int
    next_level_xp: int | None  # None at max level

    @property
    def progress(self) -> float:
        """Fraction of the way to the next level, 1.0 at max level."""
        if self.next_level_xp is None:
            return 1.0
        span = self.next_level_xp - self.level_min_xp
        return (self.current_xp - self.level_min_xp) / span


def compute_level(total_xp: int) -> LevelInfo:
    """Highest level whose min_xp <= total_xp.

    Negative totals clamp to level 1.
    """
    idx = max(bisect_right(_MIN_XP, total_xp) - 1, 0)
    level, min_xp, name = LEVEL_THRESHOLDS[idx]
    next_xp = _MIN_XP[idx + 1] if idx + 1 < len(_MIN_XP) else None
    return LevelInfo(
        level=level,
        name=name,
        current_xp=total_xp,
        level_min_xp=min_xp,
        next_level_xp=next_xp,
    )
