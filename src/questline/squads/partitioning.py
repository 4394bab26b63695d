"""Greedy squad partitioning.

Participants are packed into ``k`` squads whose sizes stay within
target +/- 1 where possible. Referral clusters are placed as units and
only split when no squad has room for the whole cluster. Each unit goes
to the squad where it adds the most pairwise compatibility; ties go to
the lowest squad index, and units are ordered by size then earliest
signup, so identical input always yields identical output.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from questline.errors import InsufficientParticipants
from questline.squads.compatibility import CompatibilityScorer, Traits, mean_pairwise_score


@dataclass(frozen=True)
class Participant:
    user_id: int
    signup_id: int | None
    signed_up_at: datetime
    traits: Traits = field(default_factory=dict)


@dataclass
class PlannedSquad:
    capacity: int
    members: list[Participant] = field(default_factory=list)
    compatibility_score: float = 0.0

    @property
    def room(self) -> int:
        return self.capacity - len(self.members)

    @property
    def user_ids(self) -> list[int]:
        return [p.user_id for p in self.members]


def choose_squad_sizes(n: int, target: int, min_size: int) -> list[int]:
    """Sizes for ``n`` participants, as close to ``target`` as possible.

    Raises InsufficientParticipants when ``n < min_size``.
    """
    if target < 1:
        raise ValueError("Target squad size must be at least 1")
    min_size = max(1, min(min_size, target))
    if n < min_size:
        raise InsufficientParticipants(
            f"{n} participant(s) cannot form a squad of at least {min_size}"
        )

    lo = max(1, math.ceil(n / (target + 1)))
    hi = max(1, n // max(target - 1, 1))
    candidates = [k for k in range(lo, hi + 1) if n // k >= min_size]
    if candidates:
        k = min(candidates, key=lambda c: (abs(n / c - target), c))
    else:
        # No count lands within target +/- 1; stay as close as possible,
        # preferring smaller squads over one oversized one.
        k = min(range(1, n // min_size + 1), key=lambda c: (abs(n / c - target), -c))

    base, extra = divmod(n, k)
    return [base + 1 if i < extra else base for i in range(k)]


def referral_clusters(
    participants: Iterable[Participant],
    bonds: Iterable[tuple[int, int]],
) -> list[list[Participant]]:
    """Group participants connected by referral bonds (union-find).

    Bonds naming users outside ``participants`` are ignored.
    """
    people = {p.user_id: p for p in participants}
    parent = {uid: uid for uid in people}

    def find(x: int) -> int:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    for a, b in bonds:
        if a in people and b in people:
            ra, rb = find(a), find(b)
            if ra != rb:
                parent[max(ra, rb)] = min(ra, rb)

    groups: dict[int, list[Participant]] = {}
    for uid, person in people.items():
        groups.setdefault(find(uid), []).append(person)
    return [sorted(g, key=lambda p: (p.signed_up_at, p.user_id)) for g in groups.values()]


def _gain(scorer: CompatibilityScorer, unit: list[Participant], squad: PlannedSquad) -> float:
    return sum(scorer.score(p.traits, m.traits) for p in unit for m in squad.members)


def _best_squad(
    scorer: CompatibilityScorer,
    unit: list[Participant],
    squads: list[PlannedSquad],
) -> PlannedSquad | None:
    best: PlannedSquad | None = None
    best_key: tuple[float, int] | None = None
    for idx, squad in enumerate(squads):
        if squad.room < len(unit):
            continue
        # Prefer emptier squads on equal gain so units spread out.
        key = (_gain(scorer, unit, squad), squad.room)
        if best_key is None or key > best_key:
            best, best_key = squad, key
    return best


def partition(
    participants: list[Participant],
    target_size: int,
    min_size: int,
    scorer: CompatibilityScorer,
    bonds: Iterable[tuple[int, int]] = (),
) -> list[PlannedSquad]:
    """Partition participants into squads covering everyone exactly once."""
    sizes = choose_squad_sizes(len(participants), target_size, min_size)
    squads = [PlannedSquad(capacity=size) for size in sizes]

    units = referral_clusters(participants, bonds)
    units.sort(key=lambda u: (-len(u), u[0].signed_up_at, u[0].user_id))

    for unit in units:
        squad = _best_squad(scorer, unit, squads)
        if squad is not None:
            squad.members.extend(unit)
            continue
        # No squad can hold the whole cluster: place its members one by one.
        for person in unit:
            single = _best_squad(scorer, [person], squads)
            if single is None:  # capacities sum to n, so this cannot happen
                raise RuntimeError("Squad capacities exhausted during partitioning")
            single.members.append(person)

    for squad in squads:
        squad.members.sort(key=lambda p: (p.signed_up_at, p.user_id))
        squad.compatibility_score = round(
            mean_pairwise_score(scorer, [p.traits for p in squad.members]), 4
        )
    return squads
