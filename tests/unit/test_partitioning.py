"""Unit tests for squad sizing, referral clustering and partitioning."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from questline.errors import InsufficientParticipants
from questline.squads.compatibility import CosineTraitScorer
from questline.squads.partitioning import Participant, choose_squad_sizes, partition, referral_clusters

T0 = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)


def _people(n: int, traits: dict[int, dict[str, float]] | None = None) -> list[Participant]:
    traits = traits or {}
    return [
        Participant(user_id=i, signup_id=100 + i, signed_up_at=T0 + timedelta(minutes=i), traits=traits.get(i, {}))
        for i in range(1, n + 1)
    ]


class TestChooseSquadSizes:
    """Squad size selection."""

    @pytest.mark.parametrize(
        ("n", "target", "min_size", "expected"),
        [
            (8, 4, 2, [4, 4]),
            (10, 4, 2, [4, 3, 3]),
            (3, 6, 2, [3]),
            (5, 2, 2, [3, 2]),
            (6, 6, 2, [6]),
        ],
    )
    def test_sizes(self, n, target, min_size, expected):
        assert choose_squad_sizes(n, target, min_size) == expected

    def test_sizes_cover_everyone(self):
        for n in range(2, 40):
            assert sum(choose_squad_sizes(n, 5, 2)) == n

    def test_sizes_within_one_of_target(self):
        """For large groups every squad is target +/- 1."""
        for n in range(12, 60):
            sizes = choose_squad_sizes(n, 6, 2)
            assert all(5 <= s <= 7 for s in sizes), (n, sizes)

    @pytest.mark.parametrize(
        ("n", "expected"),
        [(7, [7]), (8, [4, 4]), (9, [5, 4]), (10, [5, 5]), (11, [6, 5])],
    )
    def test_just_above_target(self, n, expected):
        """Between one and two squads' worth, split evenly rather than into pairs."""
        assert choose_squad_sizes(n, 6, 2) == expected

    def test_too_few_participants(self):
        with pytest.raises(InsufficientParticipants):
            choose_squad_sizes(1, 4, 2)

    def test_min_size_capped_by_target(self):
        """A solo-sized target accepts a single participant."""
        assert choose_squad_sizes(1, 1, 2) == [1]


class TestReferralClusters:
    """Union-find grouping of referral bonds."""

    def test_transitive_bonds_merge(self):
        people = _people(5)
        clusters = referral_clusters(people, [(1, 2), (2, 3)])
        by_size = sorted((sorted(p.user_id for p in c) for c in clusters), key=len, reverse=True)
        assert by_size[0] == [1, 2, 3]
        assert len(clusters) == 3

    def test_unknown_users_ignored(self):
        clusters = referral_clusters(_people(2), [(1, 99)])
        assert len(clusters) == 2


class TestPartition:
    """Greedy partitioning."""

    def test_everyone_placed_exactly_once(self):
        people = _people(10)
        squads = partition(people, 4, 2, CosineTraitScorer())
        placed = [uid for s in squads for uid in s.user_ids]
        assert sorted(placed) == list(range(1, 11))
        assert [len(s.members) for s in squads] == [4, 3, 3]

    def test_referral_pair_kept_together(self):
        people = _people(8)
        squads = partition(people, 4, 2, CosineTraitScorer(), bonds=[(3, 7)])
        together = [s for s in squads if 3 in s.user_ids]
        assert 7 in together[0].user_ids

    def test_compatible_users_grouped(self):
        traits = {
            1: {"energy": 1.0, "social": 1.0},
            2: {"energy": -1.0, "social": -1.0},
            3: {"energy": 0.9, "social": 0.8},
            4: {"energy": -0.9, "social": -0.7},
        }
        squads = partition(_people(4, traits), 2, 2, CosineTraitScorer())
        groups = sorted(sorted(s.user_ids) for s in squads)
        assert groups == [[1, 3], [2, 4]]
        assert all(s.compatibility_score > 0.9 for s in squads)

    def test_deterministic(self):
        traits = {i: {"energy": (i % 3) - 1.0, "outdoor": (i % 2) * 1.0} for i in range(1, 13)}
        first = partition(_people(12, traits), 4, 2, CosineTraitScorer(), bonds=[(2, 9)])
        second = partition(_people(12, traits), 4, 2, CosineTraitScorer(), bonds=[(2, 9)])
        assert [s.user_ids for s in first] == [s.user_ids for s in second]

    def test_oversized_cluster_split(self):
        """A cluster larger than any squad is spread out member by member."""
        people = _people(6)
        squads = partition(people, 2, 2, CosineTraitScorer(), bonds=[(1, 2), (2, 3), (3, 4)])
        assert sorted(uid for s in squads for uid in s.user_ids) == [1, 2, 3, 4, 5, 6]
        assert all(len(s.members) == 2 for s in squads)
