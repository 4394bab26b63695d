"""Unit tests for squad completion rules."""

from __future__ import annotations

import pytest

from questline.signups.completion import MemberOutcome, is_satisfied, select_completers


def _m(signup_id: int, status: str = "confirmed", proof: bool = False) -> MemberOutcome:
    return MemberOutcome(signup_id=signup_id, status=status, has_approved_proof=proof)


class TestIsSatisfied:
    def test_confirmed_without_proof_requirement(self):
        assert is_satisfied(_m(1), requires_proof=False)

    def test_confirmed_needs_proof(self):
        assert not is_satisfied(_m(1), requires_proof=True)
        assert is_satisfied(_m(1, proof=True), requires_proof=True)

    def test_completed_counts(self):
        assert is_satisfied(_m(1, "completed"), requires_proof=True)

    def test_dropped_never_satisfied(self):
        assert not is_satisfied(_m(1, "dropped", proof=True), requires_proof=False)


class TestSelectCompleters:
    """Completion rules over a squad."""

    def test_per_member(self):
        members = [_m(1, proof=True), _m(2), _m(3, proof=True)]
        assert select_completers("per_member", members, requires_proof=True) == [1, 3]

    def test_any_member(self):
        members = [_m(1), _m(2, proof=True), _m(3)]
        assert select_completers("any_member", members, requires_proof=True) == [1, 2, 3]

    def test_any_member_nobody_satisfied(self):
        assert select_completers("any_member", [_m(1), _m(2)], requires_proof=True) == []

    def test_majority_needs_strict_majority(self):
        """2 of 4 is not a majority."""
        members = [_m(1, proof=True), _m(2, proof=True), _m(3), _m(4)]
        assert select_completers("majority", members, requires_proof=True) == []
        members[2] = _m(3, proof=True)
        assert select_completers("majority", members, requires_proof=True) == [1, 2, 3, 4]

    def test_all_members(self):
        members = [_m(1, proof=True), _m(2)]
        assert select_completers("all_members", members, requires_proof=True) == []
        assert select_completers("all_members", members, requires_proof=False) == [1, 2]

    def test_already_completed_not_returned(self):
        """Re-evaluation only moves confirmed members."""
        members = [_m(1, "completed"), _m(2, proof=True)]
        assert select_completers("all_members", members, requires_proof=True) == [2]

    def test_dropped_members_ignored(self):
        members = [_m(1, proof=True), _m(2, "dropped"), _m(3, "no_show")]
        assert select_completers("all_members", members, requires_proof=True) == [1]

    def test_empty_group(self):
        assert select_completers("majority", [], requires_proof=False) == []

    def test_unknown_rule(self):
        with pytest.raises(ValueError, match="Unknown completion rule"):
            select_completers("half", [_m(1)], requires_proof=False)
