"""Completion rules evaluated over a squad's members."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from questline.signups.states import CompletionRule, SignupStatus


@dataclass(frozen=True)
class MemberOutcome:
    signup_id: int
    status: str
    has_approved_proof: bool = False


def is_satisfied(member: MemberOutcome, requires_proof: bool) -> bool:
    """A member has done their part of the quest."""
    if member.status == SignupStatus.COMPLETED:
        return True
    if member.status != SignupStatus.CONFIRMED:
        return False
    return member.has_approved_proof or not requires_proof


def select_completers(
    rule: str,
    members: Iterable[MemberOutcome],
    requires_proof: bool,
) -> list[int]:
    """Signup ids to move confirmed -> completed under ``rule``.

    Only confirmed members are ever returned. Members that already
    completed count as satisfied, so re-evaluation after a late proof
    approval sees the full picture.
    """
    eligible = [
        m for m in members
        if m.status in (SignupStatus.CONFIRMED, SignupStatus.COMPLETED)
    ]
    if not eligible:
        return []

    satisfied = [m for m in eligible if is_satisfied(m, requires_proof)]
    confirmed = [m.signup_id for m in eligible if m.status == SignupStatus.CONFIRMED]

    if rule == CompletionRule.PER_MEMBER:
        return [m.signup_id for m in satisfied if m.status == SignupStatus.CONFIRMED]
    if rule == CompletionRule.ANY_MEMBER:
        return confirmed if satisfied else []
    if rule == CompletionRule.MAJORITY:
        return confirmed if len(satisfied) * 2 > len(eligible) else []
    if rule == CompletionRule.ALL_MEMBERS:
        return confirmed if len(satisfied) == len(eligible) else []
    raise ValueError(f"Unknown completion rule: {rule}")
