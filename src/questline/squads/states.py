"""Squad warm-up state machine."""

from __future__ import annotations

from enum import Enum

from questline.errors import InvalidTransition, SquadLocked


class SquadStatus(str, Enum):
    DRAFT = "draft"
    WARMING_UP = "warming_up"
    READY_FOR_REVIEW = "ready_for_review"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Cancel reason recorded on squads dissolved by an unlock.
INSTANCE_UNLOCKED_REASON = "instance_unlocked"


class MemberStatus(str, Enum):
    ACTIVE = "active"
    LEFT = "left"
    REMOVED = "removed"


class MemberRole(str, Enum):
    LEADER = "leader"
    MEMBER = "member"


# Rosters of these squads can only change through an admin override.
LOCKED_STATUSES: frozenset[str] = frozenset({
    SquadStatus.CONFIRMED.value,
    SquadStatus.ACTIVE.value,
    SquadStatus.COMPLETED.value,
})
OPEN_STATUSES: frozenset[str] = frozenset({
    SquadStatus.DRAFT.value,
    SquadStatus.WARMING_UP.value,
    SquadStatus.READY_FOR_REVIEW.value,
})

VALID_TRANSITIONS: dict[str, list[str]] = {
    "draft": ["warming_up", "cancelled"],
    "warming_up": ["ready_for_review", "cancelled"],
    # A removal drops readiness back to warming_up.
    "ready_for_review": ["confirmed", "warming_up", "cancelled"],
    "confirmed": ["active", "cancelled"],
    "active": ["completed", "cancelled"],
    "completed": [],
    "cancelled": [],
}


def validate_transition(current_status: str, target_status: str) -> None:
    """Validate a squad transition. Raises InvalidTransition if invalid."""
    valid = VALID_TRANSITIONS.get(current_status, [])
    if target_status not in valid:
        raise InvalidTransition("squad", current_status, target_status, valid)


def ensure_roster_mutable(status: str, squad_id: int) -> None:
    """Raise SquadLocked when the squad's roster is frozen."""
    if status in LOCKED_STATUSES:
        raise SquadLocked(f"Squad {squad_id} is {status}; its roster is locked")
    if status == SquadStatus.CANCELLED:
        raise SquadLocked(f"Squad {squad_id} is cancelled")
