"""Signup and proof states."""

from __future__ import annotations

from enum import Enum

from questline.errors import InvalidTransition


class SignupStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    STANDBY = "standby"
    DROPPED = "dropped"
    NO_SHOW = "no_show"
    COMPLETED = "completed"


class ProofStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CompletionRule(str, Enum):
    ALL_MEMBERS = "all_members"
    MAJORITY = "majority"
    ANY_MEMBER = "any_member"
    PER_MEMBER = "per_member"


# Statuses that hold a seat against capacity.
COUNTED_STATUSES: frozenset[str] = frozenset({SignupStatus.PENDING.value, SignupStatus.CONFIRMED.value})
ACTIVE_STATUSES: frozenset[str] = COUNTED_STATUSES | {SignupStatus.STANDBY.value}
TERMINAL_STATUSES: frozenset[str] = frozenset({
    SignupStatus.DROPPED.value,
    SignupStatus.NO_SHOW.value,
    SignupStatus.COMPLETED.value,
})

VALID_TRANSITIONS: dict[str, list[str]] = {
    "pending": ["confirmed", "dropped"],
    "confirmed": ["dropped", "no_show", "completed"],
    "standby": ["confirmed", "pending", "dropped"],
    # A dropped row is reused when the user signs up again.
    "dropped": ["confirmed", "pending", "standby"],
    "no_show": [],
    "completed": [],
}


def validate_transition(current_status: str, target_status: str) -> None:
    """Validate a signup transition. Raises InvalidTransition if invalid."""
    valid = VALID_TRANSITIONS.get(current_status, [])
    if target_status not in valid:
        raise InvalidTransition("signup", current_status, target_status, valid)


# Drops caused by an instance cancellation are not held against the user.
INSTANCE_CANCELLED_REASON = "instance_cancelled"
