"""Quest and instance state machines."""

from __future__ import annotations

from enum import Enum

from questline.errors import InvalidTransition


class InstanceStatus(str, Enum):
    DRAFT = "draft"
    RECRUITING = "recruiting"
    LOCKED = "locked"
    LIVE = "live"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"


class QuestStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    CLOSED = "closed"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REVOKED = "revoked"


class ReviewStatus(str, Enum):
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    NEEDS_CHANGES = "needs_changes"
    REJECTED = "rejected"


INSTANCE_TRANSITIONS: dict[str, list[str]] = {
    "draft": ["recruiting", "cancelled"],
    "recruiting": ["locked", "paused", "cancelled"],
    "locked": ["recruiting", "live", "paused", "cancelled"],
    "live": ["completed", "paused", "cancelled"],
    "paused": ["recruiting", "locked", "live", "cancelled"],
    "completed": ["archived"],
    "cancelled": ["archived"],
    "archived": [],
}

# Instances that still accept signups.
SIGNUP_OPEN_STATUSES: frozenset[str] = frozenset({InstanceStatus.RECRUITING.value, InstanceStatus.LOCKED.value})
TERMINAL_INSTANCE_STATUSES: frozenset[str] = frozenset({
    InstanceStatus.COMPLETED.value,
    InstanceStatus.CANCELLED.value,
    InstanceStatus.ARCHIVED.value,
})

QUEST_TRANSITIONS: dict[str, list[str]] = {
    "draft": ["open", "cancelled"],
    "open": ["closed", "paused", "cancelled", "completed", "revoked"],
    "paused": ["open", "cancelled", "revoked"],
    "closed": ["open", "completed", "cancelled"],
    "completed": [],
    "cancelled": [],
    "revoked": [],
}

REVIEW_TRANSITIONS: dict[str, list[str]] = {
    "draft": ["pending_review"],
    "needs_changes": ["pending_review"],
    "pending_review": ["approved", "needs_changes", "rejected"],
    "approved": ["pending_review"],
    "rejected": [],
}


def validate_transition(current_status: str, target_status: str) -> None:
    """Validate an instance transition. Raises InvalidTransition if invalid."""
    valid = INSTANCE_TRANSITIONS.get(current_status, [])
    if target_status not in valid:
        raise InvalidTransition("instance", current_status, target_status, valid)


def validate_quest_transition(current_status: str, target_status: str) -> None:
    valid = QUEST_TRANSITIONS.get(current_status, [])
    if target_status not in valid:
        raise InvalidTransition("quest", current_status, target_status, valid)


def validate_review_transition(current_status: str, target_status: str) -> None:
    valid = REVIEW_TRANSITIONS.get(current_status, [])
    if target_status not in valid:
        raise InvalidTransition("quest review", current_status, target_status, valid)
