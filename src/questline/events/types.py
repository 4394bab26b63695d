"""Event log vocabulary."""

from __future__ import annotations

from enum import Enum


class ActorType(str, Enum):
    USER = "user"
    ADMIN = "admin"
    SYSTEM = "system"


class EventType(str, Enum):
    # Quest / instance
    QUEST_SUBMITTED = "quest_submitted"
    QUEST_REVIEWED = "quest_reviewed"
    QUEST_STATUS_CHANGE = "quest_status_change"
    INSTANCE_CREATED = "instance_created"
    STATUS_CHANGE = "status_change"
    INSTANCE_ARCHIVED = "instance_archived"

    # Signups
    SIGNUP = "signup"
    SIGNUP_APPROVED = "signup_approved"
    SIGNUP_PROMOTED = "signup_promoted"
    SIGNUP_CANCELLED = "signup_cancelled"
    CHECK_IN = "check_in"
    PROOF_SUBMITTED = "proof_submitted"
    PROOF_APPROVED = "proof_approved"
    PROOF_REJECTED = "proof_rejected"
    SIGNUP_COMPLETED = "signup_completed"
    NO_SHOW_MARKED = "no_show_marked"

    # Squads
    SQUAD_ASSIGNED = "squad_assigned"
    SQUAD_MOVED = "squad_moved"
    SQUAD_FORMATION_FAILED = "squad_formation_failed"
    WARM_UP_STARTED = "warm_up_started"
    PROMPT_ANSWERED = "prompt_answered"
    READINESS_CONFIRMED = "readiness_confirmed"
    SQUAD_READY_FOR_REVIEW = "squad_ready_for_review"
    SQUAD_APPROVED = "squad_approved"
    SQUAD_FORCE_APPROVED = "squad_force_approved"
    SQUAD_STATUS_CHANGE = "squad_status_change"
    REMOVAL_VOTE_CAST = "removal_vote_cast"
    MEMBER_REMOVED = "member_removed"
    PERSISTENT_SQUAD_ARCHIVED = "persistent_squad_archived"
    PERSISTENT_SQUAD_REACTIVATED = "persistent_squad_reactivated"
    LEADERSHIP_TRANSFERRED = "leadership_transferred"

    # Progression
    XP_AWARDED = "xp_awarded"
    LEVEL_UP = "level_up"
    STREAK_UPDATED = "streak_updated"
    STREAK_BONUS = "streak_bonus"
    ACHIEVEMENT_UNLOCKED = "achievement_unlocked"
    TRUST_RECALCULATED = "trust_recalculated"

    # Operations
    NOTIFICATION_QUEUED = "notification_queued"
    ADMIN_OVERRIDE = "admin_override"
    LEDGER_DRIFT_DETECTED = "ledger_drift_detected"
