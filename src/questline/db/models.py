"""ORM models for quests, instances, signups, squads, progression and the event log.

User identity lives in the external identity provider; ``user_id`` columns
are opaque integer references and carry no foreign key.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from questline.db.base import Base, BigIntPK, UTCDateTime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Quests & instances
# ---------------------------------------------------------------------------


class Quest(Base):
    """Quest template. Mutated only through the review workflow."""

    __tablename__ = "quests"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    creator_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    constraints: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    objectives: Mapped[list[Any]] = mapped_column(JSON, default=list)
    default_capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    default_squad_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    default_duration_minutes: Mapped[int] = mapped_column(Integer, default=120)
    base_xp: Mapped[int] = mapped_column(Integer, default=50)
    completion_rule: Mapped[str] = mapped_column(String(16), default="per_member")
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=False)
    requires_proof: Mapped[bool] = mapped_column(Boolean, default=False)
    is_solo: Mapped[bool] = mapped_column(Boolean, default=False)
    warm_up_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="draft")
    review_status: Mapped[str] = mapped_column(String(16), default="draft")
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow)


class QuestInstance(Base):
    """One scheduled occurrence of a quest."""

    __tablename__ = "quest_instances"
    __table_args__ = (
        Index("ix_quest_instances_status", "status"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    quest_id: Mapped[int] = mapped_column(ForeignKey("quests.id", ondelete="CASCADE"), nullable=False)
    instance_slug: Mapped[str] = mapped_column(String(160), nullable=False)
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    meeting_point: Mapped[str | None] = mapped_column(String(256), nullable=True)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    # Denormalized: number of pending + confirmed signups.
    current_signup_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    target_squad_size: Mapped[int] = mapped_column(Integer, nullable=False)
    squad_formation_threshold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    warm_up_min_ready_pct: Mapped[int] = mapped_column(Integer, default=100)
    status: Mapped[str] = mapped_column(String(16), default="draft", nullable=False)
    previous_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    paused_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    paused_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    check_in_opens_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    check_in_closes_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    squads_locked: Mapped[bool] = mapped_column(Boolean, default=False)
    ledger_frozen: Mapped[bool] = mapped_column(Boolean, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow)


# ---------------------------------------------------------------------------
# Signups & proofs
# ---------------------------------------------------------------------------


class QuestSignup(Base):
    """A user's claim on a seat in an instance."""

    __tablename__ = "quest_signups"
    __table_args__ = (
        UniqueConstraint("instance_id", "user_id", name="uq_signup_instance_user"),
        Index("ix_signups_instance_status", "instance_id", "status", "signed_up_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    instance_id: Mapped[int] = mapped_column(ForeignKey("quest_instances.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    signed_up_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    referred_by_user_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    checked_in_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    proof_submitted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    dropped_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    no_show_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow)


class ParticipantProof(Base):
    """Proof of participation. Only a reference to the stored file is kept."""

    __tablename__ = "participant_proofs"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    signup_id: Mapped[int] = mapped_column(ForeignKey("quest_signups.id", ondelete="CASCADE"), nullable=False)
    proof_type: Mapped[str] = mapped_column(String(16), nullable=False)
    file_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    text: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    reviewed_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


# ---------------------------------------------------------------------------
# Squads
# ---------------------------------------------------------------------------


class PersistentSquad(Base):
    """Recurring social group that exists independently of any instance."""

    __tablename__ = "persistent_squads"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    leader_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class PersistentSquadMember(Base):
    __tablename__ = "persistent_squad_members"
    __table_args__ = (
        UniqueConstraint("squad_id", "user_id", name="uq_persistent_member"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    squad_id: Mapped[int] = mapped_column(ForeignKey("persistent_squads.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    role: Mapped[str] = mapped_column(String(16), default="member")
    status: Mapped[str] = mapped_column(String(16), default="active")
    joined_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class QuestSquad(Base):
    """Instance-scoped squad formed from confirmed signups."""

    __tablename__ = "quest_squads"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    instance_id: Mapped[int] = mapped_column(ForeignKey("quest_instances.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="draft", nullable=False)
    compatibility_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    # Set when the roster was copied from a persistent squad.
    persistent_squad_id: Mapped[int | None] = mapped_column(
        ForeignKey("persistent_squads.id", ondelete="SET NULL"), nullable=True
    )
    warm_up_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    ready_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    locked_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    approval_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow)


class SquadMember(Base):
    __tablename__ = "quest_squad_members"
    __table_args__ = (
        UniqueConstraint("squad_id", "user_id", name="uq_squad_member"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    squad_id: Mapped[int] = mapped_column(ForeignKey("quest_squads.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    signup_id: Mapped[int | None] = mapped_column(
        ForeignKey("quest_signups.id", ondelete="SET NULL"), nullable=True
    )
    role: Mapped[str] = mapped_column(String(16), default="member")
    status: Mapped[str] = mapped_column(String(16), default="active")
    prompt_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    prompt_answered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    readiness_confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    joined_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    left_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class RemovalVote(Base):
    """Ballot by one squad member to remove another."""

    __tablename__ = "clique_removal_votes"
    __table_args__ = (
        UniqueConstraint("squad_id", "voter_id", "target_user_id", name="uq_removal_vote"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    squad_id: Mapped[int] = mapped_column(ForeignKey("quest_squads.id", ondelete="CASCADE"), nullable=False)
    voter_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    target_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class Referral(Base):
    """Explicit "invited a friend" bond between two users."""

    __tablename__ = "referrals"
    __table_args__ = (
        UniqueConstraint("referrer_user_id", "referred_user_id", name="uq_referral_pair"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    referrer_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    referred_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class UserProfile(Base):
    """Read-only projection of the identity provider's profile data."""

    __tablename__ = "user_profiles"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    display_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # axis name -> value in [-1, 1]
    traits: Mapped[dict[str, float]] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


# ---------------------------------------------------------------------------
# Progression
# ---------------------------------------------------------------------------


class XPTransaction(Base):
    """Immutable XP ledger entry. (user_id, source, source_id) is the idempotency key."""

    __tablename__ = "xp_transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "source", "source_id", name="uq_xp_idempotency"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    # Empty string rather than NULL so the unique constraint applies.
    source_id: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    description: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class UserXP(Base):
    """Materialized running XP total per user."""

    __tablename__ = "user_xp"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    total_xp: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    level: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    level_name: Mapped[str] = mapped_column(String(32), default="Explorer", nullable=False)
    ledger_frozen: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class StreakRule(Base):
    __tablename__ = "streak_rules"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    interval: Mapped[str] = mapped_column(String(16), nullable=False)
    grace_periods: Mapped[int] = mapped_column(Integer, default=0)
    xp_bonus: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class UserStreak(Base):
    __tablename__ = "user_streaks"
    __table_args__ = (
        UniqueConstraint("user_id", "rule_id", name="uq_user_streak_rule"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    rule_id: Mapped[int] = mapped_column(ForeignKey("streak_rules.id", ondelete="CASCADE"), nullable=False)
    current_count: Mapped[int] = mapped_column(Integer, default=0)
    longest_count: Mapped[int] = mapped_column(Integer, default=0)
    grace_remaining: Mapped[int] = mapped_column(Integer, default=0)
    last_activity_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    streak_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    streak_broken_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class AchievementTemplate(Base):
    """Achievement definition; ``criteria`` is a declarative predicate."""

    __tablename__ = "achievement_templates"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    criteria: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    xp_reward: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class UserAchievement(Base):
    __tablename__ = "user_achievements"
    __table_args__ = (
        UniqueConstraint("user_id", "achievement_id", name="uq_user_achievement"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    achievement_id: Mapped[int] = mapped_column(
        ForeignKey("achievement_templates.id", ondelete="CASCADE"), nullable=False
    )
    unlocked_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class TrustScore(Base):
    """Derived reputation aggregate for a user or squad. Always fully recomputed."""

    __tablename__ = "trust_scores"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", name="uq_trust_entity"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    successful_quests: Mapped[int] = mapped_column(Integer, default=0)
    cancelled_quests: Mapped[int] = mapped_column(Integer, default=0)
    no_show_quests: Mapped[int] = mapped_column(Integer, default=0)
    flags_received: Mapped[int] = mapped_column(Integer, default=0)
    warnings_issued: Mapped[int] = mapped_column(Integer, default=0)
    ratings_count: Mapped[int] = mapped_column(Integer, default=0)
    avg_rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    score: Mapped[float] = mapped_column(Float, default=50.0)
    last_calculated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


# ---------------------------------------------------------------------------
# Event log
# ---------------------------------------------------------------------------


class OpsEvent(Base):
    """Append-only domain event record."""

    __tablename__ = "ops_events"
    __table_args__ = (
        Index("ix_ops_events_instance", "instance_id", "created_at"),
        Index("ix_ops_events_correlation", "correlation_id"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    actor_type: Mapped[str] = mapped_column(String(16), default="system", nullable=False)
    actor_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    instance_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    squad_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    target_user_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    before_state: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    after_state: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    correlation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
