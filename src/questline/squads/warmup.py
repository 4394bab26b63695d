"""Squad warm-up protocol, approval and removal votes.

draft -> warming_up -> ready_for_review -> confirmed. Readiness is
polled: every vote re-checks the threshold, nothing waits.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from questline.config import get_settings
from questline.db.base import dialect_insert
from questline.db.models import Quest, QuestInstance, QuestSignup, QuestSquad, RemovalVote, SquadMember
from questline.errors import (
    DuplicateRequest,
    InsufficientParticipants,
    InvalidTransition,
    NotFound,
    NotSquadMember,
    QuestlineError,
    SquadLocked,
)
from questline.events.service import log_event, queue_notification
from questline.events.types import ActorType, EventType
from questline.lifecycle.states import InstanceStatus
from questline.squads.formation import get_squad, get_squad_members, list_instance_squads, place_displaced_member
from questline.squads.states import (
    LOCKED_STATUSES,
    OPEN_STATUSES,
    MemberRole,
    MemberStatus,
    SquadStatus,
    ensure_roster_mutable,
    validate_transition,
)

logger = logging.getLogger(__name__)

DEFAULT_ICEBREAKER = "Say hi to your squad! What are you most looking forward to?"


@dataclass(frozen=True)
class ReadinessReport:
    squad_id: int
    status: str
    ready_count: int
    total: int
    threshold_pct: int

    @property
    def ready_pct(self) -> float:
        return 100.0 * self.ready_count / self.total if self.total else 0.0

    @property
    def is_ready(self) -> bool:
        return self.total > 0 and self.ready_pct >= self.threshold_pct


@dataclass(frozen=True)
class RemovalOutcome:
    votes: int
    quorum: int
    removed: bool
    new_squad_id: int | None = None


def removal_quorum(other_members: int, fraction: float) -> int:
    """Votes needed to remove a member: a fraction of the others, at least one."""
    return max(1, math.ceil(other_members * fraction))


async def _instance_of(db: AsyncSession, squad: QuestSquad) -> QuestInstance:
    instance = await db.get(QuestInstance, squad.instance_id)
    if instance is None:
        raise NotFound(f"Instance {squad.instance_id} not found")
    return instance


async def _active_member(db: AsyncSession, squad_id: int, user_id: int) -> SquadMember:
    member = (
        await db.execute(
            select(SquadMember).where(
                SquadMember.squad_id == squad_id,
                SquadMember.user_id == user_id,
                SquadMember.status == MemberStatus.ACTIVE.value,
            )
        )
    ).scalar_one_or_none()
    if member is None:
        raise NotSquadMember(f"User {user_id} is not an active member of squad {squad_id}")
    return member


# ---------------------------------------------------------------------------
# Warm-up
# ---------------------------------------------------------------------------


async def start_warm_up(db: AsyncSession, redis: object, squad_id: int, actor_id: int | None = None) -> QuestSquad:
    """draft -> warming_up; posts the icebreaker prompt to every member."""
    squad = await get_squad(db, squad_id, for_update=True)
    instance = await _instance_of(db, squad)
    if instance.status != InstanceStatus.LOCKED:
        raise InvalidTransition(
            "squad", squad.status, SquadStatus.WARMING_UP.value, reason="The instance is not locked."
        )

    validate_transition(squad.status, SquadStatus.WARMING_UP.value)
    squad.status = SquadStatus.WARMING_UP.value
    squad.warm_up_started_at = datetime.now(timezone.utc)
    await db.flush()

    quest = await db.get(Quest, instance.quest_id)
    prompt = (quest.warm_up_prompt if quest else None) or DEFAULT_ICEBREAKER
    members = await get_squad_members(db, squad.id)

    await log_event(
        db,
        EventType.WARM_UP_STARTED,
        actor_type=ActorType.ADMIN if actor_id else ActorType.SYSTEM,
        actor_id=actor_id,
        instance_id=instance.id,
        squad_id=squad.id,
        before_state={"status": SquadStatus.DRAFT.value},
        after_state={"status": squad.status},
        payload={"prompt": prompt, "member_count": len(members)},
    )
    for member in members:
        await queue_notification(
            db, redis, member.user_id, "warm_up_prompt",
            f"Meet {squad.name}", prompt,
            instance_id=instance.id, squad_id=squad.id,
        )
    return squad


async def submit_warm_up_prompt(db: AsyncSession, squad_id: int, user_id: int, response: str) -> SquadMember:
    """Record an icebreaker response. Does not change squad state."""
    squad = await get_squad(db, squad_id)
    if squad.status not in (SquadStatus.WARMING_UP, SquadStatus.READY_FOR_REVIEW):
        raise InvalidTransition("squad", squad.status, "prompt_answered", [])
    member = await _active_member(db, squad_id, user_id)
    member.prompt_response = response
    member.prompt_answered_at = datetime.now(timezone.utc)
    await db.flush()

    await log_event(
        db,
        EventType.PROMPT_ANSWERED,
        actor_type=ActorType.USER,
        actor_id=user_id,
        instance_id=squad.instance_id,
        squad_id=squad.id,
        target_user_id=user_id,
    )
    return member


async def check_readiness(db: AsyncSession, squad: QuestSquad) -> ReadinessReport:
    """Readiness ratio over active members against the instance threshold."""
    instance = await _instance_of(db, squad)
    members = await get_squad_members(db, squad.id)
    threshold = instance.warm_up_min_ready_pct or get_settings().warm_up_min_ready_pct
    return ReadinessReport(
        squad_id=squad.id,
        status=squad.status,
        ready_count=sum(1 for m in members if m.readiness_confirmed_at is not None),
        total=len(members),
        threshold_pct=threshold,
    )


async def _advance_if_ready(db: AsyncSession, squad: QuestSquad) -> ReadinessReport:
    report = await check_readiness(db, squad)
    if squad.status == SquadStatus.WARMING_UP and report.is_ready:
        squad.status = SquadStatus.READY_FOR_REVIEW.value
        squad.ready_at = datetime.now(timezone.utc)
        await db.flush()
        await log_event(
            db,
            EventType.SQUAD_READY_FOR_REVIEW,
            instance_id=squad.instance_id,
            squad_id=squad.id,
            before_state={"status": SquadStatus.WARMING_UP.value},
            after_state={"status": squad.status},
            payload={"ready_count": report.ready_count, "total": report.total},
        )
        logger.info("Squad %d ready for review (%d/%d)", squad.id, report.ready_count, report.total)
        report = await check_readiness(db, squad)
    return report


async def confirm_readiness(db: AsyncSession, squad_id: int, user_id: int) -> ReadinessReport:
    """Record a member's readiness vote; auto-advances to ready_for_review."""
    squad = await get_squad(db, squad_id, for_update=True)
    if squad.status not in (SquadStatus.WARMING_UP, SquadStatus.READY_FOR_REVIEW):
        raise InvalidTransition("squad", squad.status, "readiness_confirmed", [])
    member = await _active_member(db, squad_id, user_id)

    if member.readiness_confirmed_at is None:
        member.readiness_confirmed_at = datetime.now(timezone.utc)
        await db.flush()
        await log_event(
            db,
            EventType.READINESS_CONFIRMED,
            actor_type=ActorType.USER,
            actor_id=user_id,
            instance_id=squad.instance_id,
            squad_id=squad.id,
            target_user_id=user_id,
        )

    return await _advance_if_ready(db, squad)


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------


async def approve_squad(
    db: AsyncSession,
    redis: object,
    squad_id: int,
    operator_id: int,
    notes: str | None = None,
    force: bool = False,
) -> QuestSquad:
    """ready_for_review -> confirmed and lock the roster.

    ``force`` approves from any open status regardless of readiness and is
    always recorded as an admin override.
    """
    squad = await get_squad(db, squad_id, for_update=True)
    before = squad.status
    if force:
        if before not in OPEN_STATUSES:
            raise InvalidTransition("squad", before, SquadStatus.CONFIRMED.value, sorted(OPEN_STATUSES))
    else:
        validate_transition(before, SquadStatus.CONFIRMED.value)

    report = await check_readiness(db, squad)
    if report.total == 0:
        raise InsufficientParticipants(f"Squad {squad_id} has no active members")

    now = datetime.now(timezone.utc)
    squad.status = SquadStatus.CONFIRMED.value
    squad.locked_at = now
    squad.locked_by = operator_id
    squad.approval_notes = notes
    await db.flush()

    await log_event(
        db,
        EventType.SQUAD_FORCE_APPROVED if force else EventType.SQUAD_APPROVED,
        actor_type=ActorType.ADMIN,
        actor_id=operator_id,
        instance_id=squad.instance_id,
        squad_id=squad.id,
        before_state={"status": before},
        after_state={"status": squad.status, "locked_at": now.isoformat()},
        payload={"notes": notes, "ready_count": report.ready_count, "total": report.total},
    )
    if force:
        await log_event(
            db,
            EventType.ADMIN_OVERRIDE,
            actor_type=ActorType.ADMIN,
            actor_id=operator_id,
            instance_id=squad.instance_id,
            squad_id=squad.id,
            payload={"action": "force_approve_squad", "readiness_met": report.is_ready, "from_status": before},
        )

    for member in await get_squad_members(db, squad.id):
        await queue_notification(
            db, redis, member.user_id, "squad_confirmed",
            "Your squad is set!", f"{squad.name} has been confirmed.",
            instance_id=squad.instance_id, squad_id=squad.id,
        )

    await _lock_instance_squads_if_complete(db, squad.instance_id)
    return squad


async def _lock_instance_squads_if_complete(db: AsyncSession, instance_id: int) -> None:
    squads = await list_instance_squads(db, instance_id)
    if squads and all(s.status in LOCKED_STATUSES for s in squads):
        instance = await db.get(QuestInstance, instance_id)
        if instance is not None and not instance.squads_locked:
            instance.squads_locked = True
            await db.flush()
            logger.info("All squads of instance %d are locked", instance_id)


# ---------------------------------------------------------------------------
# Removal
# ---------------------------------------------------------------------------


async def _remove_member(
    db: AsyncSession,
    squad: QuestSquad,
    member: SquadMember,
    reason: str,
    actor_type: ActorType,
    actor_id: int | None,
) -> QuestSquad | None:
    """Remove one member and re-place only that member."""
    member.status = MemberStatus.REMOVED.value
    member.left_at = datetime.now(timezone.utc)
    was_leader = member.role == MemberRole.LEADER
    member.role = MemberRole.MEMBER.value
    await db.flush()

    remaining = await get_squad_members(db, squad.id)
    if was_leader and remaining:
        remaining[0].role = MemberRole.LEADER.value

    await log_event(
        db,
        EventType.MEMBER_REMOVED,
        actor_type=actor_type,
        actor_id=actor_id,
        instance_id=squad.instance_id,
        squad_id=squad.id,
        target_user_id=member.user_id,
        before_state={"member_status": MemberStatus.ACTIVE.value},
        after_state={"member_status": member.status},
        payload={"reason": reason},
    )

    if squad.status == SquadStatus.WARMING_UP:
        await _advance_if_ready(db, squad)

    new_squad = None
    if member.signup_id is not None:
        instance = await _instance_of(db, squad)
        signup = await db.get(QuestSignup, member.signup_id)
        if signup is not None and instance.status == InstanceStatus.LOCKED:
            new_squad = await place_displaced_member(db, instance, signup, exclude_squad_id=squad.id)
    return new_squad


async def cast_removal_vote(
    db: AsyncSession,
    squad_id: int,
    voter_id: int,
    target_user_id: int,
    reason: str | None = None,
) -> RemovalOutcome:
    """Ballot against a member. Reaching quorum removes and re-places them."""
    if voter_id == target_user_id:
        raise QuestlineError("Members cannot vote to remove themselves")

    squad = await get_squad(db, squad_id, for_update=True)
    ensure_roster_mutable(squad.status, squad.id)
    await _active_member(db, squad_id, voter_id)
    target = await _active_member(db, squad_id, target_user_id)

    stmt = dialect_insert(db, RemovalVote).values(
        squad_id=squad_id,
        voter_id=voter_id,
        target_user_id=target_user_id,
        reason=reason,
        created_at=datetime.now(timezone.utc),
    ).on_conflict_do_nothing(index_elements=["squad_id", "voter_id", "target_user_id"])
    if (await db.execute(stmt)).rowcount == 0:
        raise DuplicateRequest(f"User {voter_id} already voted against {target_user_id} in squad {squad_id}")

    await log_event(
        db,
        EventType.REMOVAL_VOTE_CAST,
        actor_type=ActorType.USER,
        actor_id=voter_id,
        instance_id=squad.instance_id,
        squad_id=squad.id,
        target_user_id=target_user_id,
        payload={"reason": reason},
    )

    members = await get_squad_members(db, squad_id)
    others = [m for m in members if m.user_id != target_user_id]
    active_ids = {m.user_id for m in others}
    voters = (
        await db.execute(
            select(RemovalVote.voter_id).where(
                RemovalVote.squad_id == squad_id,
                RemovalVote.target_user_id == target_user_id,
            )
        )
    ).scalars().all()
    votes = sum(1 for v in voters if v in active_ids)
    quorum = removal_quorum(len(others), get_settings().removal_vote_quorum)

    if votes < quorum:
        return RemovalOutcome(votes=votes, quorum=quorum, removed=False)

    new_squad = await _remove_member(db, squad, target, "removal_vote", ActorType.SYSTEM, None)
    return RemovalOutcome(
        votes=votes,
        quorum=quorum,
        removed=True,
        new_squad_id=new_squad.id if new_squad else None,
    )


async def remove_member(
    db: AsyncSession,
    squad_id: int,
    user_id: int,
    operator_id: int,
    reason: str | None = None,
    force: bool = False,
) -> RemovalOutcome:
    """Operator removal. Locked squads need ``force`` (an admin override)."""
    squad = await get_squad(db, squad_id, for_update=True)
    if squad.status == SquadStatus.CANCELLED:
        raise SquadLocked(f"Squad {squad_id} is cancelled")
    if squad.status in LOCKED_STATUSES:
        if not force:
            raise SquadLocked(f"Squad {squad_id} is {squad.status}; its roster is locked")
        await log_event(
            db,
            EventType.ADMIN_OVERRIDE,
            actor_type=ActorType.ADMIN,
            actor_id=operator_id,
            instance_id=squad.instance_id,
            squad_id=squad.id,
            target_user_id=user_id,
            payload={"action": "remove_member_from_locked_squad", "squad_status": squad.status},
        )
    member = await _active_member(db, squad_id, user_id)
    new_squad = await _remove_member(db, squad, member, reason or "operator_removal", ActorType.ADMIN, operator_id)
    return RemovalOutcome(votes=0, quorum=0, removed=True, new_squad_id=new_squad.id if new_squad else None)
