"""Squad formation for locked instances.

Partitioning covers only confirmed participants that are not already in a
squad of the instance, so rosters adopted from persistent squads and
members placed earlier are never reshuffled.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from questline.config import get_settings
from questline.db.models import (
    PersistentSquad,
    PersistentSquadMember,
    QuestInstance,
    QuestSignup,
    QuestSquad,
    Referral,
    SquadMember,
)
from questline.errors import InsufficientParticipants, NotFound, SquadLocked
from questline.events.service import log_event
from questline.events.types import ActorType, EventType
from questline.lifecycle.states import SIGNUP_OPEN_STATUSES
from questline.signups.states import SignupStatus
from questline.squads.compatibility import CompatibilityScorer, CosineTraitScorer
from questline.squads.partitioning import Participant, partition
from questline.squads.profiles import DatabaseProfileProvider, ProfileProvider
from questline.squads.states import LOCKED_STATUSES, OPEN_STATUSES, MemberRole, MemberStatus, SquadStatus

logger = logging.getLogger(__name__)


async def get_squad(db: AsyncSession, squad_id: int, *, for_update: bool = False) -> QuestSquad:
    query = select(QuestSquad).where(QuestSquad.id == squad_id)
    if for_update:
        query = query.with_for_update()
    squad = (await db.execute(query)).scalar_one_or_none()
    if squad is None:
        raise NotFound(f"Squad {squad_id} not found")
    return squad


async def list_instance_squads(
    db: AsyncSession,
    instance_id: int,
    include_cancelled: bool = False,
) -> list[QuestSquad]:
    query = select(QuestSquad).where(QuestSquad.instance_id == instance_id)
    if not include_cancelled:
        query = query.where(QuestSquad.status != SquadStatus.CANCELLED.value)
    result = await db.execute(query.order_by(QuestSquad.id))
    return list(result.scalars().all())


async def get_squad_members(db: AsyncSession, squad_id: int, active_only: bool = True) -> list[SquadMember]:
    query = select(SquadMember).where(SquadMember.squad_id == squad_id)
    if active_only:
        query = query.where(SquadMember.status == MemberStatus.ACTIVE.value)
    result = await db.execute(query.order_by(SquadMember.joined_at, SquadMember.id))
    return list(result.scalars().all())


async def get_active_membership(db: AsyncSession, instance_id: int, user_id: int) -> SquadMember | None:
    """The user's active membership in a non-cancelled squad of the instance."""
    result = await db.execute(
        select(SquadMember)
        .join(QuestSquad, QuestSquad.id == SquadMember.squad_id)
        .where(
            QuestSquad.instance_id == instance_id,
            QuestSquad.status != SquadStatus.CANCELLED.value,
            SquadMember.user_id == user_id,
            SquadMember.status == MemberStatus.ACTIVE.value,
        )
    )
    return result.scalars().first()


async def _assigned_user_ids(db: AsyncSession, instance_id: int) -> set[int]:
    result = await db.execute(
        select(SquadMember.user_id)
        .join(QuestSquad, QuestSquad.id == SquadMember.squad_id)
        .where(
            QuestSquad.instance_id == instance_id,
            QuestSquad.status != SquadStatus.CANCELLED.value,
            SquadMember.status == MemberStatus.ACTIVE.value,
        )
    )
    return set(result.scalars())


async def _unassigned_signups(db: AsyncSession, instance_id: int) -> list[QuestSignup]:
    assigned = await _assigned_user_ids(db, instance_id)
    result = await db.execute(
        select(QuestSignup)
        .where(
            QuestSignup.instance_id == instance_id,
            QuestSignup.status == SignupStatus.CONFIRMED.value,
        )
        .order_by(QuestSignup.signed_up_at, QuestSignup.id)
    )
    return [s for s in result.scalars() if s.user_id not in assigned]


async def referral_bonds(db: AsyncSession, signups: list[QuestSignup]) -> list[tuple[int, int]]:
    """Referral pairs among the given signups (explicit referrals plus signup referrers)."""
    user_ids = {s.user_id for s in signups}
    bonds = {
        (s.referred_by_user_id, s.user_id)
        for s in signups
        if s.referred_by_user_id is not None and s.referred_by_user_id in user_ids
    }
    if user_ids:
        result = await db.execute(
            select(Referral.referrer_user_id, Referral.referred_user_id).where(
                Referral.referrer_user_id.in_(user_ids),
                Referral.referred_user_id.in_(user_ids),
            )
        )
        bonds.update((a, b) for a, b in result.all())
    return sorted(bonds)


async def _create_squad(
    db: AsyncSession,
    instance: QuestInstance,
    name: str,
    members: list[tuple[int, int | None]],
    compatibility_score: float | None,
    persistent_squad_id: int | None = None,
    leader_id: int | None = None,
) -> QuestSquad:
    now = datetime.now(timezone.utc)
    squad = QuestSquad(
        instance_id=instance.id,
        name=name,
        status=SquadStatus.DRAFT.value,
        compatibility_score=compatibility_score,
        persistent_squad_id=persistent_squad_id,
        created_at=now,
    )
    db.add(squad)
    await db.flush()

    member_ids = [user_id for user_id, _ in members]
    leader = leader_id if leader_id in member_ids else (member_ids[0] if member_ids else None)
    for user_id, signup_id in members:
        db.add(SquadMember(
            squad_id=squad.id,
            user_id=user_id,
            signup_id=signup_id,
            role=MemberRole.LEADER.value if user_id == leader else MemberRole.MEMBER.value,
            status=MemberStatus.ACTIVE.value,
            joined_at=now,
        ))
    await db.flush()
    return squad


async def _next_squad_number(db: AsyncSession, instance_id: int) -> int:
    count = (
        await db.execute(select(func.count()).select_from(QuestSquad).where(QuestSquad.instance_id == instance_id))
    ).scalar_one()
    return count + 1


async def form_squads(
    db: AsyncSession,
    instance: QuestInstance,
    *,
    scorer: CompatibilityScorer | None = None,
    profiles: ProfileProvider | None = None,
    min_size: int | None = None,
    actor_id: int | None = None,
) -> list[QuestSquad]:
    """Partition unassigned confirmed signups into draft squads.

    Raises InsufficientParticipants (nothing written) when too few
    participants remain to form a squad.
    """
    if instance.squads_locked:
        raise SquadLocked(f"Squads of instance {instance.id} are locked")

    scorer = scorer or CosineTraitScorer()
    profiles = profiles or DatabaseProfileProvider(db)
    min_size = get_settings().min_squad_size if min_size is None else min_size

    signups = await _unassigned_signups(db, instance.id)
    if not signups and await list_instance_squads(db, instance.id):
        return []

    traits = await profiles.get_traits(s.user_id for s in signups)
    participants = [
        Participant(user_id=s.user_id, signup_id=s.id, signed_up_at=s.signed_up_at, traits=traits.get(s.user_id, {}))
        for s in signups
    ]
    bonds = await referral_bonds(db, signups)

    planned = partition(participants, instance.target_squad_size, min_size, scorer, bonds)

    number = await _next_squad_number(db, instance.id)
    squads: list[QuestSquad] = []
    for offset, plan in enumerate(planned):
        squad = await _create_squad(
            db,
            instance,
            f"Squad {number + offset}",
            [(p.user_id, p.signup_id) for p in plan.members],
            plan.compatibility_score,
        )
        squads.append(squad)
        await log_event(
            db,
            EventType.SQUAD_ASSIGNED,
            actor_type=ActorType.ADMIN if actor_id else ActorType.SYSTEM,
            actor_id=actor_id,
            instance_id=instance.id,
            squad_id=squad.id,
            after_state={"status": squad.status, "user_ids": plan.user_ids},
            payload={"compatibility_score": plan.compatibility_score},
        )

    logger.info(
        "Formed %d squads for instance %d from %d participants",
        len(squads), instance.id, len(participants),
    )
    return squads


async def adopt_persistent_squad(
    db: AsyncSession,
    instance: QuestInstance,
    persistent_squad_id: int,
    actor_id: int | None = None,
) -> QuestSquad:
    """Copy a persistent squad's roster into a new draft squad for the instance.

    Only members holding a confirmed, unassigned signup are copied. The
    instance squad keeps ``persistent_squad_id`` as the explicit mapping;
    later changes to either roster do not propagate.
    """
    if instance.squads_locked or instance.status not in SIGNUP_OPEN_STATUSES:
        raise SquadLocked(f"Squads of instance {instance.id} are locked")

    persistent = await db.get(PersistentSquad, persistent_squad_id)
    if persistent is None:
        raise NotFound(f"Persistent squad {persistent_squad_id} not found")
    if persistent.archived_at is not None:
        raise SquadLocked(f"Persistent squad {persistent_squad_id} is archived")

    roster = set(
        (
            await db.execute(
                select(PersistentSquadMember.user_id).where(
                    PersistentSquadMember.squad_id == persistent_squad_id,
                    PersistentSquadMember.status == MemberStatus.ACTIVE.value,
                )
            )
        ).scalars()
    )
    signups = [s for s in await _unassigned_signups(db, instance.id) if s.user_id in roster]
    if not signups:
        raise InsufficientParticipants(
            f"No member of persistent squad {persistent_squad_id} holds a confirmed seat"
        )

    squad = await _create_squad(
        db,
        instance,
        persistent.name,
        [(s.user_id, s.id) for s in signups],
        None,
        persistent_squad_id=persistent.id,
        leader_id=persistent.leader_id,
    )
    await log_event(
        db,
        EventType.SQUAD_ASSIGNED,
        actor_type=ActorType.ADMIN if actor_id else ActorType.USER,
        actor_id=actor_id,
        instance_id=instance.id,
        squad_id=squad.id,
        after_state={"status": squad.status, "user_ids": [s.user_id for s in signups]},
        payload={"persistent_squad_id": persistent.id},
    )
    return squad


async def release_member(db: AsyncSession, signup: QuestSignup, reason: str) -> SquadMember | None:
    """Mark the signup's squad membership as left (signup dropped or no-show).

    Members of locked squads stay on the roster; only an operator override
    changes those.
    """
    result = await db.execute(
        select(SquadMember, QuestSquad.status)
        .join(QuestSquad, QuestSquad.id == SquadMember.squad_id)
        .where(
            SquadMember.status == MemberStatus.ACTIVE.value,
            or_(
                SquadMember.signup_id == signup.id,
                SquadMember.user_id == signup.user_id,
            ),
            QuestSquad.instance_id == signup.instance_id,
        )
    )
    row = result.first()
    if row is None:
        return None
    member, squad_status = row
    if squad_status in LOCKED_STATUSES:
        logger.info(
            "Squad %d is %s; keeping user %d on the roster (%s)",
            member.squad_id, squad_status, signup.user_id, reason,
        )
        return None

    member.status = MemberStatus.LEFT.value
    member.left_at = datetime.now(timezone.utc)
    await db.flush()
    await log_event(
        db,
        EventType.SQUAD_MOVED,
        instance_id=signup.instance_id,
        squad_id=member.squad_id,
        target_user_id=signup.user_id,
        before_state={"member_status": MemberStatus.ACTIVE.value},
        after_state={"member_status": MemberStatus.LEFT.value},
        payload={"reason": reason},
    )
    return member


async def place_displaced_member(
    db: AsyncSession,
    instance: QuestInstance,
    signup: QuestSignup,
    *,
    exclude_squad_id: int | None = None,
    scorer: CompatibilityScorer | None = None,
    profiles: ProfileProvider | None = None,
) -> QuestSquad | None:
    """Place one participant into the most compatible unlocked squad with room.

    Squads may grow to target + 1. Returns None (participant stays
    unassigned) when no unlocked squad has room.
    """
    scorer = scorer or CosineTraitScorer()
    profiles = profiles or DatabaseProfileProvider(db)
    max_size = instance.target_squad_size + 1

    candidates: list[tuple[QuestSquad, list[SquadMember]]] = []
    for squad in await list_instance_squads(db, instance.id):
        if squad.id == exclude_squad_id or squad.status not in OPEN_STATUSES:
            continue
        members = await get_squad_members(db, squad.id)
        if len(members) < max_size:
            candidates.append((squad, members))
    if not candidates:
        logger.warning("No open squad with room for user %d in instance %d", signup.user_id, instance.id)
        return None

    all_ids = {signup.user_id} | {m.user_id for _, members in candidates for m in members}
    traits = await profiles.get_traits(all_ids)
    mine = traits.get(signup.user_id, {})

    def rank(item: tuple[QuestSquad, list[SquadMember]]) -> tuple[float, int, int]:
        squad, members = item
        mean = sum(scorer.score(mine, traits.get(m.user_id, {})) for m in members) / max(len(members), 1)
        return (-mean, len(members), squad.id)

    squad, _ = min(candidates, key=rank)

    now = datetime.now(timezone.utc)
    existing = (
        await db.execute(
            select(SquadMember).where(SquadMember.squad_id == squad.id, SquadMember.user_id == signup.user_id)
        )
    ).scalar_one_or_none()
    if existing is not None:
        existing.status = MemberStatus.ACTIVE.value
        existing.signup_id = signup.id
        existing.left_at = None
        existing.readiness_confirmed_at = None
        existing.joined_at = now
    else:
        db.add(SquadMember(
            squad_id=squad.id,
            user_id=signup.user_id,
            signup_id=signup.id,
            role=MemberRole.MEMBER.value,
            status=MemberStatus.ACTIVE.value,
            joined_at=now,
        ))

    # The newcomer has not confirmed readiness yet.
    if squad.status == SquadStatus.READY_FOR_REVIEW:
        squad.status = SquadStatus.WARMING_UP.value
        squad.ready_at = None
    await db.flush()

    await log_event(
        db,
        EventType.SQUAD_MOVED,
        instance_id=instance.id,
        squad_id=squad.id,
        target_user_id=signup.user_id,
        before_state={"squad_id": exclude_squad_id},
        after_state={"squad_id": squad.id},
        payload={"reason": "placement"},
    )
    return squad
