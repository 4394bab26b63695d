"""Persistent (cross-instance) squads.

A persistent squad is a recurring social group. Its lifecycle is a soft
archive flag, independent of any instance squad; rosters reach an
instance only through ``formation.adopt_persistent_squad``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from questline.db.base import dialect_insert
from questline.db.models import PersistentSquad, PersistentSquadMember
from questline.errors import DuplicateRequest, NotFound, NotSquadMember, QuestlineError, SquadLocked
from questline.events.service import log_event
from questline.events.types import ActorType, EventType
from questline.squads.states import MemberRole, MemberStatus

logger = logging.getLogger(__name__)


async def get_persistent_squad(db: AsyncSession, squad_id: int, *, for_update: bool = False) -> PersistentSquad:
    query = select(PersistentSquad).where(PersistentSquad.id == squad_id)
    if for_update:
        query = query.with_for_update()
    squad = (await db.execute(query)).scalar_one_or_none()
    if squad is None:
        raise NotFound(f"Persistent squad {squad_id} not found")
    return squad


async def list_persistent_members(db: AsyncSession, squad_id: int) -> list[PersistentSquadMember]:
    result = await db.execute(
        select(PersistentSquadMember)
        .where(
            PersistentSquadMember.squad_id == squad_id,
            PersistentSquadMember.status == MemberStatus.ACTIVE.value,
        )
        .order_by(PersistentSquadMember.joined_at, PersistentSquadMember.id)
    )
    return list(result.scalars().all())


def _ensure_leader(squad: PersistentSquad, user_id: int) -> None:
    if squad.leader_id != user_id:
        raise NotSquadMember(f"Only the leader of squad {squad.id} can do this")


async def create_persistent_squad(
    db: AsyncSession,
    name: str,
    leader_id: int,
    member_ids: list[int] | None = None,
) -> PersistentSquad:
    if not name.strip():
        raise QuestlineError("Squad name is required")
    now = datetime.now(timezone.utc)
    squad = PersistentSquad(name=name.strip(), leader_id=leader_id, created_at=now)
    db.add(squad)
    await db.flush()

    user_ids = [leader_id] + [uid for uid in dict.fromkeys(member_ids or []) if uid != leader_id]
    for uid in user_ids:
        db.add(PersistentSquadMember(
            squad_id=squad.id,
            user_id=uid,
            role=MemberRole.LEADER.value if uid == leader_id else MemberRole.MEMBER.value,
            status=MemberStatus.ACTIVE.value,
            joined_at=now,
        ))
    await db.flush()
    logger.info("Created persistent squad %d with %d members", squad.id, len(user_ids))
    return squad


async def add_persistent_member(db: AsyncSession, squad_id: int, leader_id: int, user_id: int) -> PersistentSquadMember:
    """Leader adds a member; a member who left is reactivated."""
    squad = await get_persistent_squad(db, squad_id, for_update=True)
    _ensure_leader(squad, leader_id)
    if squad.archived_at is not None:
        raise SquadLocked(f"Persistent squad {squad_id} is archived")

    stmt = dialect_insert(db, PersistentSquadMember).values(
        squad_id=squad_id,
        user_id=user_id,
        role=MemberRole.MEMBER.value,
        status=MemberStatus.ACTIVE.value,
        joined_at=datetime.now(timezone.utc),
    ).on_conflict_do_nothing(index_elements=["squad_id", "user_id"])
    inserted = (await db.execute(stmt)).rowcount == 1

    member = (
        await db.execute(
            select(PersistentSquadMember).where(
                PersistentSquadMember.squad_id == squad_id,
                PersistentSquadMember.user_id == user_id,
            )
        )
    ).scalar_one()
    if not inserted:
        if member.status == MemberStatus.ACTIVE:
            raise DuplicateRequest(f"User {user_id} is already in squad {squad_id}")
        member.status = MemberStatus.ACTIVE.value
        member.joined_at = datetime.now(timezone.utc)
        await db.flush()
    return member


async def leave_persistent_squad(db: AsyncSession, squad_id: int, user_id: int) -> PersistentSquadMember:
    squad = await get_persistent_squad(db, squad_id)
    if squad.leader_id == user_id:
        raise QuestlineError("The leader must transfer leadership before leaving")
    member = (
        await db.execute(
            select(PersistentSquadMember).where(
                PersistentSquadMember.squad_id == squad_id,
                PersistentSquadMember.user_id == user_id,
                PersistentSquadMember.status == MemberStatus.ACTIVE.value,
            )
        )
    ).scalar_one_or_none()
    if member is None:
        raise NotSquadMember(f"User {user_id} is not in squad {squad_id}")
    member.status = MemberStatus.LEFT.value
    await db.flush()
    return member


async def archive_persistent_squad(db: AsyncSession, squad_id: int, actor_id: int) -> PersistentSquad:
    squad = await get_persistent_squad(db, squad_id, for_update=True)
    _ensure_leader(squad, actor_id)
    if squad.archived_at is not None:
        return squad
    squad.archived_at = datetime.now(timezone.utc)
    await db.flush()
    await log_event(
        db,
        EventType.PERSISTENT_SQUAD_ARCHIVED,
        actor_type=ActorType.USER,
        actor_id=actor_id,
        payload={"persistent_squad_id": squad.id},
    )
    return squad


async def reactivate_persistent_squad(db: AsyncSession, squad_id: int, actor_id: int) -> PersistentSquad:
    squad = await get_persistent_squad(db, squad_id, for_update=True)
    _ensure_leader(squad, actor_id)
    if squad.archived_at is None:
        return squad
    squad.archived_at = None
    await db.flush()
    await log_event(
        db,
        EventType.PERSISTENT_SQUAD_REACTIVATED,
        actor_type=ActorType.USER,
        actor_id=actor_id,
        payload={"persistent_squad_id": squad.id},
    )
    return squad


async def transfer_leadership(db: AsyncSession, squad_id: int, leader_id: int, new_leader_id: int) -> PersistentSquad:
    """Hand leadership to another active member. Leader only."""
    squad = await get_persistent_squad(db, squad_id, for_update=True)
    _ensure_leader(squad, leader_id)
    if new_leader_id == leader_id:
        return squad

    members = {m.user_id: m for m in await list_persistent_members(db, squad_id)}
    if new_leader_id not in members:
        raise NotSquadMember(f"User {new_leader_id} is not an active member of squad {squad_id}")

    if leader_id in members:
        members[leader_id].role = MemberRole.MEMBER.value
    members[new_leader_id].role = MemberRole.LEADER.value
    squad.leader_id = new_leader_id
    await db.flush()

    await log_event(
        db,
        EventType.LEADERSHIP_TRANSFERRED,
        actor_type=ActorType.USER,
        actor_id=leader_id,
        target_user_id=new_leader_id,
        before_state={"leader_id": leader_id},
        after_state={"leader_id": new_leader_id},
        payload={"persistent_squad_id": squad.id},
    )
    return squad
