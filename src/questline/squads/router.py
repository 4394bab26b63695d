"""Squad formation, warm-up and persistent squad endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from questline.database import get_session, unit_of_work
from questline.dependencies import get_redis_dep
from questline.lifecycle.service import reform_squads
from questline.signups.service import get_instance
from questline.squads import persistent, warmup
from questline.squads.formation import adopt_persistent_squad, get_squad, get_squad_members, list_instance_squads
from questline.squads.schemas import (
    ActorRequest,
    AddPersistentMemberRequest,
    AdoptSquadRequest,
    ApproveSquadRequest,
    CreatePersistentSquadRequest,
    LeaderActionRequest,
    LeavePersistentSquadRequest,
    PersistentMemberResponse,
    PersistentSquadResponse,
    PromptResponseRequest,
    ReadinessRequest,
    ReadinessResponse,
    RemovalOutcomeResponse,
    RemovalVoteRequest,
    RemoveMemberRequest,
    SquadMemberResponse,
    SquadResponse,
    TransferLeadershipRequest,
)

router = APIRouter(prefix="/api/v1", tags=["Squads"])


# ── Helpers ──


async def _squad_response(db: AsyncSession, squad) -> SquadResponse:
    response = SquadResponse.model_validate(squad)
    response.members = [SquadMemberResponse.model_validate(m) for m in await get_squad_members(db, squad.id)]
    return response


async def _persistent_response(db: AsyncSession, squad) -> PersistentSquadResponse:
    response = PersistentSquadResponse.model_validate(squad)
    response.members = [
        PersistentMemberResponse.model_validate(m) for m in await persistent.list_persistent_members(db, squad.id)
    ]
    return response


def _readiness_response(report: warmup.ReadinessReport) -> ReadinessResponse:
    return ReadinessResponse(
        squad_id=report.squad_id,
        status=report.status,
        ready_count=report.ready_count,
        total=report.total,
        ready_pct=round(report.ready_pct, 2),
        threshold_pct=report.threshold_pct,
        is_ready=report.is_ready,
    )


# ── Instance squads ──


@router.get("/instances/{instance_id}/squads", response_model=list[SquadResponse])
async def list_squads_endpoint(instance_id: int, db: AsyncSession = Depends(get_session)):
    await get_instance(db, instance_id)
    return [await _squad_response(db, s) for s in await list_instance_squads(db, instance_id)]


@router.post("/instances/{instance_id}/squads/form", response_model=list[SquadResponse])
async def form_squads_endpoint(instance_id: int, body: ActorRequest, db: AsyncSession = Depends(get_session)):
    """Partition confirmed participants that are not in a squad yet."""
    async with unit_of_work(db):
        squads = await reform_squads(db, instance_id, body.actor_id)
        responses = [await _squad_response(db, s) for s in squads]
    return responses


@router.post("/instances/{instance_id}/squads/adopt", response_model=SquadResponse, status_code=201)
async def adopt_squad_endpoint(instance_id: int, body: AdoptSquadRequest, db: AsyncSession = Depends(get_session)):
    """Copy a persistent squad's roster into this instance."""
    async with unit_of_work(db):
        instance = await get_instance(db, instance_id, for_update=True)
        squad = await adopt_persistent_squad(db, instance, body.persistent_squad_id, body.actor_id)
        response = await _squad_response(db, squad)
    return response


@router.get("/squads/{squad_id}", response_model=SquadResponse)
async def get_squad_endpoint(squad_id: int, db: AsyncSession = Depends(get_session)):
    return await _squad_response(db, await get_squad(db, squad_id))


# ── Warm-up ──


@router.post("/squads/{squad_id}/warm-up", response_model=SquadResponse)
async def start_warm_up_endpoint(
    squad_id: int,
    body: ActorRequest,
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    """Start warm-up and send the icebreaker to every member."""
    async with unit_of_work(db):
        squad = await warmup.start_warm_up(db, redis, squad_id, body.actor_id)
        response = await _squad_response(db, squad)
    return response


@router.post("/squads/{squad_id}/prompt", response_model=SquadMemberResponse)
async def prompt_endpoint(squad_id: int, body: PromptResponseRequest, db: AsyncSession = Depends(get_session)):
    async with unit_of_work(db):
        member = await warmup.submit_warm_up_prompt(db, squad_id, body.user_id, body.response)
    return SquadMemberResponse.model_validate(member)


@router.post("/squads/{squad_id}/readiness", response_model=ReadinessResponse)
async def confirm_readiness_endpoint(
    squad_id: int,
    body: ReadinessRequest,
    db: AsyncSession = Depends(get_session),
):
    async with unit_of_work(db):
        report = await warmup.confirm_readiness(db, squad_id, body.user_id)
    return _readiness_response(report)


@router.get("/squads/{squad_id}/readiness", response_model=ReadinessResponse)
async def readiness_endpoint(squad_id: int, db: AsyncSession = Depends(get_session)):
    squad = await get_squad(db, squad_id)
    return _readiness_response(await warmup.check_readiness(db, squad))


@router.post("/squads/{squad_id}/approve", response_model=SquadResponse)
async def approve_squad_endpoint(
    squad_id: int,
    body: ApproveSquadRequest,
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    """Confirm and lock the roster. ``force`` skips the readiness threshold."""
    async with unit_of_work(db):
        squad = await warmup.approve_squad(db, redis, squad_id, body.operator_id, body.notes, body.force)
        response = await _squad_response(db, squad)
    return response


# ── Removal ──


@router.post("/squads/{squad_id}/removal-votes", response_model=RemovalOutcomeResponse)
async def removal_vote_endpoint(squad_id: int, body: RemovalVoteRequest, db: AsyncSession = Depends(get_session)):
    async with unit_of_work(db):
        outcome = await warmup.cast_removal_vote(db, squad_id, body.voter_id, body.target_user_id, body.reason)
    return RemovalOutcomeResponse(**vars(outcome))


@router.post("/squads/{squad_id}/members/{user_id}/remove", response_model=RemovalOutcomeResponse)
async def remove_member_endpoint(
    squad_id: int,
    user_id: int,
    body: RemoveMemberRequest,
    db: AsyncSession = Depends(get_session),
):
    """Operator removal; locked squads need ``force``."""
    async with unit_of_work(db):
        outcome = await warmup.remove_member(db, squad_id, user_id, body.operator_id, body.reason, body.force)
    return RemovalOutcomeResponse(**vars(outcome))


# ── Persistent squads ──


@router.post("/persistent-squads", response_model=PersistentSquadResponse, status_code=201)
async def create_persistent_squad_endpoint(
    body: CreatePersistentSquadRequest,
    db: AsyncSession = Depends(get_session),
):
    async with unit_of_work(db):
        squad = await persistent.create_persistent_squad(db, body.name, body.leader_id, body.member_ids)
        response = await _persistent_response(db, squad)
    return response


@router.get("/persistent-squads/{squad_id}", response_model=PersistentSquadResponse)
async def get_persistent_squad_endpoint(squad_id: int, db: AsyncSession = Depends(get_session)):
    return await _persistent_response(db, await persistent.get_persistent_squad(db, squad_id))


@router.post("/persistent-squads/{squad_id}/members", response_model=PersistentMemberResponse, status_code=201)
async def add_persistent_member_endpoint(
    squad_id: int,
    body: AddPersistentMemberRequest,
    db: AsyncSession = Depends(get_session),
):
    async with unit_of_work(db):
        member = await persistent.add_persistent_member(db, squad_id, body.leader_id, body.user_id)
    return PersistentMemberResponse.model_validate(member)


@router.post("/persistent-squads/{squad_id}/leave", response_model=PersistentMemberResponse)
async def leave_persistent_squad_endpoint(
    squad_id: int,
    body: LeavePersistentSquadRequest,
    db: AsyncSession = Depends(get_session),
):
    async with unit_of_work(db):
        member = await persistent.leave_persistent_squad(db, squad_id, body.user_id)
    return PersistentMemberResponse.model_validate(member)


@router.post("/persistent-squads/{squad_id}/archive", response_model=PersistentSquadResponse)
async def archive_persistent_squad_endpoint(
    squad_id: int,
    body: LeaderActionRequest,
    db: AsyncSession = Depends(get_session),
):
    async with unit_of_work(db):
        squad = await persistent.archive_persistent_squad(db, squad_id, body.actor_id)
        response = await _persistent_response(db, squad)
    return response


@router.post("/persistent-squads/{squad_id}/reactivate", response_model=PersistentSquadResponse)
async def reactivate_persistent_squad_endpoint(
    squad_id: int,
    body: LeaderActionRequest,
    db: AsyncSession = Depends(get_session),
):
    async with unit_of_work(db):
        squad = await persistent.reactivate_persistent_squad(db, squad_id, body.actor_id)
        response = await _persistent_response(db, squad)
    return response


@router.post("/persistent-squads/{squad_id}/transfer", response_model=PersistentSquadResponse)
async def transfer_leadership_endpoint(
    squad_id: int,
    body: TransferLeadershipRequest,
    db: AsyncSession = Depends(get_session),
):
    async with unit_of_work(db):
        squad = await persistent.transfer_leadership(db, squad_id, body.leader_id, body.new_leader_id)
        response = await _persistent_response(db, squad)
    return response
