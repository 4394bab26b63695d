"""Quest and instance lifecycle endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from questline.database import get_session, unit_of_work
from questline.dependencies import get_redis_dep
from questline.errors import InsufficientParticipants
from questline.events.service import list_events
from questline.lifecycle import quest_service
from questline.lifecycle import service as lifecycle
from questline.lifecycle.schemas import (
    ActorRequest,
    CompleteRequest,
    CreateInstanceRequest,
    CreateQuestRequest,
    EventResponse,
    InstanceResponse,
    LockRequest,
    QuestResponse,
    QuestStatusRequest,
    ReasonRequest,
    ReviewQuestRequest,
)
from questline.lifecycle.states import InstanceStatus
from questline.signups.service import get_instance

router = APIRouter(prefix="/api/v1", tags=["Lifecycle"])


# ── Quests ──


@router.post("/quests", response_model=QuestResponse, status_code=201)
async def create_quest_endpoint(body: CreateQuestRequest, db: AsyncSession = Depends(get_session)):
    """Create a draft quest."""
    async with unit_of_work(db):
        quest = await quest_service.create_quest(db, **body.model_dump())
    return QuestResponse.model_validate(quest)


@router.get("/quests", response_model=list[QuestResponse])
async def list_quests_endpoint(
    status: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_session),
):
    quests = await quest_service.list_quests(db, status, limit, offset)
    return [QuestResponse.model_validate(q) for q in quests]


@router.get("/quests/{quest_id}", response_model=QuestResponse)
async def get_quest_endpoint(quest_id: int, db: AsyncSession = Depends(get_session)):
    return QuestResponse.model_validate(await quest_service.get_quest(db, quest_id))


@router.post("/quests/{quest_id}/submit", response_model=QuestResponse)
async def submit_quest_endpoint(quest_id: int, body: ActorRequest, db: AsyncSession = Depends(get_session)):
    """Submit a quest for review."""
    async with unit_of_work(db):
        quest = await quest_service.submit_quest_for_review(db, quest_id, body.actor_id)
    return QuestResponse.model_validate(quest)


@router.post("/quests/{quest_id}/review", response_model=QuestResponse)
async def review_quest_endpoint(quest_id: int, body: ReviewQuestRequest, db: AsyncSession = Depends(get_session)):
    """Record a review decision (approve opens a draft quest)."""
    async with unit_of_work(db):
        quest = await quest_service.review_quest(db, quest_id, body.decision, body.reviewer_id, body.notes)
    return QuestResponse.model_validate(quest)


@router.post("/quests/{quest_id}/status", response_model=QuestResponse)
async def change_quest_status_endpoint(
    quest_id: int,
    body: QuestStatusRequest,
    db: AsyncSession = Depends(get_session),
):
    async with unit_of_work(db):
        quest = await quest_service.change_quest_status(db, quest_id, body.status, body.actor_id)
    return QuestResponse.model_validate(quest)


# ── Instances ──


@router.post("/instances", response_model=InstanceResponse, status_code=201)
async def create_instance_endpoint(body: CreateInstanceRequest, db: AsyncSession = Depends(get_session)):
    """Schedule a draft instance of a quest."""
    async with unit_of_work(db):
        instance = await lifecycle.create_instance_from_quest(
            db,
            body.quest_id,
            body.scheduled_date,
            body.start_time,
            body.end_time,
            body.meeting_point,
            capacity=body.capacity,
            target_squad_size=body.target_squad_size,
            squad_formation_threshold=body.squad_formation_threshold,
            warm_up_min_ready_pct=body.warm_up_min_ready_pct,
        )
    return InstanceResponse.model_validate(instance)


@router.get("/instances/{instance_id}", response_model=InstanceResponse)
async def get_instance_endpoint(instance_id: int, db: AsyncSession = Depends(get_session)):
    return InstanceResponse.model_validate(await get_instance(db, instance_id))


@router.post("/instances/{instance_id}/publish", response_model=InstanceResponse)
async def publish_endpoint(instance_id: int, body: ActorRequest, db: AsyncSession = Depends(get_session)):
    async with unit_of_work(db):
        instance = await lifecycle.publish(db, instance_id, body.actor_id)
    return InstanceResponse.model_validate(instance)


@router.post("/instances/{instance_id}/lock", response_model=InstanceResponse)
async def lock_endpoint(
    instance_id: int,
    body: LockRequest,
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    """Lock the instance and form squads.

    A formation failure is committed to the event log before the 409 is
    returned; the instance stays recruiting.
    """
    async with unit_of_work(db):
        instance = await lifecycle.lock(db, redis, instance_id, body.actor_id)
    if instance.status != InstanceStatus.LOCKED:
        raise InsufficientParticipants("Not enough confirmed participants to form squads")
    return InstanceResponse.model_validate(instance)


@router.post("/instances/{instance_id}/unlock", response_model=InstanceResponse)
async def unlock_endpoint(instance_id: int, body: ActorRequest, db: AsyncSession = Depends(get_session)):
    async with unit_of_work(db):
        instance = await lifecycle.unlock(db, instance_id, body.actor_id)
    return InstanceResponse.model_validate(instance)


@router.post("/instances/{instance_id}/go-live", response_model=InstanceResponse)
async def go_live_endpoint(instance_id: int, body: ActorRequest, db: AsyncSession = Depends(get_session)):
    async with unit_of_work(db):
        instance = await lifecycle.go_live(db, instance_id, body.actor_id)
    return InstanceResponse.model_validate(instance)


@router.post("/instances/{instance_id}/complete", response_model=InstanceResponse)
async def complete_endpoint(
    instance_id: int,
    body: CompleteRequest,
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    """Complete the instance and award progression."""
    async with unit_of_work(db):
        instance = await lifecycle.complete(db, redis, instance_id, body.actor_id, force=body.force)
    return InstanceResponse.model_validate(instance)


@router.post("/instances/{instance_id}/pause", response_model=InstanceResponse)
async def pause_endpoint(
    instance_id: int,
    body: ReasonRequest,
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    async with unit_of_work(db):
        instance = await lifecycle.pause(db, redis, instance_id, body.reason, body.actor_id)
    return InstanceResponse.model_validate(instance)


@router.post("/instances/{instance_id}/resume", response_model=InstanceResponse)
async def resume_endpoint(
    instance_id: int,
    body: ActorRequest,
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    async with unit_of_work(db):
        instance = await lifecycle.resume(db, redis, instance_id, body.actor_id)
    return InstanceResponse.model_validate(instance)


@router.post("/instances/{instance_id}/cancel", response_model=InstanceResponse)
async def cancel_endpoint(
    instance_id: int,
    body: ReasonRequest,
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    """Cancel the instance, dropping every signup and cancelling its squads."""
    async with unit_of_work(db):
        instance = await lifecycle.cancel(db, redis, instance_id, body.reason, body.actor_id)
    return InstanceResponse.model_validate(instance)


# ── Event log ──


@router.get("/instances/{instance_id}/events", response_model=list[EventResponse])
async def instance_events_endpoint(
    instance_id: int,
    event_type: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_session),
):
    """Audit trail of an instance, in append order."""
    await get_instance(db, instance_id)
    events = await list_events(db, instance_id=instance_id, event_type=event_type, limit=limit, offset=offset)
    return [EventResponse.model_validate(e) for e in events]


@router.get("/events", response_model=list[EventResponse])
async def events_endpoint(
    user_id: int | None = Query(None),
    squad_id: int | None = Query(None),
    event_type: str | None = Query(None),
    correlation_id: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_session),
):
    events = await list_events(
        db,
        squad_id=squad_id,
        user_id=user_id,
        event_type=event_type,
        correlation_id=correlation_id,
        limit=limit,
        offset=offset,
    )
    return [EventResponse.model_validate(e) for e in events]
