"""Progression endpoints: XP, levels, streaks, achievements and trust."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from questline.database import get_session, unit_of_work
from questline.dependencies import get_redis_dep
from questline.progression.achievement_service import check_and_unlock_achievements, list_user_achievements
from questline.progression.schemas import (
    AchievementCheckResponse,
    AchievementResponse,
    AwardXPRequest,
    AwardXPResponse,
    LevelResponse,
    OperatorActionRequest,
    RatingRequest,
    RepairRequest,
    StreakResponse,
    TrustResponse,
    XPDriftResponse,
    XPTransactionResponse,
)
from questline.progression.streak_service import get_user_streaks
from questline.progression.trust_service import (
    TrustEntity,
    calculate_trust_score,
    get_trust_score,
    record_flag,
    record_rating,
    record_warning,
)
from questline.progression.xp_service import (
    get_user_level,
    grant_xp,
    list_transactions,
    reconcile_user_xp,
    repair_user_xp,
)

router = APIRouter(prefix="/api/v1", tags=["Progression"])


# ── XP & levels ──


@router.post("/users/{user_id}/xp", response_model=AwardXPResponse)
async def award_xp_endpoint(
    user_id: int,
    body: AwardXPRequest,
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    """Award XP. Re-sending the same (source, source_id) is a no-op."""
    async with unit_of_work(db):
        total, granted = await grant_xp(
            db, redis, user_id, body.amount, body.source, body.source_id, body.description,
        )
    return AwardXPResponse(user_id=user_id, total_xp=total, granted=granted)


@router.get("/users/{user_id}/level", response_model=LevelResponse)
async def level_endpoint(user_id: int, db: AsyncSession = Depends(get_session)):
    info = await get_user_level(db, user_id)
    return LevelResponse(
        user_id=user_id,
        level=info.level,
        name=info.name,
        current_xp=info.current_xp,
        level_min_xp=info.level_min_xp,
        next_level_xp=info.next_level_xp,
        progress=round(info.progress, 4),
    )


@router.get("/users/{user_id}/xp/history", response_model=list[XPTransactionResponse])
async def xp_history_endpoint(
    user_id: int,
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_session),
):
    return [XPTransactionResponse.model_validate(t) for t in await list_transactions(db, user_id, limit)]


@router.post("/xp/reconcile", response_model=list[XPDriftResponse])
async def reconcile_xp_endpoint(user_id: int | None = Query(None), db: AsyncSession = Depends(get_session)):
    """Compare running totals with the ledger; drifted totals are frozen."""
    async with unit_of_work(db):
        drifts = await reconcile_user_xp(db, user_id)
    return [XPDriftResponse(**d) for d in drifts]


@router.post("/users/{user_id}/xp/repair", response_model=LevelResponse)
async def repair_xp_endpoint(user_id: int, body: RepairRequest, db: AsyncSession = Depends(get_session)):
    async with unit_of_work(db):
        await repair_user_xp(db, user_id, body.operator_id)
    return await level_endpoint(user_id, db)


# ── Streaks & achievements ──


@router.get("/users/{user_id}/streaks", response_model=list[StreakResponse])
async def streaks_endpoint(user_id: int, db: AsyncSession = Depends(get_session)):
    return [
        StreakResponse(
            rule=rule.name,
            interval=rule.interval,
            current_count=streak.current_count,
            longest_count=streak.longest_count,
            grace_remaining=streak.grace_remaining,
            last_activity_at=streak.last_activity_at,
            streak_started_at=streak.streak_started_at,
        )
        for streak, rule in await get_user_streaks(db, user_id)
    ]


@router.get("/users/{user_id}/achievements", response_model=list[AchievementResponse])
async def achievements_endpoint(user_id: int, db: AsyncSession = Depends(get_session)):
    return [
        AchievementResponse(
            slug=tmpl.slug,
            name=tmpl.name,
            description=tmpl.description,
            xp_reward=tmpl.xp_reward,
            unlocked_at=ua.unlocked_at,
        )
        for ua, tmpl in await list_user_achievements(db, user_id)
    ]


@router.post("/users/{user_id}/achievements/check", response_model=AchievementCheckResponse)
async def check_achievements_endpoint(
    user_id: int,
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    """Evaluate every active achievement for the user."""
    async with unit_of_work(db):
        unlocked = await check_and_unlock_achievements(db, redis, user_id)
    return AchievementCheckResponse(unlocked=unlocked)


# ── Trust ──


@router.get("/trust/{entity_type}/{entity_id}", response_model=TrustResponse)
async def trust_endpoint(entity_type: TrustEntity, entity_id: int, db: AsyncSession = Depends(get_session)):
    """Current trust score; computed on first read."""
    trust = await get_trust_score(db, entity_type, entity_id)
    if trust is None:
        async with unit_of_work(db):
            trust = await calculate_trust_score(db, entity_type, entity_id)
    return TrustResponse.model_validate(trust)


@router.post("/trust/{entity_type}/{entity_id}/recalculate", response_model=TrustResponse)
async def recalculate_trust_endpoint(entity_type: TrustEntity, entity_id: int, db: AsyncSession = Depends(get_session)):
    async with unit_of_work(db):
        trust = await calculate_trust_score(db, entity_type, entity_id)
    return TrustResponse.model_validate(trust)


@router.post("/trust/{entity_type}/{entity_id}/flag", response_model=TrustResponse)
async def flag_endpoint(
    entity_type: TrustEntity,
    entity_id: int,
    body: OperatorActionRequest,
    db: AsyncSession = Depends(get_session),
):
    async with unit_of_work(db):
        trust = await record_flag(db, entity_type, entity_id, body.operator_id)
    return TrustResponse.model_validate(trust)


@router.post("/trust/{entity_type}/{entity_id}/warning", response_model=TrustResponse)
async def warning_endpoint(
    entity_type: TrustEntity,
    entity_id: int,
    body: OperatorActionRequest,
    db: AsyncSession = Depends(get_session),
):
    async with unit_of_work(db):
        trust = await record_warning(db, entity_type, entity_id, body.operator_id)
    return TrustResponse.model_validate(trust)


@router.post("/trust/{entity_type}/{entity_id}/rating", response_model=TrustResponse)
async def rating_endpoint(
    entity_type: TrustEntity,
    entity_id: int,
    body: RatingRequest,
    db: AsyncSession = Depends(get_session),
):
    async with unit_of_work(db):
        trust = await record_rating(db, entity_type, entity_id, body.rating)
    return TrustResponse.model_validate(trust)
