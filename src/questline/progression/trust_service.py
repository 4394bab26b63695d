"""Trust score computation for users and persistent squads.

Completion counters are recounted from signups on every calculation;
flags, warnings and ratings are recorded here as raw counters. The score
itself is always fully recomputed from the counters.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from questline.db.base import dialect_insert
from questline.db.models import QuestSignup, QuestSquad, SquadMember, TrustScore
from questline.errors import QuestlineError
from questline.events.service import log_event
from questline.events.types import ActorType, EventType
from questline.signups.states import INSTANCE_CANCELLED_REASON, SignupStatus
from questline.squads.states import INSTANCE_UNLOCKED_REASON, SquadStatus

logger = logging.getLogger(__name__)

BASE_SCORE = 50.0
FLAG_PENALTY = 5.0
WARNING_PENALTY = 10.0
SUCCESS_BONUS = 2.0
CANCEL_PENALTY = 3.0
NO_SHOW_PENALTY = 4.0
RATING_WEIGHT = 10.0
NEUTRAL_RATING = 3.0


class TrustEntity(str, Enum):
    USER = "user"
    SQUAD = "squad"


@dataclass(frozen=True)
class TrustCounters:
    successful_quests: int = 0
    cancelled_quests: int = 0
    no_show_quests: int = 0
    flags_received: int = 0
    warnings_issued: int = 0
    avg_rating: float | None = None


def compute_trust_score(c: TrustCounters) -> float:
    """Fixed weighted formula, clamped to [0, 100]."""
    score = (
        BASE_SCORE
        - FLAG_PENALTY * c.flags_received
        - WARNING_PENALTY * c.warnings_issued
        + SUCCESS_BONUS * c.successful_quests
        - CANCEL_PENALTY * c.cancelled_quests
        - NO_SHOW_PENALTY * c.no_show_quests
    )
    if c.avg_rating is not None:
        score += RATING_WEIGHT * (c.avg_rating - NEUTRAL_RATING)
    return round(max(0.0, min(100.0, score)), 2)


async def get_or_create_trust(db: AsyncSession, entity_type: TrustEntity, entity_id: int) -> TrustScore:
    stmt = dialect_insert(db, TrustScore).values(
        entity_type=entity_type.value,
        entity_id=entity_id,
        score=BASE_SCORE,
    ).on_conflict_do_nothing(index_elements=["entity_type", "entity_id"])
    await db.execute(stmt)
    result = await db.execute(
        select(TrustScore).where(
            TrustScore.entity_type == entity_type.value,
            TrustScore.entity_id == entity_id,
        )
    )
    return result.scalar_one()


async def _user_counts(db: AsyncSession, user_id: int) -> dict[str, int]:
    rows = await db.execute(
        select(QuestSignup.status, func.count())
        .where(QuestSignup.user_id == user_id)
        .where(or_(QuestSignup.cancel_reason.is_(None), QuestSignup.cancel_reason != INSTANCE_CANCELLED_REASON))
        .group_by(QuestSignup.status)
    )
    return dict(rows.all())


_OPERATOR_SQUAD_CANCELS = (INSTANCE_UNLOCKED_REASON, INSTANCE_CANCELLED_REASON)


async def _squad_counts(db: AsyncSession, persistent_squad_id: int) -> tuple[int, int, int]:
    counted = or_(QuestSquad.cancel_reason.is_(None), QuestSquad.cancel_reason.not_in(_OPERATOR_SQUAD_CANCELS))
    squad_rows = dict(
        (
            await db.execute(
                select(QuestSquad.status, func.count())
                .where(QuestSquad.persistent_squad_id == persistent_squad_id)
                .where(counted)
                .group_by(QuestSquad.status)
            )
        ).all()
    )
    no_shows = (
        await db.execute(
            select(func.count())
            .select_from(SquadMember)
            .join(QuestSquad, QuestSquad.id == SquadMember.squad_id)
            .join(QuestSignup, QuestSignup.id == SquadMember.signup_id)
            .where(
                QuestSquad.persistent_squad_id == persistent_squad_id,
                QuestSignup.status == SignupStatus.NO_SHOW.value,
                counted,
            )
        )
    ).scalar_one()
    return (
        squad_rows.get(SquadStatus.COMPLETED.value, 0),
        squad_rows.get(SquadStatus.CANCELLED.value, 0),
        no_shows,
    )


async def calculate_trust_score(db: AsyncSession, entity_type: TrustEntity, entity_id: int) -> TrustScore:
    """Recompute the trust score of a user or persistent squad from raw counters."""
    trust = await get_or_create_trust(db, entity_type, entity_id)
    before = trust.score

    if entity_type == TrustEntity.USER:
        counts = await _user_counts(db, entity_id)
        trust.successful_quests = counts.get(SignupStatus.COMPLETED.value, 0)
        trust.cancelled_quests = counts.get(SignupStatus.DROPPED.value, 0)
        trust.no_show_quests = counts.get(SignupStatus.NO_SHOW.value, 0)
    else:
        successful, cancelled, no_shows = await _squad_counts(db, entity_id)
        trust.successful_quests = successful
        trust.cancelled_quests = cancelled
        trust.no_show_quests = no_shows

    trust.score = compute_trust_score(
        TrustCounters(
            successful_quests=trust.successful_quests,
            cancelled_quests=trust.cancelled_quests,
            no_show_quests=trust.no_show_quests,
            flags_received=trust.flags_received,
            warnings_issued=trust.warnings_issued,
            avg_rating=trust.avg_rating,
        )
    )
    trust.last_calculated_at = datetime.now(timezone.utc)
    await db.flush()

    if trust.score != before:
        await log_event(
            db,
            EventType.TRUST_RECALCULATED,
            target_user_id=entity_id if entity_type == TrustEntity.USER else None,
            before_state={"score": before},
            after_state={"score": trust.score},
            payload={"entity_type": entity_type.value, "entity_id": entity_id},
        )
    return trust


async def record_flag(db: AsyncSession, entity_type: TrustEntity, entity_id: int, operator_id: int) -> TrustScore:
    trust = await get_or_create_trust(db, entity_type, entity_id)
    trust.flags_received += 1
    await log_event(
        db,
        EventType.ADMIN_OVERRIDE,
        actor_type=ActorType.ADMIN,
        actor_id=operator_id,
        payload={"action": "flag", "entity_type": entity_type.value, "entity_id": entity_id},
    )
    return await calculate_trust_score(db, entity_type, entity_id)


async def record_warning(db: AsyncSession, entity_type: TrustEntity, entity_id: int, operator_id: int) -> TrustScore:
    trust = await get_or_create_trust(db, entity_type, entity_id)
    trust.warnings_issued += 1
    await log_event(
        db,
        EventType.ADMIN_OVERRIDE,
        actor_type=ActorType.ADMIN,
        actor_id=operator_id,
        payload={"action": "warning", "entity_type": entity_type.value, "entity_id": entity_id},
    )
    return await calculate_trust_score(db, entity_type, entity_id)


async def record_rating(db: AsyncSession, entity_type: TrustEntity, entity_id: int, rating: float) -> TrustScore:
    """Fold a 1-5 rating into the running average."""
    if not 1 <= rating <= 5:
        raise QuestlineError("Rating must be between 1 and 5")
    trust = await get_or_create_trust(db, entity_type, entity_id)
    total = (trust.avg_rating or 0.0) * trust.ratings_count + rating
    trust.ratings_count += 1
    trust.avg_rating = round(total / trust.ratings_count, 3)
    return await calculate_trust_score(db, entity_type, entity_id)


async def get_trust_score(db: AsyncSession, entity_type: TrustEntity, entity_id: int) -> TrustScore | None:
    result = await db.execute(
        select(TrustScore).where(
            TrustScore.entity_type == entity_type.value,
            TrustScore.entity_id == entity_id,
        )
    )
    return result.scalar_one_or_none()
