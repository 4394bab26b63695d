"""Quest templates and their review workflow."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from questline.config import get_settings
from questline.db.models import Quest
from questline.errors import DuplicateRequest, InvalidTransition, NotFound, QuestlineError
from questline.events.service import log_event
from questline.events.types import ActorType, EventType
from questline.lifecycle.states import (
    QuestStatus,
    ReviewStatus,
    validate_quest_transition,
    validate_review_transition,
)
from questline.signups.states import CompletionRule

logger = logging.getLogger(__name__)

REVIEW_DECISIONS = {ReviewStatus.APPROVED, ReviewStatus.NEEDS_CHANGES, ReviewStatus.REJECTED}


def _parse(enum_cls, value: str, what: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise QuestlineError(f"Unknown {what}: {value}") from None


def slugify(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug or "quest"


async def get_quest(db: AsyncSession, quest_id: int, *, for_update: bool = False) -> Quest:
    query = select(Quest).where(Quest.id == quest_id)
    if for_update:
        query = query.with_for_update()
    quest = (await db.execute(query)).scalar_one_or_none()
    if quest is None:
        raise NotFound(f"Quest {quest_id} not found")
    return quest


async def list_quests(db: AsyncSession, status: str | None = None, limit: int = 50, offset: int = 0) -> list[Quest]:
    query = select(Quest)
    if status is not None:
        query = query.where(Quest.status == status)
    result = await db.execute(query.order_by(Quest.id).limit(limit).offset(offset))
    return list(result.scalars().all())


async def create_quest(
    db: AsyncSession,
    title: str,
    creator_id: int | None = None,
    *,
    slug: str | None = None,
    description: str | None = None,
    constraints: dict[str, Any] | None = None,
    objectives: list[Any] | None = None,
    default_capacity: int | None = None,
    default_squad_size: int | None = None,
    default_duration_minutes: int = 120,
    base_xp: int | None = None,
    completion_rule: str = CompletionRule.PER_MEMBER.value,
    requires_approval: bool = False,
    requires_proof: bool = False,
    is_solo: bool = False,
    warm_up_prompt: str | None = None,
) -> Quest:
    """Create a draft quest. It must pass review before it can open."""
    settings = get_settings()
    rule = _parse(CompletionRule, completion_rule, "completion rule")
    if default_duration_minutes <= 0:
        raise QuestlineError("Duration must be positive")

    quest = Quest(
        slug=slug or slugify(title),
        title=title,
        description=description,
        creator_id=creator_id,
        constraints=constraints or {},
        objectives=objectives or [],
        default_capacity=default_capacity,
        default_squad_size=default_squad_size,
        default_duration_minutes=default_duration_minutes,
        base_xp=settings.default_base_xp if base_xp is None else base_xp,
        completion_rule=rule.value,
        requires_approval=requires_approval,
        requires_proof=requires_proof,
        is_solo=is_solo,
        warm_up_prompt=warm_up_prompt,
        status=QuestStatus.DRAFT.value,
        review_status=ReviewStatus.DRAFT.value,
    )
    db.add(quest)
    try:
        await db.flush()
    except IntegrityError as e:
        raise DuplicateRequest(f"A quest with slug '{quest.slug}' already exists") from e
    logger.info("Created quest %d (%s)", quest.id, quest.slug)
    return quest


async def submit_quest_for_review(db: AsyncSession, quest_id: int, actor_id: int | None = None) -> Quest:
    """draft | needs_changes -> pending_review."""
    quest = await get_quest(db, quest_id, for_update=True)
    before = quest.review_status
    validate_review_transition(before, ReviewStatus.PENDING_REVIEW.value)
    quest.review_status = ReviewStatus.PENDING_REVIEW.value
    await db.flush()

    await log_event(
        db,
        EventType.QUEST_SUBMITTED,
        actor_type=ActorType.USER,
        actor_id=actor_id if actor_id is not None else quest.creator_id,
        before_state={"review_status": before},
        after_state={"review_status": quest.review_status},
        payload={"quest_id": quest.id},
    )
    return quest


async def review_quest(
    db: AsyncSession,
    quest_id: int,
    decision: str,
    reviewer_id: int,
    notes: str | None = None,
) -> Quest:
    """Record a review decision. Approving a draft quest opens it."""
    target = _parse(ReviewStatus, decision, "review decision")
    if target not in REVIEW_DECISIONS:
        raise QuestlineError(f"Unknown review decision: {decision}")

    quest = await get_quest(db, quest_id, for_update=True)
    before = {"review_status": quest.review_status, "status": quest.status}
    validate_review_transition(quest.review_status, target.value)

    quest.review_status = target.value
    quest.review_notes = notes
    quest.reviewed_by = reviewer_id
    quest.reviewed_at = datetime.now(timezone.utc)
    if target == ReviewStatus.APPROVED and quest.status == QuestStatus.DRAFT:
        quest.status = QuestStatus.OPEN.value
    await db.flush()

    await log_event(
        db,
        EventType.QUEST_REVIEWED,
        actor_type=ActorType.ADMIN,
        actor_id=reviewer_id,
        before_state=before,
        after_state={"review_status": quest.review_status, "status": quest.status},
        payload={"quest_id": quest.id, "notes": notes},
    )
    return quest


async def change_quest_status(db: AsyncSession, quest_id: int, target: str, actor_id: int | None = None) -> Quest:
    quest = await get_quest(db, quest_id, for_update=True)
    target_status = _parse(QuestStatus, target, "quest status")
    before = quest.status
    validate_quest_transition(before, target_status.value)
    if target_status == QuestStatus.OPEN and quest.review_status != ReviewStatus.APPROVED:
        raise InvalidTransition("quest", before, target_status.value, reason="The quest has not been approved.")

    quest.status = target_status.value
    await db.flush()
    await log_event(
        db,
        EventType.QUEST_STATUS_CHANGE,
        actor_type=ActorType.ADMIN if actor_id is not None else ActorType.SYSTEM,
        actor_id=actor_id,
        before_state={"status": before},
        after_state={"status": quest.status},
        payload={"quest_id": quest.id},
    )
    return quest
