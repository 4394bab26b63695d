"""Applies progression reactions to signup events.

Reactions run in the same transaction as the event that triggered them;
every step is idempotent, so replaying an event is harmless.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from questline.config import get_settings
from questline.db.models import OpsEvent
from questline.events.types import EventType
from questline.progression.achievement_service import check_and_unlock_achievements
from questline.progression.streak_service import check_streak_bonus, update_streaks
from questline.progression.trust_service import TrustEntity, calculate_trust_score
from questline.progression.xp_service import award_xp

logger = logging.getLogger(__name__)

COMPLETION_SOURCE = "quest_completion"


async def _on_signup_completed(db: AsyncSession, redis: object, event: OpsEvent) -> None:
    user_id = event.target_user_id
    payload = event.payload or {}
    base_xp = int(payload.get("base_xp", get_settings().default_base_xp))

    await award_xp(
        db, redis, user_id, base_xp, COMPLETION_SOURCE, event.instance_id,
        description=payload.get("quest_title"),
    )
    await update_streaks(db, user_id, event.created_at)
    await check_streak_bonus(db, redis, user_id)
    await check_and_unlock_achievements(db, redis, user_id)
    await calculate_trust_score(db, TrustEntity.USER, user_id)


async def _on_trust_affecting(db: AsyncSession, redis: object, event: OpsEvent) -> None:
    await calculate_trust_score(db, TrustEntity.USER, event.target_user_id)


_HANDLERS = {
    EventType.SIGNUP_COMPLETED.value: _on_signup_completed,
    EventType.NO_SHOW_MARKED.value: _on_trust_affecting,
    EventType.SIGNUP_CANCELLED.value: _on_trust_affecting,
}


async def apply_progression(db: AsyncSession, redis: object, event: OpsEvent) -> bool:
    """Dispatch an event to its progression handler. Returns False if none applies."""
    handler = _HANDLERS.get(event.event_type)
    if handler is None or event.target_user_id is None:
        return False
    logger.debug("Applying progression for %s (user %s)", event.event_type, event.target_user_id)
    await handler(db, redis, event)
    return True
