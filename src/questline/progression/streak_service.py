"""Streak tracking with grace periods.

Streak intervals are ISO weeks (Monday start) or calendar months, both
evaluated in UTC. One qualifying activity per interval extends a streak;
missed intervals are absorbed by grace tokens until they run out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from questline.config import get_settings
from questline.db.base import dialect_insert
from questline.db.models import StreakRule, UserStreak
from questline.events.service import log_event
from questline.events.types import EventType
from questline.progression.xp_service import grant_xp

logger = logging.getLogger(__name__)


class StreakInterval(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class StreakChange(str, Enum):
    STARTED = "started"
    SAME_INTERVAL = "same_interval"
    EXTENDED = "extended"
    GRACE_USED = "grace_used"
    RESET = "reset"
    IGNORED = "ignored"  # activity older than the last recorded one


@dataclass(frozen=True)
class StreakState:
    current_count: int = 0
    longest_count: int = 0
    grace_remaining: int = 0
    last_activity_at: datetime | None = None
    streak_started_at: datetime | None = None
    streak_broken_at: datetime | None = None


def interval_index(interval: str, when: datetime) -> int:
    """Ordinal of the week or month containing ``when`` (UTC)."""
    when = when.astimezone(timezone.utc) if when.tzinfo else when.replace(tzinfo=timezone.utc)
    if interval == StreakInterval.WEEKLY:
        # date(1, 1, 1) is a Monday, so this counts ISO weeks.
        return (when.date().toordinal() - 1) // 7
    if interval == StreakInterval.MONTHLY:
        return when.year * 12 + (when.month - 1)
    raise ValueError(f"Unknown streak interval: {interval}")


def evaluate_streak(
    state: StreakState,
    interval: str,
    grace_periods: int,
    activity_at: datetime,
) -> tuple[StreakState, StreakChange]:
    """Apply one qualifying activity to a streak. Pure function."""
    if state.last_activity_at is None or state.current_count == 0:
        new = replace(
            state,
            current_count=1,
            longest_count=max(state.longest_count, 1),
            grace_remaining=grace_periods,
            last_activity_at=activity_at,
            streak_started_at=activity_at,
        )
        return new, StreakChange.STARTED

    gap = interval_index(interval, activity_at) - interval_index(interval, state.last_activity_at)

    if gap < 0:
        return state, StreakChange.IGNORED

    if gap == 0:
        return replace(state, last_activity_at=max(state.last_activity_at, activity_at)), StreakChange.SAME_INTERVAL

    if gap == 1:
        count = state.current_count + 1
        new = replace(
            state,
            current_count=count,
            longest_count=max(state.longest_count, count),
            last_activity_at=activity_at,
        )
        return new, StreakChange.EXTENDED

    missed = gap - 1
    if missed <= state.grace_remaining:
        new = replace(
            state,
            grace_remaining=state.grace_remaining - missed,
            last_activity_at=activity_at,
        )
        return new, StreakChange.GRACE_USED

    new = replace(
        state,
        current_count=1,
        grace_remaining=grace_periods,
        last_activity_at=activity_at,
        streak_started_at=activity_at,
        streak_broken_at=activity_at,
    )
    return new, StreakChange.RESET


def _state_of(streak: UserStreak) -> StreakState:
    return StreakState(
        current_count=streak.current_count,
        longest_count=streak.longest_count,
        grace_remaining=streak.grace_remaining,
        last_activity_at=streak.last_activity_at,
        streak_started_at=streak.streak_started_at,
        streak_broken_at=streak.streak_broken_at,
    )


async def get_active_rules(db: AsyncSession) -> list[StreakRule]:
    result = await db.execute(
        select(StreakRule).where(StreakRule.is_active.is_(True)).order_by(StreakRule.id)
    )
    return list(result.scalars().all())


async def get_or_create_streak(db: AsyncSession, user_id: int, rule: StreakRule) -> UserStreak:
    stmt = dialect_insert(db, UserStreak).values(
        user_id=user_id,
        rule_id=rule.id,
        current_count=0,
        longest_count=0,
        grace_remaining=rule.grace_periods,
        updated_at=datetime.now(timezone.utc),
    ).on_conflict_do_nothing(index_elements=["user_id", "rule_id"])
    await db.execute(stmt)
    result = await db.execute(
        select(UserStreak).where(UserStreak.user_id == user_id, UserStreak.rule_id == rule.id)
    )
    return result.scalar_one()


async def get_user_streaks(db: AsyncSession, user_id: int) -> list[tuple[UserStreak, StreakRule]]:
    result = await db.execute(
        select(UserStreak, StreakRule)
        .join(StreakRule, StreakRule.id == UserStreak.rule_id)
        .where(UserStreak.user_id == user_id)
        .order_by(StreakRule.id)
    )
    return [(streak, rule) for streak, rule in result.all()]


async def update_streaks(
    db: AsyncSession,
    user_id: int,
    activity_at: datetime | None = None,
) -> list[UserStreak]:
    """Apply a qualifying activity to every active streak rule of a user."""
    activity_at = activity_at or datetime.now(timezone.utc)
    updated: list[UserStreak] = []

    for rule in await get_active_rules(db):
        streak = await get_or_create_streak(db, user_id, rule)
        before = _state_of(streak)
        after, change = evaluate_streak(before, rule.interval, rule.grace_periods, activity_at)
        if change == StreakChange.IGNORED:
            continue

        streak.current_count = after.current_count
        streak.longest_count = after.longest_count
        streak.grace_remaining = after.grace_remaining
        streak.last_activity_at = after.last_activity_at
        streak.streak_started_at = after.streak_started_at
        streak.streak_broken_at = after.streak_broken_at
        streak.updated_at = datetime.now(timezone.utc)
        updated.append(streak)

        if change != StreakChange.SAME_INTERVAL:
            await log_event(
                db,
                EventType.STREAK_UPDATED,
                target_user_id=user_id,
                before_state={"current_count": before.current_count, "grace_remaining": before.grace_remaining},
                after_state={"current_count": after.current_count, "grace_remaining": after.grace_remaining},
                payload={"rule": rule.name, "change": change.value},
            )
        if change == StreakChange.RESET:
            logger.info(
                "Streak '%s' broken for user %d (was %d)", rule.name, user_id, before.current_count,
            )

    await db.flush()
    return updated


async def check_streak_bonus(db: AsyncSession, redis: object, user_id: int) -> int:
    """Award streak bonus XP at every milestone count. Returns XP granted.

    The idempotency source id includes the streak start, so a rebuilt
    streak earns its milestones again.
    """
    every = get_settings().streak_bonus_every
    granted_total = 0

    for streak, rule in await get_user_streaks(db, user_id):
        if not rule.is_active or rule.xp_bonus <= 0:
            continue
        if streak.current_count <= 0 or streak.current_count % every != 0:
            continue

        started = streak.streak_started_at.date().isoformat() if streak.streak_started_at else "na"
        source_id = f"{rule.id}:{started}:{streak.current_count}"
        _, granted = await grant_xp(
            db, redis, user_id, rule.xp_bonus, "streak_bonus", source_id,
            description=f"{rule.name}: {streak.current_count} in a row",
        )
        if granted:
            granted_total += rule.xp_bonus
            await log_event(
                db,
                EventType.STREAK_BONUS,
                target_user_id=user_id,
                payload={"rule": rule.name, "count": streak.current_count, "xp": rule.xp_bonus},
            )

    return granted_total
