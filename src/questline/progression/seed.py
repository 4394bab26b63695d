"""Seed streak rules and achievement templates.

Idempotent: existing rows (matched by name / slug) are left untouched.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from questline.db.models import AchievementTemplate, StreakRule
from questline.progression.criteria import validate_criteria

logger = logging.getLogger(__name__)

STREAK_RULE_SEED_DATA: list[dict] = [
    {"name": "Weekly Warrior", "interval": "weekly", "grace_periods": 1, "xp_bonus": 25},
    {"name": "Monthly Explorer", "interval": "monthly", "grace_periods": 0, "xp_bonus": 50},
]

ACHIEVEMENT_SEED_DATA: list[dict] = [
    # Quests
    {"slug": "first_quest", "name": "First Steps", "description": "Complete your first quest",
     "criteria": {"type": "quest_count", "count": 1}, "xp_reward": 25},
    {"slug": "five_quests", "name": "Regular Adventurer", "description": "Complete 5 quests",
     "criteria": {"metric": "completed_quests", "op": ">=", "value": 5}, "xp_reward": 75},
    {"slug": "twenty_quests", "name": "Seasoned", "description": "Complete 20 quests",
     "criteria": {"metric": "completed_quests", "op": ">=", "value": 20}, "xp_reward": 200},
    {"slug": "squad_player", "name": "Squad Player", "description": "Complete 3 quests with a squad",
     "criteria": {"metric": "squads_completed", "op": ">=", "value": 3}, "xp_reward": 50},
    # Reliability
    {"slug": "reliable", "name": "Reliable", "description": "Complete 10 quests without a single no-show",
     "criteria": {"all": [
         {"metric": "completed_quests", "op": ">=", "value": 10},
         {"metric": "no_shows", "op": "==", "value": 0},
     ]}, "xp_reward": 100},
    # XP
    {"slug": "xp_1000", "name": "Rising Star", "description": "Earn 1,000 XP",
     "criteria": {"type": "total_xp", "amount": 1000}, "xp_reward": 0},
    # Streaks
    {"slug": "streak_4", "name": "On a Roll", "description": "Keep a streak going for 4 intervals",
     "criteria": {"metric": "longest_streak", "op": ">=", "value": 4}, "xp_reward": 40},
    # Social
    {"slug": "recruiter", "name": "Recruiter", "description": "Invite 3 friends",
     "criteria": {"type": "friend_recruit_count", "count": 3}, "xp_reward": 60},
    {"slug": "proof_master", "name": "Proof Master", "description": "Have 5 proofs approved",
     "criteria": {"metric": "proofs_approved", "op": ">=", "value": 5}, "xp_reward": 50},
]


async def seed_streak_rules(db: AsyncSession) -> int:
    """Insert missing streak rules. Returns count inserted."""
    existing = set((await db.execute(select(StreakRule.name))).scalars())
    inserted = 0
    for data in STREAK_RULE_SEED_DATA:
        if data["name"] in existing:
            continue
        db.add(StreakRule(is_active=True, **data))
        inserted += 1
    await db.flush()
    return inserted


async def seed_achievements(db: AsyncSession) -> int:
    """Insert missing achievement templates. Returns count inserted."""
    existing = set((await db.execute(select(AchievementTemplate.slug))).scalars())
    inserted = 0
    for data in ACHIEVEMENT_SEED_DATA:
        if data["slug"] in existing:
            continue
        validate_criteria(data["criteria"])
        db.add(AchievementTemplate(is_active=True, **data))
        inserted += 1
    await db.flush()
    return inserted


async def seed_progression(db: AsyncSession) -> None:
    """Seed all progression reference data and commit."""
    rules = await seed_streak_rules(db)
    achievements = await seed_achievements(db)
    await db.commit()
    if rules or achievements:
        logger.info("Seeded %d streak rules and %d achievements", rules, achievements)
