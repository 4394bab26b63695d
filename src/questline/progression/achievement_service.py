"""Achievement unlocking against a freshly computed activity snapshot."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from questline.db.base import dialect_insert
from questline.db.models import (
    AchievementTemplate,
    ParticipantProof,
    QuestSignup,
    QuestSquad,
    Referral,
    SquadMember,
    UserAchievement,
    UserStreak,
    UserXP,
)
from questline.errors import InvalidCriteria
from questline.events.service import log_event, queue_notification
from questline.events.types import EventType
from questline.progression.criteria import evaluate_criteria, validate_criteria
from questline.progression.levels import compute_level
from questline.progression.xp_service import grant_xp
from questline.signups.states import INSTANCE_CANCELLED_REASON, ProofStatus, SignupStatus
from questline.squads.states import MemberStatus, SquadStatus

logger = logging.getLogger(__name__)


async def build_activity_snapshot(db: AsyncSession, user_id: int) -> dict[str, int]:
    """Read-only metrics for criteria evaluation."""
    snapshot: dict[str, int] = {}

    status_counts = dict(
        (
            await db.execute(
                select(QuestSignup.status, func.count())
                .where(QuestSignup.user_id == user_id)
                .where(or_(QuestSignup.cancel_reason.is_(None), QuestSignup.cancel_reason != INSTANCE_CANCELLED_REASON))
                .group_by(QuestSignup.status)
            )
        ).all()
    )
    snapshot["completed_quests"] = status_counts.get(SignupStatus.COMPLETED.value, 0)
    snapshot["no_shows"] = status_counts.get(SignupStatus.NO_SHOW.value, 0)
    snapshot["cancelled_signups"] = status_counts.get(SignupStatus.DROPPED.value, 0)

    gam = await db.get(UserXP, user_id)
    total_xp = gam.total_xp if gam else 0
    snapshot["total_xp"] = total_xp
    snapshot["level"] = compute_level(total_xp).level

    proof_counts = dict(
        (
            await db.execute(
                select(ParticipantProof.status, func.count())
                .join(QuestSignup, QuestSignup.id == ParticipantProof.signup_id)
                .where(QuestSignup.user_id == user_id)
                .group_by(ParticipantProof.status)
            )
        ).all()
    )
    snapshot["proofs_submitted"] = sum(proof_counts.values())
    snapshot["proofs_approved"] = proof_counts.get(ProofStatus.APPROVED.value, 0)

    snapshot["squads_completed"] = (
        await db.execute(
            select(func.count())
            .select_from(SquadMember)
            .join(QuestSquad, QuestSquad.id == SquadMember.squad_id)
            .where(
                SquadMember.user_id == user_id,
                SquadMember.status == MemberStatus.ACTIVE.value,
                QuestSquad.status == SquadStatus.COMPLETED.value,
            )
        )
    ).scalar_one()

    streak_row = (
        await db.execute(
            select(
                func.coalesce(func.max(UserStreak.current_count), 0),
                func.coalesce(func.max(UserStreak.longest_count), 0),
            ).where(UserStreak.user_id == user_id)
        )
    ).one()
    snapshot["current_streak"] = int(streak_row[0])
    snapshot["longest_streak"] = int(streak_row[1])

    snapshot["friend_recruits"] = (
        await db.execute(
            select(func.count()).select_from(Referral).where(Referral.referrer_user_id == user_id)
        )
    ).scalar_one()

    snapshot["achievements_unlocked"] = (
        await db.execute(
            select(func.count()).select_from(UserAchievement).where(UserAchievement.user_id == user_id)
        )
    ).scalar_one()

    return snapshot


class AchievementEvaluator:
    """Evaluates achievement templates for one user at a time."""

    def __init__(self, db: AsyncSession, redis: object) -> None:
        self.db = db
        self.redis = redis
        self._templates: list[AchievementTemplate] | None = None

    async def _load_templates(self) -> list[AchievementTemplate]:
        """Load and cache active templates with valid criteria."""
        if self._templates is None:
            result = await self.db.execute(
                select(AchievementTemplate)
                .where(AchievementTemplate.is_active.is_(True))
                .order_by(AchievementTemplate.id)
            )
            templates = []
            for template in result.scalars():
                try:
                    validate_criteria(template.criteria)
                except InvalidCriteria:
                    logger.warning("Skipping achievement %s with invalid criteria", template.slug, exc_info=True)
                    continue
                templates.append(template)
            self._templates = templates
        return self._templates

    async def _unlocked_ids(self, user_id: int) -> set[int]:
        result = await self.db.execute(
            select(UserAchievement.achievement_id).where(UserAchievement.user_id == user_id)
        )
        return set(result.scalars())

    async def _unlock(self, user_id: int, template: AchievementTemplate) -> bool:
        stmt = dialect_insert(self.db, UserAchievement).values(
            user_id=user_id,
            achievement_id=template.id,
            unlocked_at=datetime.now(timezone.utc),
        ).on_conflict_do_nothing(index_elements=["user_id", "achievement_id"])
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            return False

        if template.xp_reward > 0:
            await grant_xp(
                self.db, self.redis, user_id, template.xp_reward, "achievement", template.id,
                description=f"Achievement: {template.name}",
            )
        await log_event(
            self.db,
            EventType.ACHIEVEMENT_UNLOCKED,
            target_user_id=user_id,
            payload={"achievement_id": template.id, "slug": template.slug, "xp_reward": template.xp_reward},
        )
        await queue_notification(
            self.db,
            self.redis,
            user_id,
            "achievement_unlocked",
            "Achievement unlocked!",
            template.name,
            data={"achievement_id": template.id},
        )
        logger.info("User %d unlocked achievement %s", user_id, template.slug)
        return True

    async def check_user(self, user_id: int) -> list[int]:
        """Unlock every newly satisfied achievement. Returns unlocked ids.

        Rewards can satisfy further criteria (XP, achievement counts), so
        evaluation repeats until nothing new unlocks.
        """
        templates = await self._load_templates()
        unlocked = await self._unlocked_ids(user_id)
        newly: list[int] = []

        while True:
            snapshot = await build_activity_snapshot(self.db, user_id)
            round_unlocked = []
            for template in templates:
                if template.id in unlocked:
                    continue
                if not evaluate_criteria(template.criteria, snapshot):
                    continue
                if await self._unlock(user_id, template):
                    round_unlocked.append(template.id)
                unlocked.add(template.id)
            if not round_unlocked:
                break
            newly.extend(round_unlocked)

        await self.db.flush()
        return newly


async def check_and_unlock_achievements(db: AsyncSession, redis: object, user_id: int) -> list[int]:
    """Evaluate all active achievements for a user. Returns newly unlocked ids."""
    return await AchievementEvaluator(db, redis).check_user(user_id)


async def list_user_achievements(db: AsyncSession, user_id: int) -> list[tuple[UserAchievement, AchievementTemplate]]:
    result = await db.execute(
        select(UserAchievement, AchievementTemplate)
        .join(AchievementTemplate, AchievementTemplate.id == UserAchievement.achievement_id)
        .where(UserAchievement.user_id == user_id)
        .order_by(UserAchievement.unlocked_at)
    )
    return [(ua, tmpl) for ua, tmpl in result.all()]
