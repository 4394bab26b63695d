"""Integration tests for the XP ledger, streaks, achievements and trust."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from questline.db.models import OpsEvent, Referral, UserXP
from questline.errors import InconsistentLedger, QuestlineError
from questline.lifecycle import service as lifecycle
from questline.progression import xp_service
from questline.progression.achievement_service import (
    build_activity_snapshot,
    check_and_unlock_achievements,
    list_user_achievements,
)
from questline.progression.streak_service import check_streak_bonus, get_user_streaks, update_streaks
from questline.progression.trust_service import (
    TrustEntity,
    calculate_trust_score,
    record_flag,
    record_rating,
    record_warning,
)
from questline.signups import service as signups
from questline.squads import persistent
from questline.squads.formation import adopt_persistent_squad, list_instance_squads


async def _event_types(db, user_id: int) -> list[str]:
    result = await db.execute(
        select(OpsEvent.event_type).where(OpsEvent.target_user_id == user_id).order_by(OpsEvent.id)
    )
    return list(result.scalars())


class TestXPLedger:
    """Idempotent awards and reconciliation."""

    async def test_award_is_idempotent(self, db_session):
        total, granted = await xp_service.grant_xp(db_session, None, 7, 40, "quest_completion", 12)
        assert (total, granted) == (40, True)

        total, granted = await xp_service.grant_xp(db_session, None, 7, 40, "quest_completion", 12)
        assert (total, granted) == (40, False)
        assert len(await xp_service.list_transactions(db_session, 7)) == 1

    async def test_distinct_sources_both_count(self, db_session):
        await xp_service.award_xp(db_session, None, 7, 40, "quest_completion", 12)
        total = await xp_service.award_xp(db_session, None, 7, 40, "quest_completion", 13)
        assert total == 80

    async def test_level_up_emits_event_and_notification(self, db_session):
        await xp_service.award_xp(db_session, None, 7, 260, "admin_grant", "welcome")

        info = await xp_service.get_user_level(db_session, 7)
        assert info.level == 3
        row = await db_session.get(UserXP, 7)
        assert (row.level, row.level_name) == (3, "Explorer")
        assert await _event_types(db_session, 7) == ["xp_awarded", "level_up", "notification_queued"]

    async def test_unknown_user_is_level_one(self, db_session):
        info = await xp_service.get_user_level(db_session, 404)
        assert (info.level, info.current_xp) == (1, 0)

    async def test_history_newest_first(self, db_session):
        await xp_service.award_xp(db_session, None, 7, 10, "admin_grant", "a")
        await xp_service.award_xp(db_session, None, 7, 20, "admin_grant", "b")
        history = await xp_service.list_transactions(db_session, 7, limit=1)
        assert [t.source_id for t in history] == ["b"]

    async def test_drift_freezes_and_repair_restores(self, db_session):
        await xp_service.award_xp(db_session, None, 7, 100, "admin_grant", "a")
        row = await db_session.get(UserXP, 7)
        row.total_xp = 999
        await db_session.flush()

        drifts = await xp_service.reconcile_user_xp(db_session)
        assert drifts == [{"user_id": 7, "total_xp": 999, "ledger_total": 100, "drift": 899}]
        assert row.ledger_frozen is True

        with pytest.raises(InconsistentLedger):
            await xp_service.award_xp(db_session, None, 7, 5, "admin_grant", "b")

        repaired = await xp_service.repair_user_xp(db_session, 7, operator_id=1)
        assert repaired == 100
        assert row.ledger_frozen is False
        assert row.level == 2
        assert await xp_service.reconcile_user_xp(db_session, 7) == []


class TestStreaks:
    """Weekly and monthly streak rules."""

    async def test_consecutive_weeks_earn_bonus_once(self, db_session):
        for day in (2, 9, 16, 23):
            await update_streaks(db_session, 5, datetime(2026, 3, day, 18, tzinfo=timezone.utc))

        streaks = {rule.name: streak for streak, rule in await get_user_streaks(db_session, 5)}
        assert streaks["Weekly Warrior"].current_count == 4
        assert streaks["Monthly Explorer"].current_count == 1

        assert await check_streak_bonus(db_session, None, 5) == 25
        assert await check_streak_bonus(db_session, None, 5) == 0
        row = await db_session.get(UserXP, 5)
        assert row.total_xp == 25

    async def test_grace_then_reset(self, db_session):
        await update_streaks(db_session, 5, datetime(2026, 3, 2, tzinfo=timezone.utc))
        await update_streaks(db_session, 5, datetime(2026, 3, 16, tzinfo=timezone.utc))
        streaks = {rule.name: streak for streak, rule in await get_user_streaks(db_session, 5)}
        weekly = streaks["Weekly Warrior"]
        assert (weekly.current_count, weekly.grace_remaining) == (1, 0)

        await update_streaks(db_session, 5, datetime(2026, 3, 30, tzinfo=timezone.utc))
        assert weekly.current_count == 1
        assert weekly.grace_remaining == 1
        assert weekly.streak_broken_at is not None


class TestAchievements:
    async def test_recruiter_unlocks_once(self, db_session):
        db_session.add_all([Referral(referrer_user_id=3, referred_user_id=uid) for uid in (30, 31, 32)])
        await db_session.flush()

        unlocked = await check_and_unlock_achievements(db_session, None, 3)
        assert len(unlocked) == 1
        assert await check_and_unlock_achievements(db_session, None, 3) == []

        [(record, template)] = await list_user_achievements(db_session, 3)
        assert template.slug == "recruiter"
        assert record.achievement_id == unlocked[0]
        assert (await db_session.get(UserXP, 3)).total_xp == 60

    async def test_snapshot_for_new_user(self, db_session):
        snapshot = await build_activity_snapshot(db_session, 77)
        assert snapshot["completed_quests"] == 0
        assert snapshot["level"] == 1
        assert snapshot["friend_recruits"] == 0


class TestTrust:
    async def test_operator_actions_and_ratings(self, db_session):
        trust = await calculate_trust_score(db_session, TrustEntity.USER, 8)
        assert trust.score == 50.0

        await record_rating(db_session, TrustEntity.USER, 8, 5)
        trust = await record_rating(db_session, TrustEntity.USER, 8, 4)
        assert trust.avg_rating == 4.5
        assert trust.score == 65.0

        trust = await record_flag(db_session, TrustEntity.USER, 8, operator_id=1)
        assert trust.score == 60.0
        trust = await record_warning(db_session, TrustEntity.USER, 8, operator_id=1)
        assert trust.score == 50.0

    async def test_operator_cancelled_squads_do_not_count(self, db_session, make_instance):
        """Squads dissolved by an unlock or an instance cancel leave squad trust untouched."""
        crew = await persistent.create_persistent_squad(db_session, "Trail Crew", leader_id=2, member_ids=[1, 3])
        unlocked = await make_instance(capacity=6, target_squad_size=3)
        cancelled = await make_instance(capacity=6, target_squad_size=3)
        for uid in range(1, 7):
            await signups.request_signup(db_session, unlocked.id, uid)
        for uid in (1, 2, 3):
            await signups.request_signup(db_session, cancelled.id, uid)

        first = await adopt_persistent_squad(db_session, unlocked, crew.id, actor_id=2)
        await lifecycle.lock(db_session, None, unlocked.id)
        await lifecycle.unlock(db_session, unlocked.id, actor_id=1)
        second = await adopt_persistent_squad(db_session, cancelled, crew.id, actor_id=2)
        await lifecycle.cancel(db_session, None, cancelled.id, "venue closed", actor_id=1)

        assert (first.status, first.cancel_reason) == ("cancelled", "instance_unlocked")
        assert (second.status, second.cancel_reason) == ("cancelled", "instance_cancelled")
        dissolved = await list_instance_squads(db_session, unlocked.id, include_cancelled=True)
        assert {s.status for s in dissolved} == {"cancelled"}
        trust = await calculate_trust_score(db_session, TrustEntity.SQUAD, crew.id)
        assert trust.cancelled_quests == 0
        assert trust.score == 50.0

    async def test_rating_out_of_range(self, db_session):
        with pytest.raises(QuestlineError, match="between 1 and 5"):
            await record_rating(db_session, TrustEntity.SQUAD, 1, 6)
