"""Instance lifecycle manager.

Owns every Instance transition and orchestrates the signup controller and
the squad coordinator. Each operation flushes into the caller's session;
an illegal transition raises before anything is written.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from questline.config import get_settings
from questline.db.models import Quest, QuestInstance, QuestSignup, QuestSquad
from questline.errors import InsufficientParticipants, InvalidSchedule, InvalidTransition, NotFound, QuestlineError
from questline.events.service import log_event, queue_notification
from questline.events.types import ActorType, EventType
from questline.lifecycle.states import (
    TERMINAL_INSTANCE_STATUSES,
    InstanceStatus,
    QuestStatus,
    validate_transition,
)
from questline.signups import service as signups
from questline.signups.states import COUNTED_STATUSES, INSTANCE_CANCELLED_REASON, SignupStatus
from questline.squads.compatibility import CompatibilityScorer
from questline.squads.formation import form_squads, get_squad_members, list_instance_squads
from questline.squads.profiles import ProfileProvider
from questline.squads.states import INSTANCE_UNLOCKED_REASON, LOCKED_STATUSES, SquadStatus

logger = logging.getLogger(__name__)


def _actor(actor_id: int | None) -> ActorType:
    return ActorType.ADMIN if actor_id is not None else ActorType.SYSTEM


async def _transition(
    db: AsyncSession,
    instance: QuestInstance,
    target: InstanceStatus,
    actor_id: int | None = None,
    payload: dict | None = None,
) -> None:
    before = instance.status
    instance.status = target.value
    await db.flush()
    await log_event(
        db,
        EventType.STATUS_CHANGE,
        actor_type=_actor(actor_id),
        actor_id=actor_id,
        instance_id=instance.id,
        before_state={"status": before},
        after_state={"status": instance.status},
        payload=payload,
    )
    logger.info("Instance %d: %s -> %s", instance.id, before, instance.status)


async def _notify_participants(
    db: AsyncSession,
    redis: object,
    instance: QuestInstance,
    subtype: str,
    title: str,
    body: str,
    statuses: frozenset[str] = COUNTED_STATUSES,
) -> int:
    result = await db.execute(
        select(QuestSignup.user_id).where(
            QuestSignup.instance_id == instance.id,
            QuestSignup.status.in_(statuses),
        )
    )
    user_ids = list(result.scalars())
    for user_id in user_ids:
        await queue_notification(db, redis, user_id, subtype, title, body, instance_id=instance.id)
    return len(user_ids)


# ---------------------------------------------------------------------------
# Creation & publishing
# ---------------------------------------------------------------------------


async def create_instance_from_quest(
    db: AsyncSession,
    quest_id: int,
    scheduled_date: date,
    start_time: time,
    end_time: time | None = None,
    meeting_point: str | None = None,
    *,
    capacity: int | None = None,
    target_squad_size: int | None = None,
    squad_formation_threshold: int | None = None,
    warm_up_min_ready_pct: int | None = None,
    now: datetime | None = None,
) -> QuestInstance:
    """Schedule a new draft Instance of a Quest.

    Times are wall-clock times in the configured timezone. Capacity and
    squad size default to the Quest's values.
    """
    settings = get_settings()
    now = now or datetime.now(timezone.utc)

    quest = await db.get(Quest, quest_id)
    if quest is None:
        raise NotFound(f"Quest {quest_id} not found")

    tz = ZoneInfo(settings.timezone)
    start_at = datetime.combine(scheduled_date, start_time, tzinfo=tz).astimezone(timezone.utc)
    if end_time is not None:
        end_at = datetime.combine(scheduled_date, end_time, tzinfo=tz).astimezone(timezone.utc)
    else:
        end_at = start_at + timedelta(minutes=quest.default_duration_minutes)

    if start_at >= end_at:
        raise InvalidSchedule("Instance must start before it ends")
    if start_at < now - timedelta(minutes=settings.schedule_past_tolerance_minutes):
        raise InvalidSchedule(f"Instance start {start_at.isoformat()} is in the past")

    capacity = capacity or quest.default_capacity or settings.default_capacity
    target_squad_size = target_squad_size or quest.default_squad_size or settings.default_squad_size
    if capacity < 1 or target_squad_size < 1:
        raise InvalidSchedule("Capacity and target squad size must be positive")

    instance = QuestInstance(
        quest_id=quest.id,
        instance_slug=f"{quest.slug}-{scheduled_date.strftime('%Y%m%d')}",
        scheduled_date=scheduled_date,
        start_at=start_at,
        end_at=end_at,
        meeting_point=meeting_point,
        capacity=capacity,
        current_signup_count=0,
        target_squad_size=target_squad_size,
        squad_formation_threshold=squad_formation_threshold,
        warm_up_min_ready_pct=warm_up_min_ready_pct or settings.warm_up_min_ready_pct,
        status=InstanceStatus.DRAFT.value,
        check_in_opens_at=start_at - timedelta(minutes=settings.check_in_opens_minutes),
        check_in_closes_at=start_at + timedelta(minutes=settings.check_in_closes_minutes),
    )
    db.add(instance)
    await db.flush()

    await log_event(
        db,
        EventType.INSTANCE_CREATED,
        instance_id=instance.id,
        after_state={"status": instance.status},
        payload={"quest_id": quest.id, "scheduled_date": scheduled_date.isoformat()},
    )
    logger.info("Created instance %d (%s)", instance.id, instance.instance_slug)
    return instance


async def publish(db: AsyncSession, instance_id: int, actor_id: int | None = None) -> QuestInstance:
    """draft -> recruiting. The Quest must be open."""
    instance = await signups.get_instance(db, instance_id, for_update=True)
    validate_transition(instance.status, InstanceStatus.RECRUITING.value)
    if instance.status != InstanceStatus.DRAFT:
        raise InvalidTransition("instance", instance.status, InstanceStatus.RECRUITING.value, [])
    quest = await db.get(Quest, instance.quest_id)
    if quest is None or quest.status != QuestStatus.OPEN:
        raise InvalidTransition(
            "instance", instance.status, InstanceStatus.RECRUITING.value,
            reason="The quest is not open.",
        )
    await _transition(db, instance, InstanceStatus.RECRUITING, actor_id)
    return instance


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------


async def lock(
    db: AsyncSession,
    redis: object,
    instance_id: int,
    actor_id: int | None = None,
    *,
    scorer: CompatibilityScorer | None = None,
    profiles: ProfileProvider | None = None,
) -> QuestInstance:
    """recruiting -> locked, forming squads first for non-solo quests.

    When too few confirmed participants exist the Instance stays
    recruiting: the failure is event-logged and the unchanged Instance is
    returned, so the caller can commit the record.
    """
    instance = await signups.get_instance(db, instance_id, for_update=True)
    validate_transition(instance.status, InstanceStatus.LOCKED.value)
    if instance.status != InstanceStatus.RECRUITING:
        raise InvalidTransition("instance", instance.status, InstanceStatus.LOCKED.value, [])

    quest = await db.get(Quest, instance.quest_id)
    formed = 0
    if quest is not None and not quest.is_solo:
        try:
            squads = await form_squads(db, instance, scorer=scorer, profiles=profiles, actor_id=actor_id)
        except InsufficientParticipants as e:
            logger.warning("Squad formation failed for instance %d: %s", instance.id, e)
            await log_event(
                db,
                EventType.SQUAD_FORMATION_FAILED,
                actor_type=_actor(actor_id),
                actor_id=actor_id,
                instance_id=instance.id,
                payload={"reason": str(e), "signup_count": instance.current_signup_count},
            )
            return instance
        formed = len(squads)
        for squad in squads:
            for member in await get_squad_members(db, squad.id):
                await queue_notification(
                    db, redis, member.user_id, "squad_assigned",
                    "Your squad is here", f"You have been placed in {squad.name}.",
                    instance_id=instance.id, squad_id=squad.id,
                )

    await _transition(db, instance, InstanceStatus.LOCKED, actor_id, payload={"squads_formed": formed})
    return instance


async def maybe_auto_lock(db: AsyncSession, redis: object, instance_id: int) -> QuestInstance | None:
    """Lock once the confirmed count reaches the formation threshold.

    Returns the Instance when a lock was attempted, else None.
    """
    instance = await signups.get_instance(db, instance_id)
    if instance.status != InstanceStatus.RECRUITING or not instance.squad_formation_threshold:
        return None
    confirmed = len(await signups.list_signups(db, instance.id, SignupStatus.CONFIRMED.value))
    if confirmed < instance.squad_formation_threshold:
        return None
    logger.info("Instance %d reached formation threshold (%d)", instance.id, confirmed)
    return await lock(db, redis, instance.id)


async def reform_squads(
    db: AsyncSession,
    instance_id: int,
    actor_id: int | None = None,
    *,
    scorer: CompatibilityScorer | None = None,
    profiles: ProfileProvider | None = None,
) -> list[QuestSquad]:
    """Partition confirmed participants still without a squad on a locked instance.

    Existing squads are left untouched.
    """
    instance = await signups.get_instance(db, instance_id, for_update=True)
    if instance.status != InstanceStatus.LOCKED:
        raise InvalidTransition(
            "instance", instance.status, InstanceStatus.LOCKED.value,
            reason="Squads are formed only on a locked instance.",
        )
    return await form_squads(db, instance, scorer=scorer, profiles=profiles, actor_id=actor_id)


async def unlock(db: AsyncSession, instance_id: int, actor_id: int | None = None) -> QuestInstance:
    """locked -> recruiting while no squad is confirmed; draft squads are dissolved."""
    instance = await signups.get_instance(db, instance_id, for_update=True)
    validate_transition(instance.status, InstanceStatus.RECRUITING.value)
    if instance.status != InstanceStatus.LOCKED:
        raise InvalidTransition("instance", instance.status, InstanceStatus.RECRUITING.value, [])

    squads = await list_instance_squads(db, instance.id)
    if any(s.status in LOCKED_STATUSES for s in squads):
        raise InvalidTransition(
            "instance", instance.status, InstanceStatus.RECRUITING.value,
            reason="A squad of this instance is already confirmed.",
        )
    for squad in squads:
        await _cancel_squad(db, squad, INSTANCE_UNLOCKED_REASON)

    await _transition(db, instance, InstanceStatus.RECRUITING, actor_id)
    return instance


# ---------------------------------------------------------------------------
# Running
# ---------------------------------------------------------------------------


async def go_live(
    db: AsyncSession,
    instance_id: int,
    actor_id: int | None = None,
    now: datetime | None = None,
) -> QuestInstance:
    """locked -> live at or after the start time, once squads are locked."""
    now = now or datetime.now(timezone.utc)
    instance = await signups.get_instance(db, instance_id, for_update=True)
    validate_transition(instance.status, InstanceStatus.LIVE.value)
    if instance.status != InstanceStatus.LOCKED:
        raise InvalidTransition("instance", instance.status, InstanceStatus.LIVE.value, [])
    if now < instance.start_at:
        raise InvalidTransition(
            "instance", instance.status, InstanceStatus.LIVE.value,
            reason=f"The instance starts at {instance.start_at.isoformat()}.",
        )

    quest = await db.get(Quest, instance.quest_id)
    is_solo = quest is not None and quest.is_solo
    if not is_solo and not instance.squads_locked:
        raise InvalidTransition(
            "instance", instance.status, InstanceStatus.LIVE.value,
            reason="Squads are not locked yet.",
        )

    for squad in await list_instance_squads(db, instance.id):
        if squad.status == SquadStatus.CONFIRMED:
            squad.status = SquadStatus.ACTIVE.value
            await log_event(
                db,
                EventType.SQUAD_STATUS_CHANGE,
                instance_id=instance.id,
                squad_id=squad.id,
                before_state={"status": SquadStatus.CONFIRMED.value},
                after_state={"status": squad.status},
            )

    await _transition(db, instance, InstanceStatus.LIVE, actor_id)
    return instance


async def complete(
    db: AsyncSession,
    redis: object,
    instance_id: int,
    actor_id: int | None = None,
    force: bool = False,
    now: datetime | None = None,
) -> QuestInstance:
    """live -> completed after the end time (or earlier with ``force``).

    Runs completion evaluation for every signup; completed signups feed the
    progression engine in this same transaction.
    """
    now = now or datetime.now(timezone.utc)
    instance = await signups.get_instance(db, instance_id, for_update=True)
    validate_transition(instance.status, InstanceStatus.COMPLETED.value)
    if now < instance.end_at and not force:
        raise InvalidTransition(
            "instance", instance.status, InstanceStatus.COMPLETED.value,
            reason=f"The instance ends at {instance.end_at.isoformat()}.",
        )

    instance.completed_at = now
    await _transition(db, instance, InstanceStatus.COMPLETED, actor_id, payload={"forced": force})
    if force and now < instance.end_at:
        await log_event(
            db,
            EventType.ADMIN_OVERRIDE,
            actor_type=ActorType.ADMIN,
            actor_id=actor_id,
            instance_id=instance.id,
            payload={"action": "complete_before_end"},
        )

    completed = await signups.evaluate_completion(db, redis, instance)

    for squad in await list_instance_squads(db, instance.id):
        if squad.status == SquadStatus.ACTIVE:
            squad.status = SquadStatus.COMPLETED.value
            await log_event(
                db,
                EventType.SQUAD_STATUS_CHANGE,
                instance_id=instance.id,
                squad_id=squad.id,
                before_state={"status": SquadStatus.ACTIVE.value},
                after_state={"status": squad.status},
            )
    await db.flush()

    logger.info("Instance %d completed: %d signups completed", instance.id, len(completed))
    return instance


# ---------------------------------------------------------------------------
# Pause / resume
# ---------------------------------------------------------------------------


async def pause(
    db: AsyncSession,
    redis: object,
    instance_id: int,
    reason: str,
    actor_id: int | None = None,
) -> QuestInstance:
    if not reason:
        raise QuestlineError("A reason is required to pause an instance")
    instance = await signups.get_instance(db, instance_id, for_update=True)
    validate_transition(instance.status, InstanceStatus.PAUSED.value)

    instance.previous_status = instance.status
    instance.paused_at = datetime.now(timezone.utc)
    instance.paused_reason = reason
    await _transition(db, instance, InstanceStatus.PAUSED, actor_id, payload={"reason": reason})

    await _notify_participants(
        db, redis, instance, "instance_paused",
        "Quest paused", f"This quest has been paused: {reason}",
    )
    return instance


async def resume(db: AsyncSession, redis: object, instance_id: int, actor_id: int | None = None) -> QuestInstance:
    """paused -> previous_status."""
    instance = await signups.get_instance(db, instance_id, for_update=True)
    if instance.status != InstanceStatus.PAUSED or not instance.previous_status:
        raise InvalidTransition("instance", instance.status, instance.previous_status or "?", [])
    target = InstanceStatus(instance.previous_status)
    validate_transition(instance.status, target.value)

    instance.previous_status = None
    instance.paused_at = None
    instance.paused_reason = None
    await _transition(db, instance, target, actor_id)

    await _notify_participants(
        db, redis, instance, "instance_resumed",
        "Quest resumed", "This quest is back on.",
    )
    return instance


# ---------------------------------------------------------------------------
# Cancellation & archival
# ---------------------------------------------------------------------------


async def _cancel_squad(db: AsyncSession, squad: QuestSquad, reason: str) -> None:
    before = squad.status
    squad.status = SquadStatus.CANCELLED.value
    squad.cancel_reason = reason
    squad.archived_at = datetime.now(timezone.utc)
    await db.flush()
    await log_event(
        db,
        EventType.SQUAD_STATUS_CHANGE,
        instance_id=squad.instance_id,
        squad_id=squad.id,
        before_state={"status": before},
        after_state={"status": squad.status},
        payload={"reason": reason},
    )


async def cancel(
    db: AsyncSession,
    redis: object,
    instance_id: int,
    reason: str,
    actor_id: int | None = None,
) -> QuestInstance:
    """Cancel a non-terminal Instance and cascade.

    Every pending, confirmed and standby signup is dropped, the counter
    returns to zero seat by seat, and every squad that has not completed is
    cancelled. All of it commits or none of it does.
    """
    if not reason:
        raise QuestlineError("A reason is required to cancel an instance")
    instance = await signups.get_instance(db, instance_id, for_update=True)
    if instance.status in TERMINAL_INSTANCE_STATUSES:
        raise InvalidTransition("instance", instance.status, InstanceStatus.CANCELLED.value, [])
    validate_transition(instance.status, InstanceStatus.CANCELLED.value)

    now = datetime.now(timezone.utc)
    dropped_users = await signups.drop_all_signups(db, instance, actor_id)

    for squad in await list_instance_squads(db, instance.id):
        if squad.status != SquadStatus.COMPLETED:
            await _cancel_squad(db, squad, INSTANCE_CANCELLED_REASON)

    instance.previous_status = instance.status
    instance.cancelled_reason = reason
    instance.cancelled_at = now
    await _transition(
        db, instance, InstanceStatus.CANCELLED, actor_id,
        payload={"reason": reason, "signups_dropped": len(dropped_users)},
    )

    for user_id in dropped_users:
        await queue_notification(
            db, redis, user_id, "instance_cancelled",
            "Quest cancelled", f"This quest has been cancelled: {reason}",
            instance_id=instance.id,
        )
    return instance


async def auto_archive(db: AsyncSession, now: datetime | None = None) -> int:
    """Sweep: archive Instances completed or cancelled longer than the retention window."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=get_settings().archive_retention_days)

    result = await db.execute(
        select(QuestInstance).where(
            (
                (QuestInstance.status == InstanceStatus.COMPLETED.value)
                & (QuestInstance.completed_at <= cutoff)
            )
            | (
                (QuestInstance.status == InstanceStatus.CANCELLED.value)
                & (QuestInstance.cancelled_at <= cutoff)
            )
        ).order_by(QuestInstance.id)
    )
    instances = list(result.scalars().all())
    for instance in instances:
        before = instance.status
        instance.status = InstanceStatus.ARCHIVED.value
        instance.archived_at = now
        await log_event(
            db,
            EventType.INSTANCE_ARCHIVED,
            instance_id=instance.id,
            before_state={"status": before},
            after_state={"status": instance.status},
        )
    await db.flush()

    if instances:
        logger.info("Archived %d instances", len(instances))
    return len(instances)
