"""XP ledger with idempotent awarding, level computation and reconciliation."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from questline.db.base import dialect_insert
from questline.db.models import UserXP, XPTransaction
from questline.errors import InconsistentLedger
from questline.events.service import log_event, queue_notification
from questline.events.types import ActorType, EventType
from questline.progression.levels import LevelInfo, compute_level

logger = logging.getLogger(__name__)


async def get_or_create_user_xp(db: AsyncSession, user_id: int) -> UserXP:
    """Get or create the running total row for a user.

    Uses insert-ignore so two first awards racing for the same user both
    end up on the same row.
    """
    row = await db.get(UserXP, user_id)
    if row is not None:
        return row

    stmt = dialect_insert(db, UserXP).values(
        user_id=user_id,
        total_xp=0,
        level=1,
        level_name=compute_level(0).name,
        ledger_frozen=False,
        updated_at=datetime.now(timezone.utc),
    ).on_conflict_do_nothing(index_elements=["user_id"])
    await db.execute(stmt)
    result = await db.execute(select(UserXP).where(UserXP.user_id == user_id))
    return result.scalar_one()


async def grant_xp(
    db: AsyncSession,
    redis: object,
    user_id: int,
    amount: int,
    source: str,
    source_id: str | int | None = None,
    description: str | None = None,
) -> tuple[int, bool]:
    """Award XP. Returns (new_total, granted).

    (user_id, source, source_id) is the idempotency key: a re-delivered
    award is a no-op, reported as granted=False with the unchanged total.
    """
    key_id = "" if source_id is None else str(source_id)
    gam = await get_or_create_user_xp(db, user_id)
    if gam.ledger_frozen:
        raise InconsistentLedger(f"XP ledger for user {user_id} is frozen pending reconciliation")

    now = datetime.now(timezone.utc)
    insert_stmt = dialect_insert(db, XPTransaction).values(
        user_id=user_id,
        amount=amount,
        source=source,
        source_id=key_id,
        description=description,
        created_at=now,
    ).on_conflict_do_nothing(index_elements=["user_id", "source", "source_id"])
    result = await db.execute(insert_stmt)
    if result.rowcount == 0:
        logger.debug("Duplicate XP award ignored: user=%d source=%s id=%s", user_id, source, key_id)
        await db.refresh(gam)
        return gam.total_xp, False

    # Same transaction as the ledger insert: total and ledger move together.
    await db.execute(
        update(UserXP)
        .where(UserXP.user_id == user_id)
        .values(total_xp=UserXP.total_xp + amount, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(gam)

    old_level = gam.level
    level_info = compute_level(gam.total_xp)
    gam.level = level_info.level
    gam.level_name = level_info.name
    await db.flush()

    await log_event(
        db,
        EventType.XP_AWARDED,
        target_user_id=user_id,
        payload={"amount": amount, "source": source, "source_id": key_id, "total_xp": gam.total_xp},
    )

    if gam.level > old_level:
        await _emit_level_up(db, redis, user_id, old_level, level_info)

    return gam.total_xp, True


async def award_xp(
    db: AsyncSession,
    redis: object,
    user_id: int,
    amount: int,
    source: str,
    source_id: str | int | None = None,
    description: str | None = None,
) -> int:
    """Award XP and return the user's new total (unchanged on duplicates)."""
    total, _ = await grant_xp(db, redis, user_id, amount, source, source_id, description)
    return total


async def _emit_level_up(
    db: AsyncSession,
    redis: object,
    user_id: int,
    old_level: int,
    level_info: LevelInfo,
) -> None:
    logger.info("User %d levelled up %d -> %d", user_id, old_level, level_info.level)
    await log_event(
        db,
        EventType.LEVEL_UP,
        target_user_id=user_id,
        before_state={"level": old_level},
        after_state={"level": level_info.level, "name": level_info.name},
    )
    await queue_notification(
        db,
        redis,
        user_id,
        "level_up",
        "Level Up!",
        f"Level {level_info.level}: {level_info.name}",
        data={"old_level": old_level, "new_level": level_info.level},
    )


async def get_user_level(db: AsyncSession, user_id: int) -> LevelInfo:
    """Level, name, current XP and next threshold for a user."""
    row = await db.get(UserXP, user_id)
    return compute_level(row.total_xp if row else 0)


async def list_transactions(db: AsyncSession, user_id: int, limit: int = 50) -> list[XPTransaction]:
    result = await db.execute(
        select(XPTransaction)
        .where(XPTransaction.user_id == user_id)
        .order_by(XPTransaction.created_at.desc(), XPTransaction.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


async def reconcile_user_xp(db: AsyncSession, user_id: int | None = None) -> list[dict]:
    """Compare running totals with ledger sums.

    Drifted aggregates are frozen and reported. The stored total is left
    untouched; ``repair_user_xp`` is the audited way to fix it.
    """
    ledger_sum = (
        select(XPTransaction.user_id, func.coalesce(func.sum(XPTransaction.amount), 0).label("ledger_total"))
        .group_by(XPTransaction.user_id)
        .subquery()
    )
    query = select(UserXP, func.coalesce(ledger_sum.c.ledger_total, 0)).outerjoin(
        ledger_sum, ledger_sum.c.user_id == UserXP.user_id
    )
    if user_id is not None:
        query = query.where(UserXP.user_id == user_id)

    drifts: list[dict] = []
    for gam, ledger_total in (await db.execute(query)).all():
        ledger_total = int(ledger_total)
        if gam.total_xp == ledger_total:
            continue

        report = {
            "user_id": gam.user_id,
            "total_xp": gam.total_xp,
            "ledger_total": ledger_total,
            "drift": gam.total_xp - ledger_total,
        }
        logger.error(
            "XP ledger drift for user %d: total_xp=%d ledger=%d",
            gam.user_id, gam.total_xp, ledger_total,
        )
        gam.ledger_frozen = True
        await log_event(
            db,
            EventType.LEDGER_DRIFT_DETECTED,
            target_user_id=gam.user_id,
            payload={"aggregate": "user_xp", **report},
        )
        drifts.append(report)

    await db.flush()
    return drifts


async def repair_user_xp(db: AsyncSession, user_id: int, operator_id: int) -> int:
    """Operator action: reset the total to the ledger sum and unfreeze."""
    gam = await get_or_create_user_xp(db, user_id)
    ledger_total = (
        await db.execute(
            select(func.coalesce(func.sum(XPTransaction.amount), 0)).where(XPTransaction.user_id == user_id)
        )
    ).scalar_one()

    before = {"total_xp": gam.total_xp, "ledger_frozen": gam.ledger_frozen}
    gam.total_xp = int(ledger_total)
    level_info = compute_level(gam.total_xp)
    gam.level = level_info.level
    gam.level_name = level_info.name
    gam.ledger_frozen = False
    gam.updated_at = datetime.now(timezone.utc)
    await db.flush()

    await log_event(
        db,
        EventType.ADMIN_OVERRIDE,
        actor_type=ActorType.ADMIN,
        actor_id=operator_id,
        target_user_id=user_id,
        before_state=before,
        after_state={"total_xp": gam.total_xp, "ledger_frozen": False},
        payload={"action": "repair_user_xp"},
    )
    logger.warning("Operator %d repaired XP total for user %d", operator_id, user_id)
    return gam.total_xp
