"""arq worker for periodic lifecycle sweeps.

Import path for arq CLI: arq questline.workers.sweeps.WorkerSettings
"""

from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from questline.config import get_settings
from questline.database import close_db, get_session_factory, init_db, unit_of_work
from questline.lifecycle.service import auto_archive
from questline.progression.xp_service import reconcile_user_xp
from questline.redis_client import close_redis, get_redis_or_none, init_redis
from questline.signups.service import mark_no_shows, reconcile_signup_counts

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Open the database engine and notification pool."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)
    logger.info("Sweep worker started")


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    await close_db()
    await close_redis()
    logger.info("Sweep worker shut down")


async def auto_archive_instances(ctx: dict) -> int:  # type: ignore[type-arg]
    """Archive completed/cancelled instances past the retention window."""
    async with get_session_factory()() as db:
        async with unit_of_work(db):
            archived = await auto_archive(db)
    if archived:
        logger.info("Archived %d instances", archived)
    return archived


async def mark_no_shows_sweep(ctx: dict) -> int:  # type: ignore[type-arg]
    """Mark confirmed, unchecked-in signups once check-in has closed."""
    async with get_session_factory()() as db:
        async with unit_of_work(db):
            marked = await mark_no_shows(db, get_redis_or_none())
    if marked:
        logger.info("Marked %d no-shows", marked)
    return marked


async def reconcile_ledgers(ctx: dict) -> dict[str, int]:  # type: ignore[type-arg]
    """Compare signup counters and XP totals with their ledgers.

    Drift is reported and the aggregate frozen; nothing is rewritten.
    """
    async with get_session_factory()() as db:
        async with unit_of_work(db):
            signup_drift = await reconcile_signup_counts(db)
            xp_drift = await reconcile_user_xp(db)
    if signup_drift or xp_drift:
        logger.error(
            "Ledger reconciliation found drift: %d instances, %d users",
            len(signup_drift), len(xp_drift),
        )
    return {"instances": len(signup_drift), "users": len(xp_drift)}


class WorkerSettings:
    """arq worker settings for the sweeps."""

    functions = [auto_archive_instances, mark_no_shows_sweep, reconcile_ledgers]
    cron_jobs = [
        cron(mark_no_shows_sweep, minute=set(range(0, 60, 5))),
        cron(auto_archive_instances, minute={17}),
        cron(reconcile_ledgers, hour={3}, minute={30}),
    ]
    redis_settings = RedisSettings.from_dsn(get_settings().arq_redis_url)
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = 4
    job_timeout = get_settings().worker_timeout_seconds
