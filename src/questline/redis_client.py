"""Redis connection pool for notification fan-out.

Redis is optional: with no URL configured the pool stays unset and
notifications are recorded in the event log only.
"""

import logging

import redis.asyncio as redis

logger = logging.getLogger(__name__)

NOTIFICATION_POOL_SIZE = 20

_pool: redis.Redis | None = None


async def init_redis(url: str | None) -> None:
    """Initialize the Redis connection pool, or leave it disabled."""
    global _pool  # noqa: PLW0603
    if not url:
        logger.info("No Redis URL configured; notifications are event-only")
        _pool = None
        return
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=NOTIFICATION_POOL_SIZE,
    )


async def close_redis() -> None:
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


def get_redis_or_none() -> redis.Redis | None:
    """The Redis client, or None when notifications run without fan-out."""
    return _pool
