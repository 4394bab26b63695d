"""Append-only event log and notification intents.

Events are added to the caller's session so a state transition and its
record commit (or roll back) together.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from questline.db.models import OpsEvent
from questline.events.types import ActorType, EventType

logger = logging.getLogger(__name__)

NOTIFICATION_CHANNEL = "pubsub:notifications"


def current_correlation_id() -> str:
    """Correlation id for the current causal chain.

    Uses the request id bound by the request-id middleware, or a fresh
    UUID outside a request (sweeps, scripts).
    """
    ctx = structlog.contextvars.get_contextvars()
    request_id = ctx.get("request_id") or ctx.get("correlation_id")
    return str(request_id) if request_id else str(uuid.uuid4())


async def log_event(
    db: AsyncSession,
    event_type: EventType,
    *,
    actor_type: ActorType = ActorType.SYSTEM,
    actor_id: int | None = None,
    instance_id: int | None = None,
    squad_id: int | None = None,
    target_user_id: int | None = None,
    before_state: dict[str, Any] | None = None,
    after_state: dict[str, Any] | None = None,
    payload: dict[str, Any] | None = None,
    correlation_id: str | None = None,
) -> OpsEvent:
    """Record a domain event in the current transaction."""
    event = OpsEvent(
        event_type=event_type.value,
        actor_type=actor_type.value,
        actor_id=actor_id,
        instance_id=instance_id,
        squad_id=squad_id,
        target_user_id=target_user_id,
        before_state=before_state,
        after_state=after_state,
        payload=payload or {},
        correlation_id=correlation_id or current_correlation_id(),
        created_at=datetime.now(timezone.utc),
    )
    db.add(event)
    await db.flush()
    return event


async def queue_notification(
    db: AsyncSession,
    redis: object,
    user_id: int,
    subtype: str,
    title: str,
    body: str,
    *,
    instance_id: int | None = None,
    squad_id: int | None = None,
    data: dict[str, Any] | None = None,
) -> OpsEvent:
    """Emit a "notify user X of event Y" intent.

    The durable intent is the ``notification_queued`` event read by the
    external dispatcher; the Redis publish is a best-effort fast path.
    """
    payload = {"subtype": subtype, "title": title, "body": body, **(data or {})}
    event = await log_event(
        db,
        EventType.NOTIFICATION_QUEUED,
        instance_id=instance_id,
        squad_id=squad_id,
        target_user_id=user_id,
        payload=payload,
    )

    if redis is not None:
        try:
            await redis.publish(  # type: ignore[union-attr]
                NOTIFICATION_CHANNEL,
                json.dumps({"user_id": user_id, "event_id": event.id, **payload}, default=str),
            )
        except Exception:
            logger.warning("Failed to publish notification %s for user %d", subtype, user_id, exc_info=True)

    return event


async def list_events(
    db: AsyncSession,
    *,
    instance_id: int | None = None,
    squad_id: int | None = None,
    user_id: int | None = None,
    event_type: str | None = None,
    correlation_id: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[OpsEvent]:
    """Read events in append order, filtered for audit views."""
    query = select(OpsEvent)
    if instance_id is not None:
        query = query.where(OpsEvent.instance_id == instance_id)
    if squad_id is not None:
        query = query.where(OpsEvent.squad_id == squad_id)
    if user_id is not None:
        query = query.where(OpsEvent.target_user_id == user_id)
    if event_type is not None:
        query = query.where(OpsEvent.event_type == event_type)
    if correlation_id is not None:
        query = query.where(OpsEvent.correlation_id == correlation_id)

    result = await db.execute(query.order_by(OpsEvent.id.asc()).limit(limit).offset(offset))
    return list(result.scalars().all())
