"""Shared test fixtures.

Each test gets its own SQLite database file created from the ORM
metadata, with progression reference data seeded. Redis is not
initialized, so notifications are recorded as events only.
"""

from __future__ import annotations

import itertools
import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta, timezone

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

os.environ.setdefault("QL_LOG_FORMAT", "console")
os.environ.setdefault("QL_TIMEZONE", "UTC")

from questline.config import get_settings  # noqa: E402
from questline.database import close_db, get_engine, get_session_factory, init_db  # noqa: E402
from questline.db import models  # noqa: E402, F401
from questline.db.base import Base  # noqa: E402
from questline.db.models import QuestInstance  # noqa: E402
from questline.lifecycle import quest_service  # noqa: E402
from questline.lifecycle import service as lifecycle  # noqa: E402
from questline.progression.seed import seed_progression  # noqa: E402

_slugs = itertools.count(1)


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncGenerator[str, None]:
    """Fresh database per test, schema created and progression seeded."""
    get_settings.cache_clear()
    url = f"sqlite+aiosqlite:///{tmp_path / 'questline.db'}"
    await init_db(url)
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with get_session_factory()() as session:
        await seed_progression(session)
    yield url
    await close_db()


@pytest_asyncio.fixture
async def db_session(database: str) -> AsyncGenerator[AsyncSession, None]:
    """A direct database session for service calls and assertions."""
    async with get_session_factory()() as session:
        yield session


@pytest_asyncio.fixture
async def client(database: str) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the app over the test database."""
    from questline.main import create_app

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


InstanceFactory = Callable[..., Awaitable[QuestInstance]]


@pytest_asyncio.fixture
async def make_instance(db_session: AsyncSession) -> InstanceFactory:
    """Create an approved quest and a recruiting instance of it.

    The instance starts ``start_in`` from now and runs two hours.
    """

    async def _make(
        *,
        capacity: int = 4,
        target_squad_size: int = 2,
        threshold: int | None = None,
        warm_up_min_ready_pct: int | None = None,
        completion_rule: str = "per_member",
        requires_approval: bool = False,
        requires_proof: bool = False,
        is_solo: bool = False,
        base_xp: int = 50,
        start_in: timedelta = timedelta(days=1),
        publish: bool = True,
    ) -> QuestInstance:
        n = next(_slugs)
        quest = await quest_service.create_quest(
            db_session,
            f"Sunset Hike {n}",
            creator_id=900,
            slug=f"sunset-hike-{n}",
            base_xp=base_xp,
            completion_rule=completion_rule,
            requires_approval=requires_approval,
            requires_proof=requires_proof,
            is_solo=is_solo,
        )
        await quest_service.submit_quest_for_review(db_session, quest.id)
        await quest_service.review_quest(db_session, quest.id, "approved", reviewer_id=1)

        start = (datetime.now(timezone.utc) + start_in).replace(second=0, microsecond=0)
        instance = await lifecycle.create_instance_from_quest(
            db_session,
            quest.id,
            start.date(),
            start.time(),
            capacity=capacity,
            target_squad_size=target_squad_size,
            squad_formation_threshold=threshold,
            warm_up_min_ready_pct=warm_up_min_ready_pct,
        )
        if publish:
            await lifecycle.publish(db_session, instance.id, actor_id=1)
        await db_session.commit()
        return instance

    return _make
