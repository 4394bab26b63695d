"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from questline.config import get_settings
from questline.database import close_db, get_session_factory, init_db
from questline.health.router import router as health_router
from questline.lifecycle.router import router as lifecycle_router
from questline.middleware import setup_middleware
from questline.progression.router import router as progression_router
from questline.progression.seed import seed_progression
from questline.redis_client import close_redis, init_redis
from questline.signups.router import router as signups_router
from questline.squads.router import router as squads_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)

    # Seed streak rules and achievements (idempotent)
    try:
        async with get_session_factory()() as db:
            await seed_progression(db)
    except Exception:
        logger.warning("Progression seeding failed (tables may not exist yet)", exc_info=True)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Questline API",
        description="Quest instance lifecycle and progression engine",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(lifecycle_router)
    app.include_router(signups_router)
    app.include_router(squads_router)
    app.include_router(progression_router)

    return app


app = create_app()
