"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from classpoints.config import get_settings
from classpoints.dashboard.router import router as dashboard_router
from classpoints.database import close_db, get_session, init_db
from classpoints.health.router import router as health_router
from classpoints.middleware import setup_middleware
from classpoints.ops.router import router as ops_router
from classpoints.redis_client import close_redis, init_redis
from classpoints.rewards.seed import seed_achievements

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)

    # Seed achievement definitions (idempotent)
    try:
        async for db in get_session():
            await seed_achievements(db)
            break
    except Exception:
        logger.warning("Achievement seeding failed (tables may not exist yet)", exc_info=True)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="ClassPoints Reward API",
        description="Points, levels, achievements and leaderboards for the school portal",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(dashboard_router)
    app.include_router(ops_router)

    return app


app = create_app()
