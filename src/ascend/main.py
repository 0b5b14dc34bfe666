"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from ascend.config import get_settings
from ascend.database import close_db, get_session_factory, init_db
from ascend.gamification.router import router as gamification_router
from ascend.gamification.seed import seed_all
from ascend.health.router import router as health_router
from ascend.middleware import setup_middleware
from ascend.redis_client import close_redis, init_redis
from ascend.ws.router import router as ws_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)

    # Badge and starter challenge definitions (idempotent)
    try:
        async with get_session_factory()() as db:
            await seed_all(db)
    except SQLAlchemyError:
        logger.warning("Seeding failed (tables may not exist yet)", exc_info=True)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Idolyst Ascend API",
        description="XP, levels, challenges, leaderboards and activity for Idolyst",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(gamification_router)
    app.include_router(ws_router)

    return app


app = create_app()
