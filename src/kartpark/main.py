"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from kartpark.config import get_settings
from kartpark.database import close_db, init_db
from kartpark.health.router import router as health_router
from kartpark.identity.router import router as identity_router
from kartpark.linkage.router import router as linkage_router
from kartpark.middleware import setup_middleware
from kartpark.redis_client import close_redis, init_redis
from kartpark.sessions.router import router as sessions_router
from kartpark.squadrons.router import router as squadrons_router
from kartpark.stats.router import router as stats_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url, settings.redis_max_connections)
    logger.info("Kart Park API started (env=%s, version=%s)", settings.environment, settings.app_version)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Kart Park API",
        description="Driver identity linking, racing statistics and squadron points for the Kart Park venue",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(sessions_router)
    app.include_router(identity_router)
    app.include_router(linkage_router)
    app.include_router(stats_router)
    app.include_router(squadrons_router)

    return app


app = create_app()
