"""Pulsecast API — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import get_settings
from src.dependencies import Services, build_services
from src.routers import admin, events, health, heartbeats, ranking
from src.services import database
from src.services.redis_client import close_redis, init_redis

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("pulsecast")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks.

    Services pre-set on ``app.state.services`` (tests) are used as-is and
    not torn down here.
    """
    settings = get_settings()
    logger.info(
        "Starting Pulsecast API v%s [%s]",
        settings.app_version,
        settings.environment,
    )

    services: Services | None = getattr(app.state, "services", None)
    owned = services is None
    if owned:
        redis_client = await init_redis(settings)
        if settings.database_url:
            await database.init_pool(settings)
        services = build_services(settings, redis_client=redis_client)
        app.state.services = services
        if settings.scheduler_enabled:
            await services.scheduler.start()

    yield

    if owned:
        await services.aclose()
        await close_redis()
        await database.close_pool()
        app.state.services = None
    logger.info("Pulsecast API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Pulsecast API",
        description=(
            "Live heart-rate relay, follower push notifications and the "
            "max-connections leaderboard."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside v1 prefix — always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(heartbeats.router, prefix=v1_prefix)
    app.include_router(events.router, prefix=v1_prefix)
    app.include_router(ranking.router, prefix=v1_prefix)
    app.include_router(admin.router, prefix=v1_prefix)

    return app


app = create_app()
