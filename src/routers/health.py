"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from src.config import get_settings
from src.services import database
from src.services.redis_client import get_redis

router = APIRouter(tags=["system"])
logger = logging.getLogger("pulsecast.health")


@router.get("/health")
async def health_check() -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also probes Redis and the profile database when they are configured.
    """
    settings = get_settings()
    checks: dict[str, str] = {}

    redis_client = get_redis()
    if redis_client is None:
        checks["redis"] = "not_configured"
    else:
        try:
            await redis_client.ping()
            checks["redis"] = "connected"
        except Exception as exc:
            logger.warning("Health check Redis probe failed: %s", exc)
            checks["redis"] = "unreachable"

    if not database.is_initialized():
        checks["database"] = "not_configured"
    else:
        try:
            await database.fetchval("SELECT 1")
            checks["database"] = "connected"
        except Exception as exc:
            logger.warning("Health check DB probe failed: %s", exc)
            checks["database"] = "unreachable"

    healthy = "unreachable" not in checks.values()
    return {
        "status": "healthy" if healthy else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        **checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
