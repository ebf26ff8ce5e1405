"""Operator endpoints: on-demand ranking sync and reaper runs.

All routes require the ``X-Admin-Secret`` header.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from fastapi import APIRouter

from src.dependencies import AdminOnly, AppServices
from src.models.heartbeat import (
    ReapRequest,
    ReapResultRead,
    SyncResultRead,
    from_dataclass,
)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[AdminOnly])
logger = logging.getLogger("pulsecast.routers.admin")


@router.post("/ranking/sync", response_model=SyncResultRead)
async def sync_ranking(services: AppServices) -> Any:
    """Full replacement of the ranking sorted set from the profile store."""
    logger.info("Manual ranking sync requested")
    result = await services.ranking.initial_sync()
    return from_dataclass(SyncResultRead, result)


@router.post("/reaper/run", response_model=ReapResultRead)
async def run_reaper(services: AppServices, body: ReapRequest | None = None) -> Any:
    retention = None
    if body is not None and body.retention_seconds is not None:
        retention = timedelta(seconds=body.retention_seconds)
    logger.info("Manual reaper run requested (retention=%s)", retention)
    result = await services.reaper.sweep(retention=retention)
    return from_dataclass(ReapResultRead, result)


@router.get("/scheduler")
async def scheduler_stats(services: AppServices) -> dict:
    return services.scheduler.get_stats()
