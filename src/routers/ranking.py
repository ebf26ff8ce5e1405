"""Leaderboard read endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query

from src.dependencies import AppServices
from src.models.heartbeat import RankedEntryRead, RankingResponse

router = APIRouter(prefix="/ranking", tags=["ranking"])


@router.get("", response_model=RankingResponse)
async def get_ranking(
    services: AppServices,
    limit: int = Query(default=100, ge=1, le=1000),
) -> Any:
    """Top owners by peak concurrent viewers.

    ``asOf`` is the completion time of the sync that produced the data.
    ``stale`` is set when the sorted set was unreachable and an expired
    in-process copy was served instead.
    """
    result = await services.ranking.get_top_k(limit)
    return RankingResponse(
        entries=[
            RankedEntryRead(
                owner_id=e.owner_id,
                name=e.display_name,
                score=e.score,
                rank=e.rank,
                max_connections_updated_at=e.updated_at,
            )
            for e in result.entries
        ],
        as_of=result.as_of,
        cached=result.cached,
        stale=result.stale,
        cache_age=result.cache_age,
    )
