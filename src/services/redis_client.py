"""Shared ``redis.asyncio`` client for the live store and ranking cache."""

from __future__ import annotations

import logging
from typing import Any

import redis.asyncio as redis

from src.config import Settings, get_settings

logger = logging.getLogger("pulsecast.redis")

_client: Any = None


async def init_redis(settings: Settings | None = None) -> Any:
    """Connect and ping Redis. Returns None if no URL is configured.

    Raises:
        ConnectionError / OSError: if Redis is configured but unreachable.
    """
    global _client
    s = settings or get_settings()
    if not s.redis_url:
        logger.info("Redis not configured; using in-memory stores")
        return None

    client = redis.from_url(
        s.redis_url,
        password=s.redis_password,
        decode_responses=True,
    )
    await client.ping()
    _client = client
    logger.info("Redis client initialized")
    return _client


def get_redis() -> Any:
    return _client


async def close_redis() -> None:
    global _client
    if _client is None:
        return
    try:
        await _client.aclose()
    except (ConnectionError, TimeoutError, OSError) as exc:
        logger.warning("Error closing Redis client: %s", exc)
    _client = None
    logger.info("Redis client closed")
