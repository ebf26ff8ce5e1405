"""Shared FastAPI dependencies and the service container built at startup."""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Annotated, Any, Callable

import httpx
from fastapi import Depends, Header, HTTPException, Request

from src.config import Settings, get_settings
from src.heartbeat.dispatcher import NotificationDispatcher
from src.heartbeat.profiles import InMemoryProfileStore, PostgresProfileStore, ProfileStore
from src.heartbeat.ranking import (
    InMemorySortedSetCache,
    RankingCacheSync,
    RedisSortedSetCache,
)
from src.heartbeat.reaper import StaleDataReaper
from src.heartbeat.scheduler import DailyAt, HourlyAt, JobScheduler
from src.heartbeat.store import (
    InMemoryLiveHeartbeatStore,
    LiveHeartbeatStore,
    RedisLiveHeartbeatStore,
)
from src.services.push import FcmPushTransport, LoggingPushTransport, PushTransport

logger = logging.getLogger("pulsecast.dependencies")


@dataclass
class Services:
    """Everything the routers need, wired once per process.

    Attributes:
        store:      Live heartbeat store (Redis or in-memory).
        profiles:   Read-only profile store (Postgres or in-memory).
        push:       Push transport (FCM or dry-run).
        dispatcher: Notification dispatcher, attached to ``store``.
        reaper:     Stale-data reaper.
        ranking:    Ranking cache sync and read path.
        scheduler:  Background job scheduler.
    """

    store: LiveHeartbeatStore
    profiles: ProfileStore
    push: PushTransport
    dispatcher: NotificationDispatcher
    reaper: StaleDataReaper
    ranking: RankingCacheSync
    scheduler: JobScheduler
    http_client: httpx.AsyncClient | None = None
    _detach: Callable[[], None] | None = field(default=None, repr=False)

    async def aclose(self) -> None:
        await self.scheduler.stop()
        if self._detach is not None:
            self._detach()
            self._detach = None
        if self.http_client is not None:
            await self.http_client.aclose()


def build_services(
    settings: Settings,
    redis_client: Any = None,
    profiles: ProfileStore | None = None,
    push: PushTransport | None = None,
) -> Services:
    """Wire stores, dispatcher, reaper, ranking and scheduler from settings.

    Without a Redis client the live store and sorted set are in-memory; without
    a database URL the profile store is in-memory.
    """
    if redis_client is not None:
        store: LiveHeartbeatStore = RedisLiveHeartbeatStore(redis_client)
        sorted_set = RedisSortedSetCache(redis_client, key=settings.ranking_key)
    else:
        store = InMemoryLiveHeartbeatStore()
        sorted_set = InMemorySortedSetCache()

    if profiles is None:
        profiles = PostgresProfileStore() if settings.database_url else InMemoryProfileStore()

    http_client = None
    if push is None:
        if settings.fcm_project_id and settings.fcm_access_token:
            http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.push_timeout_seconds))
            push = FcmPushTransport(
                project_id=settings.fcm_project_id,
                access_token=settings.fcm_access_token,
                http_client=http_client,
            )
        else:
            logger.warning("FCM not configured; push notifications are logged only")
            push = LoggingPushTransport()

    dispatcher = NotificationDispatcher(
        store,
        profiles,
        push,
        cooldown_window=timedelta(seconds=settings.cooldown_window_seconds),
        batch_size=settings.push_batch_size,
    )
    reaper = StaleDataReaper(store, retention=timedelta(seconds=settings.retention_window_seconds))
    ranking = RankingCacheSync(
        profiles,
        sorted_set,
        read_cache_ttl=timedelta(seconds=settings.ranking_read_cache_ttl_seconds),
        prewarm_k=settings.ranking_default_limit,
    )

    scheduler = JobScheduler()
    scheduler.register(
        "stale_data_reaper",
        reaper.sweep,
        DailyAt(hour=settings.reaper_hour_utc, minute=settings.reaper_minute),
    )
    scheduler.register(
        "ranking_sync", ranking.bulk_sync, HourlyAt(minute=settings.ranking_sync_minute)
    )

    services = Services(
        store=store,
        profiles=profiles,
        push=push,
        dispatcher=dispatcher,
        reaper=reaper,
        ranking=ranking,
        scheduler=scheduler,
        http_client=http_client,
    )
    services._detach = dispatcher.attach()
    return services


def get_services(request: Request) -> Services:
    services: Services | None = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services


async def require_admin(
    x_admin_secret: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> None:
    """Gate admin routes behind the shared ``X-Admin-Secret`` header."""
    if not settings.admin_secret:
        raise HTTPException(status_code=503, detail="Admin endpoints are disabled")
    if not x_admin_secret or not hmac.compare_digest(x_admin_secret, settings.admin_secret):
        logger.warning("Rejected admin request with invalid secret")
        raise HTTPException(status_code=401, detail="Unauthorized")


# Annotated shortcuts for route signatures
AppServices = Annotated[Services, Depends(get_services)]
AppSettings = Annotated[Settings, Depends(get_settings)]
AdminOnly = Depends(require_admin)
