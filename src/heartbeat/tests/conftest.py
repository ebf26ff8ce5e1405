"""Shared fixtures for heartbeat pipeline tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.heartbeat.dispatcher import NotificationDispatcher
from src.heartbeat.models import (
    FollowerSubscription,
    HeartbeatSample,
    OwnerProfile,
    PushBatchResult,
    PushPayload,
    TokenResult,
)
from src.heartbeat.profiles import InMemoryProfileStore
from src.heartbeat.store import InMemoryLiveHeartbeatStore
from src.services.push import PushTransport

OWNER_ID = "owner-1"
OWNER_NAME = "Alice"
T0 = datetime(2026, 2, 23, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock returning aware UTC datetimes."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class RecordingPushTransport(PushTransport):
    """Records every batch; tokens listed in ``failing`` are reported as failed."""

    def __init__(self, failing: set[str] | None = None, yield_first: bool = False) -> None:
        self.batches: list[PushPayload] = []
        self.failing = failing or set()
        self.yield_first = yield_first

    async def send_multicast(self, payload: PushPayload) -> PushBatchResult:
        if self.yield_first:
            await asyncio.sleep(0)
        self.batches.append(payload)
        return PushBatchResult(
            responses=[
                TokenResult(
                    token=t,
                    success=t not in self.failing,
                    error="unregistered" if t in self.failing else None,
                )
                for t in payload.tokens
            ]
        )

    @property
    def tokens_sent(self) -> list[str]:
        return [t for b in self.batches for t in b.tokens]


class SlowProfileStore(InMemoryProfileStore):
    """Yields to the event loop on follower lookup to interleave dispatches."""

    async def list_followers(self, owner_id: str) -> list[FollowerSubscription]:
        await asyncio.sleep(0)
        return await super().list_followers(owner_id)


def sample(bpm: int, at: datetime = T0, owner_id: str = OWNER_ID) -> HeartbeatSample:
    return HeartbeatSample(bpm=bpm, captured_at=at, owner_id=owner_id)


def add_followers(profiles: InMemoryProfileStore, count: int, owner_id: str = OWNER_ID) -> None:
    for i in range(count):
        profiles.add_follower(
            FollowerSubscription(
                follower_id=f"follower-{i}",
                owner_id=owner_id,
                push_token=f"token-{i}",
                notification_enabled=True,
            )
        )


def redis_pipeline_mock() -> tuple[MagicMock, MagicMock]:
    """A ``redis.asyncio`` client whose ``pipeline()`` yields a recording pipeline.

    Queued commands (``multi``, ``delete``, ``hset``, ``rename``, ``set``) are
    plain mocks; ``watch``, ``hgetall``, ``unwatch`` and ``execute`` are awaited.
    """
    pipe = MagicMock()
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    pipe.watch = AsyncMock()
    pipe.unwatch = AsyncMock()
    pipe.hgetall = AsyncMock(return_value={})
    pipe.execute = AsyncMock(return_value=[])
    client = MagicMock()
    client.pipeline.return_value = pipe
    return client, pipe


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryLiveHeartbeatStore:
    return InMemoryLiveHeartbeatStore()


@pytest.fixture
def profiles() -> InMemoryProfileStore:
    """Owner Alice with three notifiable followers."""
    p = InMemoryProfileStore()
    p.add_owner(OwnerProfile(owner_id=OWNER_ID, display_name=OWNER_NAME, max_connections=3))
    add_followers(p, 3)
    return p


@pytest.fixture
def push() -> RecordingPushTransport:
    return RecordingPushTransport()


@pytest.fixture
def dispatcher(
    store: InMemoryLiveHeartbeatStore,
    profiles: InMemoryProfileStore,
    push: RecordingPushTransport,
    clock: FakeClock,
) -> NotificationDispatcher:
    return NotificationDispatcher(store, profiles, push, clock=clock)
