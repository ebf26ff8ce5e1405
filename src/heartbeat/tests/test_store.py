"""Tests for the live heartbeat stores and their write events."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import WatchError

from src.heartbeat.models import HeartbeatWriteEvent, LiveHeartbeatRecord, TriggerWriteEvent
from src.heartbeat.store import InMemoryLiveHeartbeatStore, RedisLiveHeartbeatStore
from src.heartbeat.tests.conftest import OWNER_ID, T0, redis_pipeline_mock, sample


@pytest.fixture
def events(store: InMemoryLiveHeartbeatStore) -> list[HeartbeatWriteEvent]:
    captured: list[HeartbeatWriteEvent] = []
    store.heartbeat_written.subscribe(captured.append)
    return captured


class TestWrites:
    @pytest.mark.asyncio
    async def test_first_write_creates_record(
        self, store: InMemoryLiveHeartbeatStore, events: list
    ) -> None:
        record = await store.write(OWNER_ID, sample(72))

        assert record.bpm == 72
        assert await store.read(OWNER_ID) == record
        assert len(events) == 1
        assert events[0].before is None
        assert events[0].after.bpm == 72

    @pytest.mark.asyncio
    async def test_last_writer_wins_by_arrival_not_capture_time(
        self, store: InMemoryLiveHeartbeatStore
    ) -> None:
        await store.write(OWNER_ID, sample(72, T0))
        await store.write(OWNER_ID, sample(90, T0 - timedelta(minutes=5)))

        record = await store.read(OWNER_ID)
        assert record.bpm == 90

    @pytest.mark.asyncio
    async def test_write_preserves_cooldown_and_connections(
        self, store: InMemoryLiveHeartbeatStore
    ) -> None:
        await store.write(OWNER_ID, sample(72))
        await store.set_last_notification_sent_at(OWNER_ID, T0)
        await store.increment_connections(OWNER_ID, 4)

        record = await store.write(OWNER_ID, sample(80))
        assert record.last_notification_sent_at == T0
        assert record.connections == 4

    @pytest.mark.asyncio
    async def test_clear_drops_sample_once(
        self, store: InMemoryLiveHeartbeatStore, events: list
    ) -> None:
        await store.write(OWNER_ID, sample(72))
        record = await store.clear(OWNER_ID)
        await store.clear(OWNER_ID)

        assert record.latest_sample is None
        assert record.status == "disconnected"
        assert len(events) == 2

    @pytest.mark.asyncio
    async def test_write_after_clear_resets_status(self, store: InMemoryLiveHeartbeatStore) -> None:
        await store.clear(OWNER_ID)
        record = await store.write(OWNER_ID, sample(70))
        assert record.status is None

    @pytest.mark.asyncio
    async def test_connections_clamped_at_zero(self, store: InMemoryLiveHeartbeatStore) -> None:
        assert await store.increment_connections(OWNER_ID, 2) == 2
        assert await store.increment_connections(OWNER_ID, -5) == 0

    @pytest.mark.asyncio
    async def test_delete(self, store: InMemoryLiveHeartbeatStore, events: list) -> None:
        await store.write(OWNER_ID, sample(72))

        assert await store.delete(OWNER_ID) is True
        assert await store.delete(OWNER_ID) is False
        assert await store.read(OWNER_ID) is None
        assert events[-1].is_deletion

    @pytest.mark.asyncio
    async def test_delete_if_rechecks_predicate(self, store: InMemoryLiveHeartbeatStore) -> None:
        await store.write(OWNER_ID, sample(72))

        assert await store.delete_if(OWNER_ID, lambda r: r.bpm == 60) is False
        assert await store.delete_if(OWNER_ID, lambda r: r.bpm == 72) is True
        assert await store.list_owner_ids() == []


class TestCompareAndSet:
    @pytest.mark.asyncio
    async def test_succeeds_when_expected_matches(self, store: InMemoryLiveHeartbeatStore) -> None:
        await store.write(OWNER_ID, sample(72))

        assert await store.compare_and_set_last_notification(OWNER_ID, None, T0) is True
        record = await store.read(OWNER_ID)
        assert record.last_notification_sent_at == T0

    @pytest.mark.asyncio
    async def test_fails_when_timestamp_moved(self, store: InMemoryLiveHeartbeatStore) -> None:
        await store.write(OWNER_ID, sample(72))
        await store.set_last_notification_sent_at(OWNER_ID, T0)

        later = T0 + timedelta(minutes=6)
        assert await store.compare_and_set_last_notification(OWNER_ID, None, later) is False
        assert (await store.read(OWNER_ID)).last_notification_sent_at == T0

    @pytest.mark.asyncio
    async def test_claim_creates_missing_record(self, store: InMemoryLiveHeartbeatStore) -> None:
        assert await store.compare_and_set_last_notification(OWNER_ID, None, T0) is True

        record = await store.read(OWNER_ID)
        assert record.last_notification_sent_at == T0
        assert record.latest_sample is None

    @pytest.mark.asyncio
    async def test_fails_when_record_missing_but_expected_set(
        self, store: InMemoryLiveHeartbeatStore
    ) -> None:
        assert await store.compare_and_set_last_notification(OWNER_ID, T0, T0) is False
        assert await store.read(OWNER_ID) is None

    @pytest.mark.asyncio
    async def test_compares_at_millisecond_precision(
        self, store: InMemoryLiveHeartbeatStore
    ) -> None:
        await store.write(OWNER_ID, sample(72))
        await store.set_last_notification_sent_at(OWNER_ID, T0 + timedelta(microseconds=400))

        assert await store.compare_and_set_last_notification(OWNER_ID, T0, T0 + timedelta(minutes=5))


class TestTriggers:
    @pytest.mark.asyncio
    async def test_trigger_lifecycle_emits_events(self, store: InMemoryLiveHeartbeatStore) -> None:
        seen: list[TriggerWriteEvent] = []
        store.trigger_written.subscribe(seen.append)

        await store.write_trigger(OWNER_ID, T0)
        assert (await store.read_trigger(OWNER_ID)).triggered_at == T0
        assert [t.owner_id for t in await store.list_triggers()] == [OWNER_ID]

        assert await store.delete_trigger(OWNER_ID) is True
        assert await store.delete_trigger(OWNER_ID) is False
        assert [e.trigger is None for e in seen] == [False, True]


class TestRecordSerialization:
    def test_to_dict_from_dict(self) -> None:
        record = LiveHeartbeatRecord(
            owner_id=OWNER_ID,
            latest_sample=sample(72, T0),
            last_notification_sent_at=T0,
            connections=3,
        )
        data = record.to_dict()

        assert data["bpm"] == 72
        assert data["timestamp"] == int(T0.timestamp() * 1000)
        assert LiveHeartbeatRecord.from_dict(OWNER_ID, data) == record

    def test_from_dict_redis_strings(self) -> None:
        raw = {"bpm": "65", "timestamp": str(int(T0.timestamp() * 1000)), "connections": "2"}
        record = LiveHeartbeatRecord.from_dict(OWNER_ID, raw)
        assert record.bpm == 65
        assert record.latest_sample.captured_at == T0
        assert record.connections == 2


# ---------------------------------------------------------------------------
# Redis backend (mocked client)
# ---------------------------------------------------------------------------

T0_MS = int(T0.timestamp() * 1000)
RECORD_KEY = f"live_heartbeats:{OWNER_ID}"


class TestRedisStore:
    @pytest.mark.asyncio
    async def test_write_encodes_hash_without_empty_fields(self) -> None:
        client, pipe = redis_pipeline_mock()
        store = RedisLiveHeartbeatStore(client)

        record = await store.write(OWNER_ID, sample(72))

        assert record.bpm == 72
        pipe.watch.assert_awaited_once_with(RECORD_KEY)
        pipe.multi.assert_called_once()
        pipe.delete.assert_called_once_with(RECORD_KEY)
        pipe.hset.assert_called_once_with(
            RECORD_KEY, mapping={"bpm": "72", "timestamp": str(T0_MS), "connections": "0"}
        )
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_watch_error_retries_against_fresh_state(self) -> None:
        client, pipe = redis_pipeline_mock()
        pipe.hgetall.side_effect = [
            {},
            {"bpm": "60", "timestamp": str(T0_MS), "connections": "4"},
        ]
        pipe.execute.side_effect = [WatchError("changed"), [1, 1]]
        store = RedisLiveHeartbeatStore(client)
        events: list[HeartbeatWriteEvent] = []
        store.heartbeat_written.subscribe(events.append)

        record = await store.write(OWNER_ID, sample(72))

        assert pipe.watch.await_count == 2
        assert record.connections == 4
        assert len(events) == 1
        assert events[0].before.bpm == 60

    @pytest.mark.asyncio
    async def test_no_change_unwatches_without_executing(self) -> None:
        client, pipe = redis_pipeline_mock()
        pipe.hgetall.return_value = {"connections": "0", "status": "disconnected"}
        store = RedisLiveHeartbeatStore(client)
        events: list[HeartbeatWriteEvent] = []
        store.heartbeat_written.subscribe(events.append)

        record = await store.clear(OWNER_ID)

        assert record.status == "disconnected"
        pipe.unwatch.assert_awaited_once()
        pipe.execute.assert_not_awaited()
        assert events == []

    @pytest.mark.asyncio
    async def test_cas_mismatch_writes_nothing(self) -> None:
        client, pipe = redis_pipeline_mock()
        pipe.hgetall.return_value = {
            "bpm": "72",
            "timestamp": str(T0_MS),
            "lastNotificationSent": str(T0_MS),
            "connections": "0",
        }
        store = RedisLiveHeartbeatStore(client)

        claimed = await store.compare_and_set_last_notification(
            OWNER_ID, None, T0 + timedelta(minutes=6)
        )

        assert claimed is False
        pipe.unwatch.assert_awaited_once()
        pipe.hset.assert_not_called()

    @pytest.mark.asyncio
    async def test_cas_match_writes_new_timestamp(self) -> None:
        client, pipe = redis_pipeline_mock()
        pipe.hgetall.return_value = {
            "bpm": "72",
            "timestamp": str(T0_MS),
            "lastNotificationSent": str(T0_MS),
            "connections": "0",
        }
        store = RedisLiveHeartbeatStore(client)
        later = T0 + timedelta(minutes=6)

        assert await store.compare_and_set_last_notification(OWNER_ID, T0, later) is True
        mapping = pipe.hset.call_args.kwargs["mapping"]
        assert mapping["lastNotificationSent"] == str(int(later.timestamp() * 1000))

    @pytest.mark.asyncio
    async def test_delete_of_missing_record_is_a_no_op(self) -> None:
        client, pipe = redis_pipeline_mock()
        store = RedisLiveHeartbeatStore(client)

        assert await store.delete(OWNER_ID) is False
        pipe.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_list_owner_ids_strips_prefix(self) -> None:
        async def keys():
            for key in ("live_heartbeats:a", "live_heartbeats:b"):
                yield key

        client, _ = redis_pipeline_mock()
        client.scan_iter = MagicMock(return_value=keys())
        store = RedisLiveHeartbeatStore(client)

        assert await store.list_owner_ids() == ["a", "b"]
        client.scan_iter.assert_called_once_with(match="live_heartbeats:*", count=100)

    @pytest.mark.asyncio
    async def test_read_decodes_hash(self) -> None:
        client, _ = redis_pipeline_mock()
        client.hgetall = AsyncMock(
            return_value={"bpm": "72", "timestamp": str(T0_MS), "connections": "2"}
        )
        store = RedisLiveHeartbeatStore(client)

        record = await store.read(OWNER_ID)

        assert record.latest_sample.captured_at == T0
        assert record.connections == 2
        client.hgetall.reset_mock(return_value=True)
        client.hgetall.return_value = {}
        assert await store.read(OWNER_ID) is None
