"""Tests for the telemetry relay, its channels and companion ingestion."""

from __future__ import annotations

import json

import httpx
import pytest

from src.heartbeat.errors import InvalidEnvelopeError
from src.heartbeat.relay import (
    HttpRelayChannel,
    IngestOutcome,
    InMemoryRelayChannel,
    TelemetryRelay,
    ingest_envelope,
)
from src.heartbeat.store import InMemoryLiveHeartbeatStore
from src.heartbeat.tests.conftest import OWNER_ID, T0, FakeClock, sample

T0_MS = int(T0.timestamp() * 1000)


def envelope(**data) -> dict:
    body = {"bpm": 72, "timestampMs": T0_MS, "ownerId": OWNER_ID, "isValidReading": True}
    body.update(data)
    return {"type": "heartRate", "data": body}


class TestTelemetryRelay:
    def test_sample_envelope(self, clock: FakeClock) -> None:
        channel = InMemoryRelayChannel()
        relay = TelemetryRelay(channel, clock=clock)

        assert relay.send_sample(sample(72, T0)) is True
        assert channel.sent == [envelope()]

    def test_invalid_sample_not_forwarded(self, clock: FakeClock) -> None:
        channel = InMemoryRelayChannel()
        relay = TelemetryRelay(channel, clock=clock)

        assert relay.send_sample(sample(0)) is False
        assert relay.send_sample(sample(250)) is False
        assert channel.sent == []

    def test_clear_envelope(self, clock: FakeClock) -> None:
        channel = InMemoryRelayChannel()
        TelemetryRelay(channel, clock=clock).send_clear(OWNER_ID)

        assert channel.sent == [
            envelope(bpm=0, isValidReading=False, status="disconnected")
        ]

    def test_channel_failure_is_swallowed(self, clock: FakeClock) -> None:
        def explode(_: dict) -> None:
            raise ConnectionError("watch not paired")

        relay = TelemetryRelay(InMemoryRelayChannel(on_send=explode), clock=clock)
        assert relay.send_sample(sample(72)) is False


class TestHttpRelayChannel:
    @pytest.mark.asyncio
    async def test_posts_envelope_in_background(self) -> None:
        received: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        channel = HttpRelayChannel("http://backend/api/v1/heartbeats/relay", http_client=client)

        channel.send(envelope())
        assert channel.pending == 1
        await channel.drain()

        assert received == [envelope()]
        assert channel.pending == 0
        await channel.aclose()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_server_error_is_logged_not_raised(self) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        channel = HttpRelayChannel("http://backend/relay", http_client=client)

        channel.send(envelope())
        await channel.drain()
        await client.aclose()


class TestIngestEnvelope:
    @pytest.mark.asyncio
    async def test_valid_reading_is_written(self, store: InMemoryLiveHeartbeatStore) -> None:
        outcome = await ingest_envelope(store, envelope())

        assert outcome is IngestOutcome.WRITTEN
        record = await store.read(OWNER_ID)
        assert record.bpm == 72
        assert record.latest_sample.captured_at == T0

    @pytest.mark.asyncio
    async def test_flat_envelope_accepted(self, store: InMemoryLiveHeartbeatStore) -> None:
        outcome = await ingest_envelope(store, envelope()["data"])
        assert outcome is IngestOutcome.WRITTEN

    @pytest.mark.asyncio
    async def test_missing_timestamp_uses_arrival_time(
        self, store: InMemoryLiveHeartbeatStore, clock: FakeClock
    ) -> None:
        clock.advance(42)
        data = envelope()["data"]
        del data["timestampMs"]

        await ingest_envelope(store, {"type": "heartRate", "data": data}, clock=clock)
        assert (await store.read(OWNER_ID)).latest_sample.captured_at == clock.now

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "fields",
        [
            {"bpm": 0, "isValidReading": False, "status": "disconnected"},
            {"bpm": 80, "status": "stopped"},
            {"bpm": -3},
        ],
    )
    async def test_clear_drops_sample(self, store: InMemoryLiveHeartbeatStore, fields: dict) -> None:
        await ingest_envelope(store, envelope())

        outcome = await ingest_envelope(store, envelope(**fields))

        assert outcome is IngestOutcome.CLEARED
        record = await store.read(OWNER_ID)
        assert record.latest_sample is None
        assert record.status == "disconnected"

    @pytest.mark.asyncio
    async def test_invalid_reading_is_dropped(self, store: InMemoryLiveHeartbeatStore) -> None:
        assert await ingest_envelope(store, envelope(bpm=230)) is IngestOutcome.DROPPED_INVALID
        assert await ingest_envelope(store, envelope(isValidReading=False)) is IngestOutcome.DROPPED_INVALID
        assert await store.read(OWNER_ID) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "bad",
        [
            "not a dict",
            {"type": "selectUser", "data": {}},
            {"type": "heartRate", "data": "x"},
            {"type": "heartRate", "data": {"bpm": 70}},
            {"type": "heartRate", "data": {"ownerId": OWNER_ID, "bpm": "70"}},
            {"type": "heartRate", "data": {"ownerId": OWNER_ID, "bpm": True}},
            {"type": "heartRate", "data": {"ownerId": OWNER_ID, "bpm": 70, "timestampMs": "now"}},
            {"type": "heartRate", "data": {"ownerId": OWNER_ID, "bpm": float("nan")}},
            {"type": "heartRate", "data": {"ownerId": OWNER_ID, "bpm": float("inf")}},
            {"type": "heartRate", "data": {"ownerId": OWNER_ID, "bpm": 72.9}},
            {"type": "heartRate", "data": {"ownerId": OWNER_ID, "bpm": 70, "timestampMs": float("inf")}},
            {"type": "heartRate", "data": {"ownerId": OWNER_ID, "bpm": 70, "timestampMs": 10**17}},
        ],
    )
    async def test_malformed_envelope_raises(self, store: InMemoryLiveHeartbeatStore, bad) -> None:
        with pytest.raises(InvalidEnvelopeError):
            await ingest_envelope(store, bad)

    @pytest.mark.asyncio
    async def test_whole_float_bpm_accepted(self, store: InMemoryLiveHeartbeatStore) -> None:
        assert await ingest_envelope(store, envelope(bpm=72.0)) is IngestOutcome.WRITTEN
        assert (await store.read(OWNER_ID)).bpm == 72

    @pytest.mark.asyncio
    async def test_out_of_range_timestamp_leaves_store_untouched(
        self, store: InMemoryLiveHeartbeatStore
    ) -> None:
        with pytest.raises(InvalidEnvelopeError):
            await ingest_envelope(store, envelope(timestampMs=10**17))
        assert await store.read(OWNER_ID) is None
