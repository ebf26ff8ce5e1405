"""Best-effort telemetry relay (wearable → backend) and companion ingestion.

The relay never awaits an acknowledgement.  Envelopes may be dropped,
reordered or coalesced by the channel; the acquisition send tick re-sends the
latest value every interval, so the stream heals itself after a loss.

Envelope shape::

    {
        "type": "heartRate",
        "data": {
            "bpm": 72,
            "timestampMs": 1718000000000,
            "ownerId": "user-123",
            "isValidReading": true,
            "status": "disconnected"      # clear envelopes only
        }
    }
"""

from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Callable

import httpx

from src.heartbeat.errors import InvalidEnvelopeError
from src.heartbeat.models import (
    RELAY_MESSAGE_TYPE,
    STATUS_DISCONNECTED,
    STATUS_STOPPED,
    HeartbeatSample,
    from_epoch_ms,
    is_valid_bpm,
    to_epoch_ms,
    utc_now,
)
from src.heartbeat.store import LiveHeartbeatStore

logger = logging.getLogger("pulsecast.heartbeat.relay")

Envelope = dict[str, Any]


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


class RelayChannel(ABC):
    """Fire-and-forget transport. ``send`` must not block on delivery."""

    @abstractmethod
    def send(self, envelope: Envelope) -> None:
        ...

    async def aclose(self) -> None:
        """Release transport resources. Pending sends may be dropped."""


class HttpRelayChannel(RelayChannel):
    """POST envelopes to the ingestion endpoint from background tasks.

    Requires a running event loop.  Delivery failures are logged on task
    completion and never reach the caller.
    """

    def __init__(
        self,
        endpoint_url: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._url = endpoint_url
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
        self._owns_client = http_client is None
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def send(self, envelope: Envelope) -> None:
        task = asyncio.get_running_loop().create_task(self._post(envelope))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _post(self, envelope: Envelope) -> None:
        try:
            response = await self._client.post(self._url, json=envelope)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Relay send failed: %s", exc)

    async def drain(self) -> None:
        """Wait for in-flight sends to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()


class InMemoryRelayChannel(RelayChannel):
    """Collects envelopes in a list. Used by tests and local simulations."""

    def __init__(self, on_send: Callable[[Envelope], Any] | None = None) -> None:
        self.sent: list[Envelope] = []
        self._on_send = on_send

    def send(self, envelope: Envelope) -> None:
        self.sent.append(envelope)
        if self._on_send is not None:
            self._on_send(envelope)


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------


class TelemetryRelay:
    """Builds envelopes and hands them to a channel."""

    def __init__(self, channel: RelayChannel, clock: Callable[[], datetime] = utc_now) -> None:
        self._channel = channel
        self._clock = clock

    def send_sample(self, sample: HeartbeatSample) -> bool:
        """Relay one valid sample. Invalid samples are never forwarded."""
        if not sample.is_valid:
            logger.debug("Refusing to relay invalid bpm %s for %s", sample.bpm, sample.owner_id)
            return False
        envelope = {
            "type": RELAY_MESSAGE_TYPE,
            "data": {
                "bpm": sample.bpm,
                "timestampMs": to_epoch_ms(sample.captured_at),
                "ownerId": sample.owner_id,
                "isValidReading": True,
            },
        }
        return self._send(envelope)

    def send_clear(self, owner_id: str) -> bool:
        """Tell the backend the sensor stopped producing readings."""
        envelope = {
            "type": RELAY_MESSAGE_TYPE,
            "data": {
                "bpm": 0,
                "timestampMs": to_epoch_ms(self._clock()),
                "ownerId": owner_id,
                "isValidReading": False,
                "status": STATUS_DISCONNECTED,
            },
        }
        return self._send(envelope)

    def _send(self, envelope: Envelope) -> bool:
        try:
            self._channel.send(envelope)
        except Exception as exc:
            # The next send tick retries with fresh data.
            logger.warning("Relay channel rejected envelope: %s", exc)
            return False
        return True


# ---------------------------------------------------------------------------
# Companion ingestion
# ---------------------------------------------------------------------------


class IngestOutcome(str, Enum):
    WRITTEN = "written"
    CLEARED = "cleared"
    DROPPED_INVALID = "dropped_invalid"


def parse_envelope(envelope: Envelope) -> dict[str, Any]:
    """Return the ``data`` part of a relay envelope, validating required fields."""
    if not isinstance(envelope, dict):
        raise InvalidEnvelopeError("envelope must be an object")

    message_type = envelope.get("type")
    if message_type is not None and message_type != RELAY_MESSAGE_TYPE:
        raise InvalidEnvelopeError(f"unsupported message type: {message_type!r}")

    data = envelope.get("data", envelope)
    if not isinstance(data, dict):
        raise InvalidEnvelopeError("envelope data must be an object")

    owner_id = data.get("ownerId")
    if not isinstance(owner_id, str) or not owner_id:
        raise InvalidEnvelopeError("ownerId is required")

    bpm = data.get("bpm")
    if isinstance(bpm, bool) or not isinstance(bpm, (int, float)):
        raise InvalidEnvelopeError("bpm must be a number")
    if isinstance(bpm, float) and (not math.isfinite(bpm) or not bpm.is_integer()):
        raise InvalidEnvelopeError(f"bpm must be a whole number, got {bpm!r}")

    ts = data.get("timestampMs")
    if ts is not None:
        if isinstance(ts, bool) or not isinstance(ts, (int, float)):
            raise InvalidEnvelopeError("timestampMs must be a number")
        if isinstance(ts, float) and not math.isfinite(ts):
            raise InvalidEnvelopeError(f"timestampMs must be finite, got {ts!r}")

    return data


async def ingest_envelope(
    store: LiveHeartbeatStore,
    envelope: Envelope,
    clock: Callable[[], datetime] = utc_now,
) -> IngestOutcome:
    """Apply one relay envelope to the live store.

    A disconnected/stopped status or a non-positive bpm clears the owner's
    sample.  Other invalid readings are dropped.  Valid readings are written;
    a missing timestamp falls back to the arrival time.

    Raises:
        InvalidEnvelopeError: if the envelope is malformed.
    """
    data = parse_envelope(envelope)
    owner_id = data["ownerId"]
    bpm = int(data["bpm"])
    status = data.get("status")

    if status in (STATUS_DISCONNECTED, STATUS_STOPPED) or bpm <= 0:
        await store.clear(owner_id)
        logger.info("Cleared heartbeat for owner %s (status=%s)", owner_id, status)
        return IngestOutcome.CLEARED

    if not data.get("isValidReading", True) or not is_valid_bpm(bpm):
        logger.debug("Dropping invalid reading for owner %s: bpm=%s", owner_id, bpm)
        return IngestOutcome.DROPPED_INVALID

    ts = data.get("timestampMs")
    if ts is None:
        captured_at = clock()
    else:
        try:
            captured_at = from_epoch_ms(float(ts))
        except (OverflowError, ValueError, OSError) as exc:
            raise InvalidEnvelopeError(f"timestampMs out of range: {ts!r}") from exc
    await store.write(owner_id, HeartbeatSample(bpm=bpm, captured_at=captured_at, owner_id=owner_id))
    return IngestOutcome.WRITTEN
