"""Wearable-side sensor acquisition state machine.

States::

    IDLE ──start()──▶ STARTING ──session ready──▶ MONITORING
      ▲                                               │
      └──────────── STOPPING ◀── stop() / auto-stop ──┘

While monitoring, two independent asyncio loops drive the machine:

- send tick (default 3s): relays ``current_value`` if it is non-zero and
  fresh, otherwise counts a skip; ``max_consecutive_skips`` skips in a row
  stop the session (``StopReason.AUTO_STOPPED``);
- timeout tick (default 5s): when the last valid sample is older than
  ``sensor_timeout`` the value drops to 0 and one clear envelope is relayed
  for the staleness episode.

The sensor platform is reached through ``SensorSource``; it calls back into
``on_sample_received`` for each reading.  Observers subscribe to the
``value_changed``, ``beat``, ``state_changed`` and ``status_changed`` signals.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from src.config import Settings
from src.heartbeat.errors import (
    SensorPermissionDeniedError,
    SensorUnavailableError,
    SessionStartError,
)
from src.heartbeat.events import Signal
from src.heartbeat.models import HeartbeatSample, is_valid_bpm, utc_now
from src.heartbeat.relay import HttpRelayChannel, RelayChannel, TelemetryRelay

logger = logging.getLogger("pulsecast.heartbeat.acquisition")


class AcquisitionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    MONITORING = "monitoring"
    STOPPING = "stopping"


class DetectionStatus(str, Enum):
    IDLE = "idle"
    WAITING = "waiting"
    READING = "reading"
    NO_READING = "no_reading"
    INVALID_READING = "invalid_reading"
    STOPPED = "stopped"


class StopReason(str, Enum):
    USER = "user"
    AUTO_STOPPED = "auto_stopped"
    OWNER_CHANGED = "owner_changed"
    SESSION_ENDED = "session_ended"


class AuthorizationStatus(str, Enum):
    AUTHORIZED = "authorized"
    DENIED = "denied"
    NOT_DETERMINED = "not_determined"


# ---------------------------------------------------------------------------
# Sensor platform boundary
# ---------------------------------------------------------------------------


class SessionHandle(ABC):
    @abstractmethod
    def end(self) -> None:
        """Release the platform session. Must be safe to call more than once."""


class SensorSource(ABC):
    """Platform heart-rate API as seen by the state machine."""

    @abstractmethod
    def is_available(self) -> bool:
        ...

    @abstractmethod
    def authorization_status(self) -> AuthorizationStatus:
        ...

    async def request_authorization(self) -> AuthorizationStatus:
        return self.authorization_status()

    @abstractmethod
    async def open_session(self, on_sample: Callable[[int], None]) -> SessionHandle:
        """Open a live session that calls ``on_sample(bpm)`` per reading."""


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class SensorAcquisition:
    """Owns one sensor session and decides when to relay.

    Args:
        source:                Sensor platform adapter.
        relay:                 Outbound telemetry relay.
        owner_id:              Identity stamped on relayed samples.
        send_interval:         Seconds between send ticks.
        timeout_interval:      Seconds between timeout ticks.
        sensor_timeout:        Age after which the latest sample is stale.
        max_consecutive_skips: Skips in a row before auto-stop.
        clock:                 Injectable time source.
    """

    def __init__(
        self,
        source: SensorSource,
        relay: TelemetryRelay,
        owner_id: str | None = None,
        send_interval: float = 3.0,
        timeout_interval: float = 5.0,
        sensor_timeout: float = 15.0,
        max_consecutive_skips: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._source = source
        self._relay = relay
        self._owner_id = owner_id
        self._send_interval = send_interval
        self._timeout_interval = timeout_interval
        self._sensor_timeout = timedelta(seconds=sensor_timeout)
        self._max_skips = max_consecutive_skips
        self._clock = clock

        self._state = AcquisitionState.IDLE
        self._status = DetectionStatus.IDLE
        self._session: SessionHandle | None = None
        self._tasks: list[asyncio.Task] = []

        self.current_value = 0
        self.last_update_at: datetime | None = None
        self.consecutive_skips = 0
        self.sent_count = 0
        self.stop_reason: StopReason | None = None
        self._clear_sent = False

        self.value_changed: Signal[int] = Signal("value_changed")
        self.beat: Signal[HeartbeatSample] = Signal("beat")
        self.state_changed: Signal[AcquisitionState] = Signal("state_changed")
        self.status_changed: Signal[DetectionStatus] = Signal("status_changed")

    @classmethod
    def from_settings(
        cls,
        source: SensorSource,
        settings: Settings,
        owner_id: str | None = None,
        channel: RelayChannel | None = None,
    ) -> SensorAcquisition:
        """Build an acquisition relaying over HTTP to ``settings.relay_endpoint_url``."""
        if channel is None:
            channel = HttpRelayChannel(settings.relay_endpoint_url)
        return cls(
            source,
            TelemetryRelay(channel),
            owner_id=owner_id,
            send_interval=settings.send_tick_interval_seconds,
            timeout_interval=settings.timeout_tick_interval_seconds,
            sensor_timeout=settings.sensor_timeout_seconds,
            max_consecutive_skips=settings.max_consecutive_skips,
        )

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def state(self) -> AcquisitionState:
        return self._state

    @property
    def status(self) -> DetectionStatus:
        return self._status

    @property
    def owner_id(self) -> str | None:
        return self._owner_id

    @property
    def is_monitoring(self) -> bool:
        return self._state is AcquisitionState.MONITORING

    def _set_state(self, state: AcquisitionState) -> None:
        if state is self._state:
            return
        logger.debug("Acquisition state %s → %s", self._state.value, state.value)
        self._state = state
        self.state_changed.emit(state)

    def _set_status(self, status: DetectionStatus) -> None:
        if status is self._status:
            return
        self._status = status
        self.status_changed.emit(status)

    def _set_value(self, value: int) -> None:
        if value == self.current_value:
            return
        self.current_value = value
        self.value_changed.emit(value)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open a sensor session and begin monitoring.

        Raises:
            SensorUnavailableError:      the platform has no heart-rate sensor.
            SensorPermissionDeniedError: heart-rate access is not authorized.
            SessionStartError:           the platform failed to open a session.
        """
        if self._state in (AcquisitionState.STARTING, AcquisitionState.MONITORING):
            logger.debug("start() ignored, already %s", self._state.value)
            return

        if not self._source.is_available():
            raise SensorUnavailableError("heart-rate sensor unavailable")

        auth = self._source.authorization_status()
        if auth is AuthorizationStatus.NOT_DETERMINED:
            auth = await self._source.request_authorization()
        if auth is not AuthorizationStatus.AUTHORIZED:
            raise SensorPermissionDeniedError(f"heart-rate authorization {auth.value}")

        self._set_state(AcquisitionState.STARTING)
        self.consecutive_skips = 0
        self.stop_reason = None

        try:
            session = await self._source.open_session(self.on_sample_received)
        except Exception as exc:
            self._set_state(AcquisitionState.IDLE)
            raise SessionStartError(f"could not open sensor session: {exc}") from exc

        if self._state is not AcquisitionState.STARTING:
            # stop() ran while the session was opening.
            session.end()
            return

        self._session = session
        self._set_state(AcquisitionState.MONITORING)
        self._set_status(DetectionStatus.WAITING)
        self._tasks = [
            asyncio.create_task(self._run_every(self._send_interval, self.on_send_tick)),
            asyncio.create_task(self._run_every(self._timeout_interval, self.on_timeout_tick)),
        ]
        logger.info("Heart-rate monitoring started for owner %s", self._owner_id)

    def stop(self) -> None:
        """Stop monitoring. Idempotent; safe to call from inside a tick."""
        self._stop(StopReason.USER)

    def _stop(self, reason: StopReason) -> None:
        if self._state is AcquisitionState.IDLE:
            return

        self._set_state(AcquisitionState.STOPPING)
        for task in self._tasks:
            task.cancel()
        self._tasks = []

        if self._session is not None:
            try:
                self._session.end()
            except Exception as exc:
                logger.warning("Error ending sensor session: %s", exc)
            self._session = None

        self.consecutive_skips = 0
        self.last_update_at = None
        self._clear_sent = False
        self._set_value(0)
        self.stop_reason = reason
        self._set_status(DetectionStatus.STOPPED)
        self._set_state(AcquisitionState.IDLE)
        logger.info("Heart-rate monitoring stopped (%s)", reason.value)

    async def select_owner(self, owner_id: str) -> None:
        """Switch the identity stamped on relayed samples.

        A running session is restarted so no sample is relayed under the old id.
        """
        if owner_id == self._owner_id:
            return
        self._owner_id = owner_id
        logger.info("Relay owner set to %s", owner_id)
        if self._state in (AcquisitionState.STARTING, AcquisitionState.MONITORING):
            self._stop(StopReason.OWNER_CHANGED)
            await self.start()

    async def _run_every(self, interval: float, tick: Callable[[], None]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                tick()
            except Exception as exc:
                logger.error("Acquisition tick failed: %s", exc, exc_info=exc)

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def on_sample_received(self, bpm: int) -> bool:
        """Sensor callback. Returns True if the reading was accepted."""
        if self._state is not AcquisitionState.MONITORING:
            return False

        if not is_valid_bpm(bpm):
            logger.debug("Discarding out-of-range reading: %s", bpm)
            self._set_status(DetectionStatus.INVALID_READING)
            return False

        now = self._clock()
        self.last_update_at = now
        self._clear_sent = False
        self._set_value(bpm)
        self._set_status(DetectionStatus.READING)
        self.beat.emit(HeartbeatSample(bpm=bpm, captured_at=now, owner_id=self._owner_id or ""))
        return True

    def on_session_ended(self, error: Exception | None = None) -> None:
        """Platform callback for a session that ended or failed on its own."""
        if error is not None:
            logger.error("Sensor session failed: %s", error)
        self._stop(StopReason.SESSION_ENDED)

    def _is_fresh(self, now: datetime) -> bool:
        return self.last_update_at is not None and now - self.last_update_at <= self._sensor_timeout

    def on_timeout_tick(self) -> None:
        if self._state is not AcquisitionState.MONITORING:
            return
        if self.last_update_at is None:
            self._set_status(DetectionStatus.WAITING)
            return

        now = self._clock()
        if self._is_fresh(now):
            self._set_status(DetectionStatus.READING)
            return

        self._set_value(0)
        self._set_status(DetectionStatus.NO_READING)
        if not self._clear_sent and self._owner_id:
            self._relay.send_clear(self._owner_id)
            self._clear_sent = True
            logger.info("No reading for %ss, relayed clear", self._sensor_timeout.total_seconds())

    def on_send_tick(self) -> None:
        if self._state is not AcquisitionState.MONITORING:
            return

        now = self._clock()
        if self.current_value > 0 and self._is_fresh(now) and self._owner_id:
            sample = HeartbeatSample(
                bpm=self.current_value, captured_at=self.last_update_at, owner_id=self._owner_id
            )
            if self._relay.send_sample(sample):
                self.sent_count += 1
            self.consecutive_skips = 0
            return

        self.consecutive_skips += 1
        logger.debug("Send skipped (%d/%d)", self.consecutive_skips, self._max_skips)
        if self.consecutive_skips >= self._max_skips:
            logger.warning(
                "No fresh reading for %d send ticks, stopping monitoring", self.consecutive_skips
            )
            self._stop(StopReason.AUTO_STOPPED)
