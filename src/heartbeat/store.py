"""LiveHeartbeatStore: one ephemeral record per owner plus trigger records.

Every mutation goes through ``_apply``, which each backend implements as an
atomic read-modify-write of a single record (an asyncio lock in memory,
``WATCH``/``MULTI`` on Redis).  The same primitive backs the conditional
cooldown write used by the dispatcher, so the store never needs cross-record
transactions.

Writes are last-writer-wins by arrival order; ``captured_at`` is never used to
reject a write because device clocks are untrusted.

After every change the store publishes a ``HeartbeatWriteEvent`` with before
and after snapshots on ``heartbeat_written``; trigger writes publish on
``trigger_written``.  These signals are the sole trigger source for the
notification dispatcher.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable

from src.heartbeat.events import AsyncSignal
from src.heartbeat.models import (
    STATUS_DISCONNECTED,
    HeartbeatSample,
    HeartbeatWriteEvent,
    LiveHeartbeatRecord,
    NotificationTrigger,
    TriggerWriteEvent,
    from_epoch_ms,
    to_epoch_ms,
)

logger = logging.getLogger("pulsecast.heartbeat.store")


class _NoChange:
    """Sentinel returned by a mutation that decides not to write."""


NO_CHANGE = _NoChange()

Mutation = Callable[[LiveHeartbeatRecord | None], "LiveHeartbeatRecord | None | _NoChange"]


class LiveHeartbeatStore(ABC):
    """Abstract keyed store for live heartbeat and trigger records."""

    def __init__(self) -> None:
        self.heartbeat_written: AsyncSignal[HeartbeatWriteEvent] = AsyncSignal(
            "heartbeat_written"
        )
        self.trigger_written: AsyncSignal[TriggerWriteEvent] = AsyncSignal("trigger_written")

    # ------------------------------------------------------------------
    # Backend primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def _apply(
        self, owner_id: str, mutation: Mutation
    ) -> tuple[LiveHeartbeatRecord | None, LiveHeartbeatRecord | None, bool]:
        """Atomically apply ``mutation`` to one record.

        Returns:
            (before, after, changed).  ``after`` is None for a deletion.
        """

    @abstractmethod
    async def read(self, owner_id: str) -> LiveHeartbeatRecord | None:
        ...

    @abstractmethod
    async def list_owner_ids(self) -> list[str]:
        ...

    @abstractmethod
    async def _put_trigger(self, trigger: NotificationTrigger) -> None:
        ...

    @abstractmethod
    async def read_trigger(self, owner_id: str) -> NotificationTrigger | None:
        ...

    @abstractmethod
    async def _remove_trigger(self, owner_id: str) -> bool:
        ...

    @abstractmethod
    async def list_triggers(self) -> list[NotificationTrigger]:
        ...

    # ------------------------------------------------------------------
    # Record operations
    # ------------------------------------------------------------------

    async def _mutate(
        self, owner_id: str, mutation: Mutation
    ) -> tuple[LiveHeartbeatRecord | None, bool]:
        before, after, changed = await self._apply(owner_id, mutation)
        if changed:
            await self.heartbeat_written.emit(HeartbeatWriteEvent(owner_id, before, after))
        return after, changed

    async def write(self, owner_id: str, sample: HeartbeatSample) -> LiveHeartbeatRecord:
        """Upsert the latest sample for ``owner_id``."""

        def mutation(current: LiveHeartbeatRecord | None) -> LiveHeartbeatRecord:
            base = current or LiveHeartbeatRecord(owner_id=owner_id)
            return base.evolve(latest_sample=sample, status=None)

        record, _ = await self._mutate(owner_id, mutation)
        return _require(owner_id, record)

    async def clear(self, owner_id: str) -> LiveHeartbeatRecord:
        """Mark the owner's sensor as disconnected and drop the latest sample."""

        def mutation(current: LiveHeartbeatRecord | None) -> LiveHeartbeatRecord | _NoChange:
            base = current or LiveHeartbeatRecord(owner_id=owner_id)
            if base.latest_sample is None and base.status == STATUS_DISCONNECTED:
                return NO_CHANGE
            return base.evolve(latest_sample=None, status=STATUS_DISCONNECTED)

        record, _ = await self._mutate(owner_id, mutation)
        return _require(owner_id, record)

    async def increment_connections(self, owner_id: str, delta: int = 1) -> int:
        """Adjust the viewer counter, clamped at zero."""

        def mutation(current: LiveHeartbeatRecord | None) -> LiveHeartbeatRecord:
            base = current or LiveHeartbeatRecord(owner_id=owner_id)
            return base.evolve(connections=max(0, base.connections + delta))

        record, _ = await self._mutate(owner_id, mutation)
        return record.connections if record else 0

    async def delete(self, owner_id: str) -> bool:
        def mutation(current: LiveHeartbeatRecord | None) -> None | _NoChange:
            return NO_CHANGE if current is None else None

        _, changed = await self._mutate(owner_id, mutation)
        return changed

    async def delete_if(
        self, owner_id: str, predicate: Callable[[LiveHeartbeatRecord], bool]
    ) -> bool:
        """Delete the record only if ``predicate`` holds at write time."""

        def mutation(current: LiveHeartbeatRecord | None) -> None | _NoChange:
            if current is None or not predicate(current):
                return NO_CHANGE
            return None

        _, changed = await self._mutate(owner_id, mutation)
        return changed

    async def set_last_notification_sent_at(self, owner_id: str, ts: datetime) -> None:
        """Unconditionally record a notification send time."""

        def mutation(current: LiveHeartbeatRecord | None) -> LiveHeartbeatRecord:
            base = current or LiveHeartbeatRecord(owner_id=owner_id)
            return base.evolve(last_notification_sent_at=ts)

        await self._mutate(owner_id, mutation)

    async def compare_and_set_last_notification(
        self, owner_id: str, expected: datetime | None, new: datetime | None
    ) -> bool:
        """Set ``last_notification_sent_at`` only if it still equals ``expected``.

        A missing record counts as never notified: with ``expected`` None the
        claim creates it.  Returns False (and writes nothing) if another
        writer changed the timestamp since it was read.
        """

        def mutation(current: LiveHeartbeatRecord | None) -> LiveHeartbeatRecord | _NoChange:
            if current is None:
                if expected is not None:
                    return NO_CHANGE
                return LiveHeartbeatRecord(owner_id=owner_id, last_notification_sent_at=new)
            if _ms(current.last_notification_sent_at) != _ms(expected):
                return NO_CHANGE
            return current.evolve(last_notification_sent_at=new)

        _, changed = await self._mutate(owner_id, mutation)
        return changed

    # ------------------------------------------------------------------
    # Trigger records
    # ------------------------------------------------------------------

    async def write_trigger(self, owner_id: str, triggered_at: datetime) -> NotificationTrigger:
        trigger = NotificationTrigger(owner_id=owner_id, triggered_at=triggered_at)
        await self._put_trigger(trigger)
        await self.trigger_written.emit(TriggerWriteEvent(owner_id, trigger))
        return trigger

    async def delete_trigger(self, owner_id: str) -> bool:
        removed = await self._remove_trigger(owner_id)
        if removed:
            await self.trigger_written.emit(TriggerWriteEvent(owner_id, None))
        return removed


def _ms(ts: datetime | None) -> int | None:
    # Redis round-trips timestamps at millisecond precision.
    return to_epoch_ms(ts) if ts else None


def _require(owner_id: str, record: LiveHeartbeatRecord | None) -> LiveHeartbeatRecord:
    if record is None:
        raise RuntimeError(f"Upsert for owner {owner_id} left no record")
    return record


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryLiveHeartbeatStore(LiveHeartbeatStore):
    """Single-process store for development and tests."""

    def __init__(self) -> None:
        super().__init__()
        self._records: dict[str, LiveHeartbeatRecord] = {}
        self._triggers: dict[str, NotificationTrigger] = {}
        self._lock = asyncio.Lock()

    async def _apply(
        self, owner_id: str, mutation: Mutation
    ) -> tuple[LiveHeartbeatRecord | None, LiveHeartbeatRecord | None, bool]:
        async with self._lock:
            before = self._records.get(owner_id)
            after = mutation(before)
            if isinstance(after, _NoChange):
                return before, before, False
            if after is None:
                self._records.pop(owner_id, None)
            else:
                self._records[owner_id] = after
            return before, after, True

    async def read(self, owner_id: str) -> LiveHeartbeatRecord | None:
        return self._records.get(owner_id)

    async def list_owner_ids(self) -> list[str]:
        return list(self._records)

    async def _put_trigger(self, trigger: NotificationTrigger) -> None:
        self._triggers[trigger.owner_id] = trigger

    async def read_trigger(self, owner_id: str) -> NotificationTrigger | None:
        return self._triggers.get(owner_id)

    async def _remove_trigger(self, owner_id: str) -> bool:
        return self._triggers.pop(owner_id, None) is not None

    async def list_triggers(self) -> list[NotificationTrigger]:
        return list(self._triggers.values())


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisLiveHeartbeatStore(LiveHeartbeatStore):
    """Redis-backed store: one hash per owner, one string per trigger.

    Keys:
        live_heartbeats:{owner_id}        hash (bpm, timestamp, lastNotificationSent, ...)
        notification_triggers:{owner_id}  string (epoch ms)
    """

    def __init__(
        self,
        redis_client: Any,
        record_prefix: str = "live_heartbeats:",
        trigger_prefix: str = "notification_triggers:",
    ) -> None:
        super().__init__()
        self._redis = redis_client
        self._record_prefix = record_prefix
        self._trigger_prefix = trigger_prefix

    def _record_key(self, owner_id: str) -> str:
        return f"{self._record_prefix}{owner_id}"

    def _trigger_key(self, owner_id: str) -> str:
        return f"{self._trigger_prefix}{owner_id}"

    @staticmethod
    def _encode(record: LiveHeartbeatRecord) -> dict[str, str]:
        return {k: str(v) for k, v in record.to_dict().items() if v is not None and k != "ownerId"}

    @staticmethod
    def _decode(owner_id: str, raw: dict[str, str]) -> LiveHeartbeatRecord | None:
        if not raw:
            return None
        return LiveHeartbeatRecord.from_dict(owner_id, raw)

    async def _apply(
        self, owner_id: str, mutation: Mutation
    ) -> tuple[LiveHeartbeatRecord | None, LiveHeartbeatRecord | None, bool]:
        from redis.exceptions import WatchError

        key = self._record_key(owner_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    before = self._decode(owner_id, await pipe.hgetall(key))
                    after = mutation(before)
                    if isinstance(after, _NoChange):
                        await pipe.unwatch()
                        return before, before, False
                    pipe.multi()
                    pipe.delete(key)
                    if after is not None:
                        pipe.hset(key, mapping=self._encode(after))
                    await pipe.execute()
                    return before, after, True
                except WatchError:
                    logger.debug("Concurrent write on %s, retrying", key)
                    continue

    async def read(self, owner_id: str) -> LiveHeartbeatRecord | None:
        raw = await self._redis.hgetall(self._record_key(owner_id))
        return self._decode(owner_id, raw)

    async def _scan_suffixes(self, prefix: str) -> list[str]:
        ids: list[str] = []
        async for key in self._redis.scan_iter(match=f"{prefix}*", count=100):
            ids.append(key[len(prefix):])
        return ids

    async def list_owner_ids(self) -> list[str]:
        return await self._scan_suffixes(self._record_prefix)

    async def _put_trigger(self, trigger: NotificationTrigger) -> None:
        await self._redis.set(
            self._trigger_key(trigger.owner_id), str(to_epoch_ms(trigger.triggered_at))
        )

    async def read_trigger(self, owner_id: str) -> NotificationTrigger | None:
        raw = await self._redis.get(self._trigger_key(owner_id))
        if raw is None:
            return None
        return NotificationTrigger(owner_id=owner_id, triggered_at=from_epoch_ms(float(raw)))

    async def _remove_trigger(self, owner_id: str) -> bool:
        return bool(await self._redis.delete(self._trigger_key(owner_id)))

    async def list_triggers(self) -> list[NotificationTrigger]:
        triggers = []
        for owner_id in await self._scan_suffixes(self._trigger_prefix):
            trigger = await self.read_trigger(owner_id)
            if trigger is not None:
                triggers.append(trigger)
        return triggers
