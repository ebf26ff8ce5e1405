"""Scheduled removal of stale live heartbeat and trigger records.

Bounds the growth caused by owners who stop sending and backs up relay clear
messages that never arrived.  Runs daily; see ``src.heartbeat.scheduler``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from src.heartbeat.models import LiveHeartbeatRecord, utc_now
from src.heartbeat.store import LiveHeartbeatStore

logger = logging.getLogger("pulsecast.heartbeat.reaper")

DEFAULT_RETENTION = timedelta(hours=1)


@dataclass
class ReapResult:
    heartbeats_deleted: int = 0
    triggers_deleted: int = 0
    heartbeats_checked: int = 0
    triggers_checked: int = 0
    errors: int = 0


class StaleDataReaper:
    """Delete records whose latest sample is older than the retention window.

    A record with no sample at all (e.g. after a clear) counts as stale.
    """

    def __init__(
        self,
        store: LiveHeartbeatStore,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._retention = retention
        self._clock = clock

    async def sweep(self, retention: timedelta | None = None) -> ReapResult:
        """Run one sweep.

        Args:
            retention: Override of the configured retention window.

        Returns:
            Counts of checked and deleted records.  A failure on one record is
            logged and counted in ``errors``; the sweep moves on.
        """
        window = retention if retention is not None else self._retention
        now = self._clock()
        cutoff = now - window
        result = ReapResult()

        logger.info("Starting cleanup of heartbeat data older than %s", cutoff.isoformat())

        def is_stale(record: LiveHeartbeatRecord) -> bool:
            sample = record.latest_sample
            return sample is None or sample.captured_at < cutoff

        for owner_id in await self._store.list_owner_ids():
            result.heartbeats_checked += 1
            try:
                await self._reap_heartbeat(owner_id, is_stale, now, result)
            except Exception as exc:
                result.errors += 1
                logger.error("Failed to reap heartbeat for owner %s: %s", owner_id, exc)

        for trigger in await self._store.list_triggers():
            result.triggers_checked += 1
            if trigger.triggered_at >= cutoff:
                continue
            try:
                removed = await self._store.delete_trigger(trigger.owner_id)
            except Exception as exc:
                result.errors += 1
                logger.error("Failed to delete trigger for owner %s: %s", trigger.owner_id, exc)
                continue
            if removed:
                result.triggers_deleted += 1
                logger.info(
                    "Deleted notification trigger: owner=%s, age=%d minutes",
                    trigger.owner_id,
                    int((now - trigger.triggered_at).total_seconds() // 60),
                )

        logger.info(
            "Cleanup completed: %d heartbeats, %d triggers deleted, %d errors",
            result.heartbeats_deleted,
            result.triggers_deleted,
            result.errors,
        )
        return result

    async def _reap_heartbeat(
        self,
        owner_id: str,
        is_stale: Callable[[LiveHeartbeatRecord], bool],
        now: datetime,
        result: ReapResult,
    ) -> None:
        record = await self._store.read(owner_id)
        if record is None or not is_stale(record):
            return
        sample = record.latest_sample
        # Re-checked atomically: a sample may have landed since the read.
        if not await self._store.delete_if(owner_id, is_stale):
            return
        result.heartbeats_deleted += 1
        if sample is None:
            logger.info("Deleted heartbeat with no sample: owner=%s", owner_id)
        else:
            logger.info(
                "Deleted heartbeat: owner=%s, age=%d minutes",
                owner_id,
                int((now - sample.captured_at).total_seconds() // 60),
            )
