"""Notification dispatch trigger.

Reacts to writes on the LiveHeartbeatStore (and to explicit trigger records)
and fans out one push batch to the owner's followers, at most once per
cooldown window.

Event delivery is at-least-once, so the same write can reach
``handle_heartbeat_write`` more than once, possibly concurrently.  The
cooldown slot is therefore claimed with a compare-and-set on
``last_notification_sent_at`` *before* any push is sent: of two invocations
that both read the same previous timestamp, exactly one wins the claim and
sends; the other returns ``LOST_RACE``.  If every token of the winning send
fails, the claim is released with a second compare-and-set so the next change
can retry.

Handlers never raise.  Every path returns a ``DispatchResult`` and is logged
where it happens, because a failing event handler invites redelivery, which
compounds the duplicate-send risk.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from src.heartbeat.models import (
    HeartbeatWriteEvent,
    PushBatchResult,
    PushPayload,
    TokenResult,
    TriggerWriteEvent,
    utc_now,
)
from src.heartbeat.profiles import ProfileStore
from src.heartbeat.store import LiveHeartbeatStore
from src.services.push import PushTransport

logger = logging.getLogger("pulsecast.heartbeat.dispatcher")

DEFAULT_COOLDOWN = timedelta(minutes=5)
DEFAULT_BATCH_SIZE = 500

TITLE_TEMPLATE = "{name}'s heart rate was updated"
BODY_TEMPLATE = "Current heart rate: {bpm} bpm"


class DispatchOutcome(str, Enum):
    SENT = "sent"
    SKIPPED_DELETED = "skipped_deleted"
    SKIPPED_NO_SAMPLE = "skipped_no_sample"
    SKIPPED_UNCHANGED = "skipped_unchanged"
    SUPPRESSED_COOLDOWN = "suppressed_cooldown"
    SKIPPED_NO_FOLLOWERS = "skipped_no_followers"
    SKIPPED_OWNER_MISSING = "skipped_owner_missing"
    SKIPPED_NO_TOKENS = "skipped_no_tokens"
    LOST_RACE = "lost_race"
    FAILED = "failed"


@dataclass
class DispatchResult:
    owner_id: str
    outcome: DispatchOutcome
    bpm: int | None = None
    tokens_attempted: int = 0
    success_count: int = 0
    failure_count: int = 0
    sent_at: datetime | None = None


def chunked(items: list[str], size: int) -> list[list[str]]:
    if size <= 0:
        raise ValueError("batch size must be positive")
    return [items[i : i + size] for i in range(0, len(items), size)]


class NotificationDispatcher:
    """Cooldown-limited follower fan-out for one owner's heart rate."""

    def __init__(
        self,
        store: LiveHeartbeatStore,
        profiles: ProfileStore,
        push: PushTransport,
        cooldown_window: timedelta = DEFAULT_COOLDOWN,
        batch_size: int = DEFAULT_BATCH_SIZE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._profiles = profiles
        self._push = push
        self._cooldown = cooldown_window
        self._batch_size = batch_size
        self._clock = clock

    def attach(self) -> Callable[[], None]:
        """Subscribe to the store's write signals. Returns a detach function."""
        unsub_records = self._store.heartbeat_written.subscribe(self.handle_heartbeat_write)
        unsub_triggers = self._store.trigger_written.subscribe(self.handle_trigger_write)

        def detach() -> None:
            unsub_records()
            unsub_triggers()

        return detach

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def handle_heartbeat_write(self, event: HeartbeatWriteEvent) -> DispatchResult:
        owner_id = event.owner_id

        if event.is_deletion:
            logger.info("Heartbeat deleted for owner %s", owner_id)
            return DispatchResult(owner_id, DispatchOutcome.SKIPPED_DELETED)

        bpm = event.after.bpm if event.after else None
        if bpm is None:
            logger.debug("No current sample for owner %s (cleared)", owner_id)
            return DispatchResult(owner_id, DispatchOutcome.SKIPPED_NO_SAMPLE)

        previous_bpm = event.before.bpm if event.before else None
        if previous_bpm == bpm:
            logger.debug("BPM unchanged for owner %s, skipping notification", owner_id)
            return DispatchResult(owner_id, DispatchOutcome.SKIPPED_UNCHANGED, bpm=bpm)

        logger.info("BPM update detected for owner %s: %d bpm", owner_id, bpm)
        try:
            return await self._dispatch(owner_id, bpm)
        except Exception as exc:
            logger.error("Error processing heartbeat for owner %s: %s", owner_id, exc, exc_info=exc)
            return DispatchResult(owner_id, DispatchOutcome.FAILED, bpm=bpm)

    async def handle_trigger_write(self, event: TriggerWriteEvent) -> DispatchResult:
        """Dispatch the owner's current bpm for an explicit trigger record.

        The trigger is removed afterwards whatever the outcome.
        """
        owner_id = event.owner_id
        if event.trigger is None:
            return DispatchResult(owner_id, DispatchOutcome.SKIPPED_DELETED)

        logger.info(
            "Notification trigger received for owner %s at %s",
            owner_id,
            event.trigger.triggered_at.isoformat(),
        )
        try:
            record = await self._store.read(owner_id)
            if record is None or record.bpm is None:
                logger.warning("No heartbeat data found for owner %s", owner_id)
                return DispatchResult(owner_id, DispatchOutcome.SKIPPED_NO_SAMPLE)
            return await self._dispatch(owner_id, record.bpm)
        except Exception as exc:
            logger.error(
                "Error processing notification trigger for owner %s: %s",
                owner_id,
                exc,
                exc_info=exc,
            )
            return DispatchResult(owner_id, DispatchOutcome.FAILED)
        finally:
            try:
                await self._store.delete_trigger(owner_id)
            except Exception as exc:
                logger.error("Failed to clean up trigger for owner %s: %s", owner_id, exc)

    # ------------------------------------------------------------------
    # Dispatch steps
    # ------------------------------------------------------------------

    async def _dispatch(self, owner_id: str, bpm: int) -> DispatchResult:
        now = self._clock()

        record = await self._store.read(owner_id)
        last_sent = record.last_notification_sent_at if record else None
        if last_sent is not None and now - last_sent < self._cooldown:
            logger.info(
                "Notification cooldown active for owner %s (%.0fs since last send)",
                owner_id,
                (now - last_sent).total_seconds(),
            )
            return DispatchResult(owner_id, DispatchOutcome.SUPPRESSED_COOLDOWN, bpm=bpm)

        followers = await self._profiles.list_followers(owner_id)
        if not followers:
            logger.info("No followers found for owner %s", owner_id)
            return DispatchResult(owner_id, DispatchOutcome.SKIPPED_NO_FOLLOWERS, bpm=bpm)

        owner = await self._profiles.get_owner(owner_id)
        if owner is None:
            logger.warning("Owner not found in profile store: %s", owner_id)
            return DispatchResult(owner_id, DispatchOutcome.SKIPPED_OWNER_MISSING, bpm=bpm)

        tokens = list(dict.fromkeys(f.push_token for f in followers if f.is_reachable and f.push_token))
        if not tokens:
            logger.info("No valid push tokens found for owner %s", owner_id)
            return DispatchResult(owner_id, DispatchOutcome.SKIPPED_NO_TOKENS, bpm=bpm)

        claimed = await self._store.compare_and_set_last_notification(owner_id, last_sent, now)
        if not claimed:
            logger.info("Cooldown slot for owner %s already claimed by another invocation", owner_id)
            return DispatchResult(owner_id, DispatchOutcome.LOST_RACE, bpm=bpm)

        result = await self._send_batches(tokens, owner.display_name, bpm)
        outcome = DispatchResult(
            owner_id,
            DispatchOutcome.SENT,
            bpm=bpm,
            tokens_attempted=len(tokens),
            success_count=result.success_count,
            failure_count=result.failure_count,
            sent_at=now,
        )

        if result.success_count == 0:
            released = await self._store.compare_and_set_last_notification(
                owner_id, now, last_sent
            )
            logger.warning(
                "All %d notifications failed for owner %s (cooldown released=%s)",
                len(tokens),
                owner_id,
                released,
            )
            outcome.outcome = DispatchOutcome.FAILED
            outcome.sent_at = None
            return outcome

        logger.info(
            "Sent notifications for owner %s: %d success, %d failure",
            owner_id,
            result.success_count,
            result.failure_count,
        )
        return outcome

    async def _send_batches(self, tokens: list[str], display_name: str, bpm: int) -> PushBatchResult:
        title = TITLE_TEMPLATE.format(name=display_name)
        body = BODY_TEMPLATE.format(bpm=bpm)
        chunks = chunked(tokens, self._batch_size)

        results = await asyncio.gather(
            *(
                self._push.send_multicast(PushPayload(title=title, body=body, bpm=bpm, tokens=chunk))
                for chunk in chunks
            ),
            return_exceptions=True,
        )

        combined = PushBatchResult()
        for chunk, result in zip(chunks, results):
            if isinstance(result, BaseException):
                logger.error("Push batch of %d tokens failed: %s", len(chunk), result)
                combined.responses.extend(
                    TokenResult(token=t, success=False, error=str(result)) for t in chunk
                )
                continue
            for response in result.responses:
                if not response.success:
                    # Failed tokens are reported, never pruned here.
                    logger.error("Failed to send to token %s: %s", response.token, response.error)
            combined.responses.extend(result.responses)
        return combined
