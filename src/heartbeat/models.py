"""Canonical data models for the Pulsecast heartbeat pipeline.

These types are shared by the wearable-side acquisition machine, the relay,
the live store, the notification dispatcher, the reaper and the ranking sync.
All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("pulsecast.heartbeat")

MIN_VALID_BPM = 1
MAX_VALID_BPM = 220

NOTIFICATION_TYPE = "heartbeat_update"
RELAY_MESSAGE_TYPE = "heartRate"
STATUS_DISCONNECTED = "disconnected"
STATUS_STOPPED = "stopped"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_bpm(bpm: int | None) -> bool:
    """Return True if ``bpm`` lies in the accepted range ``(0, 220]``."""
    return bpm is not None and MIN_VALID_BPM <= bpm <= MAX_VALID_BPM


def to_epoch_ms(ts: datetime) -> int:
    return int(ts.timestamp() * 1000)


def from_epoch_ms(value: float) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


# ---------------------------------------------------------------------------
# Live heartbeat state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HeartbeatSample:
    """One heart-rate reading from the wearable.

    Attributes:
        bpm:         Beats per minute.
        captured_at: When the sensor produced the value (device clock, untrusted).
        owner_id:    The user wearing the sensor.
    """

    bpm: int
    captured_at: datetime
    owner_id: str

    @property
    def is_valid(self) -> bool:
        return is_valid_bpm(self.bpm)


@dataclass(frozen=True)
class LiveHeartbeatRecord:
    """Per-owner live record held by the LiveHeartbeatStore.

    Attributes:
        owner_id:                  Record key.
        latest_sample:             Last valid sample, or None after a clear.
        last_notification_sent_at: Time of the last successful push fan-out.
        connections:               Current viewer count (unrelated to bpm).
        status:                    "disconnected" after a clear envelope.
    """

    owner_id: str
    latest_sample: HeartbeatSample | None = None
    last_notification_sent_at: datetime | None = None
    connections: int = 0
    status: str | None = None

    @property
    def bpm(self) -> int | None:
        return self.latest_sample.bpm if self.latest_sample else None

    def evolve(self, **changes: Any) -> LiveHeartbeatRecord:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        sample = self.latest_sample
        return {
            "ownerId": self.owner_id,
            "bpm": sample.bpm if sample else None,
            "timestamp": to_epoch_ms(sample.captured_at) if sample else None,
            "lastNotificationSent": (
                to_epoch_ms(self.last_notification_sent_at)
                if self.last_notification_sent_at
                else None
            ),
            "connections": self.connections,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, owner_id: str, data: dict[str, Any]) -> LiveHeartbeatRecord:
        """Build a record from the wire/snapshot shape produced by ``to_dict``."""
        sample = None
        bpm = data.get("bpm")
        ts = data.get("timestamp")
        if bpm is not None and ts is not None:
            sample = HeartbeatSample(
                bpm=int(bpm), captured_at=from_epoch_ms(float(ts)), owner_id=owner_id
            )
        last_sent = data.get("lastNotificationSent")
        return cls(
            owner_id=owner_id,
            latest_sample=sample,
            last_notification_sent_at=from_epoch_ms(float(last_sent)) if last_sent else None,
            connections=int(data.get("connections") or 0),
            status=data.get("status"),
        )


@dataclass(frozen=True)
class NotificationTrigger:
    """Explicit request to notify followers of an owner's current bpm."""

    owner_id: str
    triggered_at: datetime


@dataclass(frozen=True)
class HeartbeatWriteEvent:
    """Before/after snapshots of one write to a LiveHeartbeatRecord.

    ``after`` is None when the write was a deletion.
    """

    owner_id: str
    before: LiveHeartbeatRecord | None
    after: LiveHeartbeatRecord | None

    @property
    def is_deletion(self) -> bool:
        return self.after is None


@dataclass(frozen=True)
class TriggerWriteEvent:
    owner_id: str
    trigger: NotificationTrigger | None


# ---------------------------------------------------------------------------
# Profile store (external, read-only)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FollowerSubscription:
    """A follower of ``owner_id``; owned by the durable profile store."""

    follower_id: str
    owner_id: str
    push_token: str | None = None
    notification_enabled: bool = False

    @property
    def is_reachable(self) -> bool:
        return self.notification_enabled and bool(self.push_token)


@dataclass(frozen=True)
class OwnerProfile:
    owner_id: str
    display_name: str
    max_connections: int = 0
    max_connections_updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Push notifications
# ---------------------------------------------------------------------------


@dataclass
class PushPayload:
    """One multicast push batch (≤ push_batch_size tokens)."""

    title: str
    body: str
    bpm: int
    tokens: list[str]

    def to_message(self) -> dict[str, Any]:
        return {
            "notification": {"title": self.title, "body": self.body},
            "data": {"type": NOTIFICATION_TYPE, "bpm": str(self.bpm)},
            "tokens": list(self.tokens),
        }


@dataclass
class TokenResult:
    token: str
    success: bool
    error: str | None = None


@dataclass
class PushBatchResult:
    """Per-token outcome of one multicast batch."""

    responses: list[TokenResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.responses if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.responses if not r.success)


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RankingEntry:
    owner_id: str
    score: float
    updated_at: datetime | None = None


@dataclass(frozen=True)
class RankedEntry:
    """One leaderboard row joined to the owner's profile.

    Attributes:
        owner_id:     Sorted-set member.
        score:        Max concurrent viewers.
        rank:         1-based position after dropping owners without a profile.
        display_name: Owner's profile name (None if the profile lookup failed).
        updated_at:   When the owner last set a new max.
    """

    owner_id: str
    score: float
    rank: int
    display_name: str | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ownerId": self.owner_id,
            "name": self.display_name,
            "score": self.score,
            "rank": self.rank,
            "maxConnectionsUpdatedAt": to_epoch_ms(self.updated_at) if self.updated_at else None,
        }


@dataclass(frozen=True)
class RankingResult:
    """Response of a top-K read.

    Attributes:
        entries:   Ranked entries, highest score first.
        as_of:     Completion time of the sync that produced the data.
        cached:    True if served from the in-process cache.
        stale:     True if served past its TTL because the sorted set was down.
        cache_age: Seconds since the in-process entry was stored.
    """

    entries: list[RankedEntry]
    as_of: datetime | None
    cached: bool = False
    stale: bool = False
    cache_age: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "asOf": self.as_of.isoformat() if self.as_of else None,
            "cached": self.cached,
            "stale": self.stale,
            "cacheAge": self.cache_age,
        }
