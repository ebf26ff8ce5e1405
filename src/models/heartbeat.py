"""Pydantic request/response models for heartbeat, event, ranking and admin routes."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field

from src.heartbeat.models import LiveHeartbeatRecord
from src.models.base import PulsecastBase


# ---------- Relay ingestion ----------

class IngestResponse(PulsecastBase):
    owner_id: str
    outcome: str


# ---------- Store events ----------

class HeartbeatSnapshot(PulsecastBase):
    """Wire form of a LiveHeartbeatRecord (timestamps in epoch ms)."""

    bpm: int | None = None
    timestamp: int | None = None
    last_notification_sent: int | None = None
    connections: int = Field(default=0, ge=0)
    status: str | None = None

    def to_record(self, owner_id: str) -> LiveHeartbeatRecord:
        return LiveHeartbeatRecord.from_dict(owner_id, self.model_dump(by_alias=True))


class HeartbeatWrittenEvent(PulsecastBase):
    owner_id: str = Field(min_length=1)
    before: HeartbeatSnapshot | None = None
    after: HeartbeatSnapshot | None = None


class TriggerWrittenEvent(PulsecastBase):
    owner_id: str = Field(min_length=1)
    triggered_at: int | None = None  # epoch ms; None = trigger deleted


class ProfileUpdatedEvent(PulsecastBase):
    owner_id: str = Field(min_length=1)
    max_connections_before: float = 0
    max_connections_after: float = 0


class DispatchResultRead(PulsecastBase):
    owner_id: str
    outcome: str
    bpm: int | None = None
    tokens_attempted: int = 0
    success_count: int = 0
    failure_count: int = 0
    sent_at: datetime | None = None


class ScoreUpdateRead(PulsecastBase):
    owner_id: str
    updated: bool


# ---------- Ranking ----------

class RankedEntryRead(PulsecastBase):
    owner_id: str
    name: str | None = None
    score: float
    rank: int
    max_connections_updated_at: datetime | None = None


class RankingResponse(PulsecastBase):
    entries: list[RankedEntryRead]
    as_of: datetime | None = None
    cached: bool = False
    stale: bool = False
    cache_age: int = 0


# ---------- Admin ----------

class SyncResultRead(PulsecastBase):
    trigger: str
    status: str
    owners_scanned: int = 0
    owners_synced: int = 0
    synced_at: datetime | None = None
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)


class ReapRequest(PulsecastBase):
    retention_seconds: int | None = Field(default=None, ge=0)


class ReapResultRead(PulsecastBase):
    heartbeats_deleted: int = 0
    triggers_deleted: int = 0
    heartbeats_checked: int = 0
    triggers_checked: int = 0
    errors: int = 0


def from_dataclass(model: type[PulsecastBase], obj: Any) -> Any:
    """Build a response model from a dataclass result with matching field names."""
    return model.model_validate(obj, from_attributes=True)
