"""Pulsecast heartbeat pipeline.

Carries a wearer's live heart rate from the watch to the backend, fans it out
to followers as push notifications, and maintains the max-connections
leaderboard.

Core modules:
    acquisition — Sensor session state machine with send and timeout ticks
    relay       — Watch → companion envelopes and companion-side ingestion
    store       — Live heartbeat store (Redis or in-memory) with write signals
    dispatcher  — Follower push fan-out with a per-owner cooldown
    reaper      — Daily removal of stale live records and triggers
    ranking     — Sorted-set leaderboard, bulk sync and TTL read cache
    scheduler   — Daily / hourly background jobs
"""

from src.heartbeat.models import HeartbeatSample, LiveHeartbeatRecord
from src.heartbeat.ranking import RankingCacheSync
from src.heartbeat.reaper import StaleDataReaper
from src.heartbeat.store import (
    InMemoryLiveHeartbeatStore,
    LiveHeartbeatStore,
    RedisLiveHeartbeatStore,
)

__all__ = [
    "HeartbeatSample",
    "LiveHeartbeatRecord",
    "LiveHeartbeatStore",
    "InMemoryLiveHeartbeatStore",
    "RedisLiveHeartbeatStore",
    "StaleDataReaper",
    "RankingCacheSync",
]
