"""Two-tier leaderboard cache.

Tier 1 is a sorted set (Redis ``ZSET`` in production) mirrored from the
durable profile store by an hourly bulk sync.  Tier 2 is an in-process read
cache with a short TTL in front of it, absorbing read bursts between syncs.

Both tiers are disposable projections of the profile store:

- the bulk sync builds the full image under a staging key and swaps it in
  with one ``RENAME``, so a failure mid-scan leaves the previous image intact;
- reads prefer the fresh in-process entry, then the sorted set, and when the
  sorted set is unreachable they serve the last in-process value even if it
  has expired.  A leaderboard favours availability over freshness.

Ordering: highest score first, ties broken by ascending owner id.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from src.heartbeat.errors import RankingCacheUnavailableError
from src.heartbeat.models import (
    RankedEntry,
    RankingResult,
    from_epoch_ms,
    to_epoch_ms,
    utc_now,
)
from src.heartbeat.profiles import ProfileStore

logger = logging.getLogger("pulsecast.heartbeat.ranking")

DEFAULT_READ_CACHE_TTL = timedelta(minutes=5)


def rank_order(rows: list[tuple[str, float]]) -> list[tuple[str, float]]:
    return sorted(rows, key=lambda r: (-r[1], r[0]))


# ---------------------------------------------------------------------------
# Tier 1: sorted set
# ---------------------------------------------------------------------------


class SortedSetCache(ABC):
    """Score-ordered member store. All methods raise RankingCacheUnavailableError."""

    @abstractmethod
    async def replace_all(self, scores: dict[str, float], synced_at: datetime) -> None:
        """Atomically replace the full image and record the sync time."""

    @abstractmethod
    async def upsert(self, owner_id: str, score: float) -> None:
        ...

    @abstractmethod
    async def top_k(self, k: int) -> list[tuple[str, float]]:
        """Return the ``k`` best (owner_id, score) pairs in rank order."""

    @abstractmethod
    async def synced_at(self) -> datetime | None:
        ...


class InMemorySortedSetCache(SortedSetCache):
    """Dictionary-backed sorted set; ``available`` simulates an outage."""

    def __init__(self) -> None:
        self._scores: dict[str, float] = {}
        self._synced_at: datetime | None = None
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise RankingCacheUnavailableError("in-memory sorted set marked unavailable")

    async def replace_all(self, scores: dict[str, float], synced_at: datetime) -> None:
        self._check()
        self._scores = dict(scores)
        self._synced_at = synced_at

    async def upsert(self, owner_id: str, score: float) -> None:
        self._check()
        self._scores[owner_id] = score

    async def top_k(self, k: int) -> list[tuple[str, float]]:
        self._check()
        return rank_order(list(self._scores.items()))[:k]

    async def synced_at(self) -> datetime | None:
        self._check()
        return self._synced_at


class RedisSortedSetCache(SortedSetCache):
    """Redis ``ZSET`` implementation.

    Keys:
        {key}             live sorted set (member = owner id, score = metric)
        {key}:synced_at   epoch ms of the last completed bulk sync
        {key}:staging:*   transient build area for bulk syncs
    """

    WRITE_CHUNK = 1000

    def __init__(self, redis_client: Any, key: str = "ranking:maxConnections") -> None:
        self._redis = redis_client
        self._key = key

    async def replace_all(self, scores: dict[str, float], synced_at: datetime) -> None:
        from redis.exceptions import RedisError

        staging = f"{self._key}:staging:{uuid.uuid4().hex}"
        items = list(scores.items())
        try:
            for i in range(0, len(items), self.WRITE_CHUNK):
                await self._redis.zadd(staging, dict(items[i : i + self.WRITE_CHUNK]))
            async with self._redis.pipeline(transaction=True) as pipe:
                if items:
                    pipe.rename(staging, self._key)
                else:
                    pipe.delete(self._key)
                pipe.set(f"{self._key}:synced_at", str(to_epoch_ms(synced_at)))
                await pipe.execute()
        except (RedisError, OSError) as exc:
            try:
                await self._redis.delete(staging)
            except (RedisError, OSError):
                logger.warning("Could not remove staging key %s", staging)
            raise RankingCacheUnavailableError(str(exc)) from exc

    async def upsert(self, owner_id: str, score: float) -> None:
        from redis.exceptions import RedisError

        try:
            await self._redis.zadd(self._key, {owner_id: score})
        except (RedisError, OSError) as exc:
            raise RankingCacheUnavailableError(str(exc)) from exc

    async def top_k(self, k: int) -> list[tuple[str, float]]:
        from redis.exceptions import RedisError

        try:
            rows = await self._redis.zrange(self._key, 0, k - 1, desc=True, withscores=True)
            rows = [(str(m), float(s)) for m, s in rows]
            if len(rows) < k:
                return rank_order(rows)
            # Redis orders equal scores by reverse member order; pull every
            # member tied with the boundary score so ties resolve by owner id.
            boundary = rows[-1][1]
            tied = await self._redis.zrangebyscore(
                self._key, boundary, boundary, withscores=True
            )
            above = [r for r in rows if r[1] > boundary]
            merged = above + [(str(m), float(s)) for m, s in tied]
            return rank_order(merged)[:k]
        except (RedisError, OSError) as exc:
            raise RankingCacheUnavailableError(str(exc)) from exc

    async def synced_at(self) -> datetime | None:
        from redis.exceptions import RedisError

        try:
            raw = await self._redis.get(f"{self._key}:synced_at")
        except (RedisError, OSError) as exc:
            raise RankingCacheUnavailableError(str(exc)) from exc
        return from_epoch_ms(float(raw)) if raw else None


# ---------------------------------------------------------------------------
# Tier 2: in-process read cache
# ---------------------------------------------------------------------------


@dataclass
class ReadCacheEntry:
    payload: list[RankedEntry]
    requested_k: int
    as_of: datetime | None
    stored_at: datetime
    expires_at: datetime
    fetched: int = 0

    def covers(self, k: int) -> bool:
        # Fewer rows than requested means the whole set was read, which covers any k.
        return k <= self.requested_k or self.fetched < self.requested_k


class ReadCache:
    """Holds the last fetched top-K list. Never persisted."""

    def __init__(self, ttl: timedelta = DEFAULT_READ_CACHE_TTL) -> None:
        self._ttl = ttl
        self._entry: ReadCacheEntry | None = None

    def put(
        self,
        payload: list[RankedEntry],
        requested_k: int,
        as_of: datetime | None,
        now: datetime,
        fetched: int | None = None,
    ) -> ReadCacheEntry:
        """Store a top-K payload.  ``fetched`` is the sorted-set row count before filtering."""
        self._entry = ReadCacheEntry(
            payload=payload,
            requested_k=requested_k,
            as_of=as_of,
            stored_at=now,
            expires_at=now + self._ttl,
            fetched=len(payload) if fetched is None else fetched,
        )
        return self._entry

    def get(self, k: int, now: datetime) -> ReadCacheEntry | None:
        entry = self._entry
        if entry is None or now >= entry.expires_at or not entry.covers(k):
            return None
        return entry

    def last_known(self) -> ReadCacheEntry | None:
        return self._entry

    def clear(self) -> None:
        self._entry = None


# ---------------------------------------------------------------------------
# Sync + read path
# ---------------------------------------------------------------------------


@dataclass
class SyncResult:
    """Result of one bulk sync.

    Attributes:
        trigger:        'scheduled' or 'manual'.
        status:         'success' or 'error'.
        owners_scanned: Owners read from the profile store.
        owners_synced:  Owners written to the sorted set (score > 0).
        synced_at:      Completion time (None on error).
        error:          Error message if status == 'error'.
    """

    trigger: str
    status: str = "success"
    owners_scanned: int = 0
    owners_synced: int = 0
    synced_at: datetime | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)


class RankingCacheSync:
    """Keeps the sorted set in step with the profile store and serves top-K reads."""

    def __init__(
        self,
        profiles: ProfileStore,
        sorted_set: SortedSetCache,
        read_cache_ttl: timedelta = DEFAULT_READ_CACHE_TTL,
        prewarm_k: int = 100,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._profiles = profiles
        self._sorted_set = sorted_set
        self._read_cache = ReadCache(read_cache_ttl)
        self._prewarm_k = prewarm_k
        self._clock = clock

    @property
    def read_cache(self) -> ReadCache:
        return self._read_cache

    async def bulk_sync(self, trigger: str = "scheduled") -> SyncResult:
        """Rebuild the sorted set from a full profile scan, then pre-warm reads.

        Idempotent and safe to re-run; never raises.
        """
        result = SyncResult(trigger=trigger)
        try:
            entries = await self._profiles.list_ranking_entries()
            result.owners_scanned = len(entries)
            scores = {e.owner_id: e.score for e in entries if e.score > 0}
            synced_at = self._clock()
            await self._sorted_set.replace_all(scores, synced_at)
            result.owners_synced = len(scores)
            result.synced_at = synced_at
        except Exception as exc:
            result.status = "error"
            result.error = str(exc)
            logger.error("Ranking sync (%s) failed: %s", trigger, exc)
            return result

        logger.info(
            "Ranking sync (%s) complete: %d of %d owners synced",
            trigger,
            result.owners_synced,
            result.owners_scanned,
        )

        try:
            await self._fetch_and_cache(self._prewarm_k)
        except RankingCacheUnavailableError as exc:
            result.warnings.append(f"prewarm failed: {exc}")
            logger.warning("Ranking read cache pre-warm failed: %s", exc)
        return result

    async def initial_sync(self) -> SyncResult:
        """Operator-triggered full replacement for bootstrap or recovery."""
        return await self.bulk_sync(trigger="manual")

    async def apply_score_update(self, owner_id: str, before: float, after: float) -> bool:
        """Mirror one owner's metric change without waiting for the next sync."""
        if before == after:
            logger.debug("Score unchanged for owner %s, skipping", owner_id)
            return False
        try:
            await self._sorted_set.upsert(owner_id, after)
        except RankingCacheUnavailableError as exc:
            # The profile store stays authoritative; the next bulk sync repairs this.
            logger.error("Failed to mirror score for owner %s: %s", owner_id, exc)
            return False
        logger.info("Updated ranking for owner %s: %s → %s", owner_id, before, after)
        return True

    async def get_top_k(self, k: int) -> RankingResult:
        """Return the top ``k`` entries; never raises for cache unavailability."""
        k = max(1, k)
        now = self._clock()

        hit = self._read_cache.get(k, now)
        if hit is not None:
            age = int((now - hit.stored_at).total_seconds())
            logger.debug("Ranking cache hit (age: %ds)", age)
            return RankingResult(
                entries=hit.payload[:k], as_of=hit.as_of, cached=True, cache_age=age
            )

        try:
            entry = await self._fetch_and_cache(k)
        except RankingCacheUnavailableError as exc:
            last = self._read_cache.last_known()
            if last is None:
                logger.error("Ranking store unreachable and no cached value: %s", exc)
                return RankingResult(entries=[], as_of=None, stale=True)
            age = int((now - last.stored_at).total_seconds())
            logger.warning("Ranking store unreachable, serving stale cache (age: %ds): %s", age, exc)
            return RankingResult(
                entries=last.payload[:k], as_of=last.as_of, cached=True, stale=True, cache_age=age
            )

        return RankingResult(entries=entry.payload[:k], as_of=entry.as_of)

    async def _fetch_and_cache(self, k: int) -> ReadCacheEntry:
        rows = await self._sorted_set.top_k(k)
        as_of = await self._sorted_set.synced_at()
        ranked = await self._join_profiles(rows)
        return self._read_cache.put(ranked, k, as_of, self._clock(), fetched=len(rows))

    async def _join_profiles(self, rows: list[tuple[str, float]]) -> list[RankedEntry]:
        """Attach profile names in sorted-set order, dropping owners whose profile is gone.

        If the profile store cannot be reached the rows are served without
        names rather than failing the read.
        """
        try:
            owners = await self._profiles.get_owners([owner_id for owner_id, _ in rows])
        except Exception as exc:
            logger.error("Profile lookup for %d ranked owners failed: %s", len(rows), exc)
            return [
                RankedEntry(owner_id=owner_id, score=score, rank=i)
                for i, (owner_id, score) in enumerate(rows, start=1)
            ]

        ranked: list[RankedEntry] = []
        for owner_id, score in rows:
            profile = owners.get(owner_id)
            if profile is None:
                logger.debug("Ranked owner %s has no profile, dropping", owner_id)
                continue
            ranked.append(
                RankedEntry(
                    owner_id=owner_id,
                    score=score,
                    rank=len(ranked) + 1,
                    display_name=profile.display_name,
                    updated_at=profile.max_connections_updated_at,
                )
            )
        if len(ranked) < len(rows):
            logger.info("Dropped %d ranked owners without a profile", len(rows) - len(ranked))
        return ranked
