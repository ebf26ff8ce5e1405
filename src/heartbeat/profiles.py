"""Read-only boundary to the durable profile / follow-graph store.

The store's own CRUD lives elsewhere; this module only reads owners,
followers and the ranking metric.  ``PostgresProfileStore`` queries the
``users`` and ``followers`` tables through the shared asyncpg pool.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from src.heartbeat.models import FollowerSubscription, OwnerProfile, RankingEntry

logger = logging.getLogger("pulsecast.heartbeat.profiles")


class ProfileStore(ABC):
    @abstractmethod
    async def get_owner(self, owner_id: str) -> OwnerProfile | None:
        """Return the owner's profile, or None if it does not exist."""

    @abstractmethod
    async def get_owners(self, owner_ids: list[str]) -> dict[str, OwnerProfile]:
        """Return the profiles that exist among ``owner_ids``, keyed by id."""

    @abstractmethod
    async def list_followers(self, owner_id: str) -> list[FollowerSubscription]:
        """Return every follower subscription under ``owner_id``."""

    @abstractmethod
    async def list_ranking_entries(self) -> list[RankingEntry]:
        """Return every owner's ranking metric (full-collection scan)."""


class InMemoryProfileStore(ProfileStore):
    """Dictionary-backed profile store for development and tests."""

    def __init__(self) -> None:
        self.owners: dict[str, OwnerProfile] = {}
        self.followers: dict[str, list[FollowerSubscription]] = {}

    def add_owner(self, profile: OwnerProfile) -> None:
        self.owners[profile.owner_id] = profile

    def add_follower(self, subscription: FollowerSubscription) -> None:
        self.followers.setdefault(subscription.owner_id, []).append(subscription)

    async def get_owner(self, owner_id: str) -> OwnerProfile | None:
        return self.owners.get(owner_id)

    async def get_owners(self, owner_ids: list[str]) -> dict[str, OwnerProfile]:
        return {i: self.owners[i] for i in owner_ids if i in self.owners}

    async def list_followers(self, owner_id: str) -> list[FollowerSubscription]:
        return list(self.followers.get(owner_id, []))

    async def list_ranking_entries(self) -> list[RankingEntry]:
        return [
            RankingEntry(
                owner_id=p.owner_id,
                score=float(p.max_connections),
                updated_at=p.max_connections_updated_at,
            )
            for p in self.owners.values()
        ]


class PostgresProfileStore(ProfileStore):
    """Profile store backed by Postgres via ``src.services.database``."""

    async def get_owner(self, owner_id: str) -> OwnerProfile | None:
        from src.services.database import fetchrow

        row = await fetchrow(
            """
            SELECT user_id, name, max_connections, max_connections_updated_at
            FROM users WHERE user_id = $1
            """,
            owner_id,
        )
        if row is None:
            return None
        return _owner_from_row(dict(row))

    async def get_owners(self, owner_ids: list[str]) -> dict[str, OwnerProfile]:
        from src.services.database import fetch

        if not owner_ids:
            return {}
        rows = await fetch(
            """
            SELECT user_id, name, max_connections, max_connections_updated_at
            FROM users WHERE user_id = ANY($1::text[])
            """,
            owner_ids,
        )
        owners = [_owner_from_row(dict(r)) for r in rows]
        return {o.owner_id: o for o in owners}

    async def list_followers(self, owner_id: str) -> list[FollowerSubscription]:
        from src.services.database import fetch

        rows = await fetch(
            """
            SELECT follower_id, owner_id, fcm_token, notification_enabled
            FROM followers WHERE owner_id = $1
            """,
            owner_id,
        )
        return [
            FollowerSubscription(
                follower_id=r["follower_id"],
                owner_id=r["owner_id"],
                push_token=r["fcm_token"],
                notification_enabled=bool(r["notification_enabled"]),
            )
            for r in rows
        ]

    async def list_ranking_entries(self) -> list[RankingEntry]:
        from src.services.database import fetch

        rows = await fetch(
            "SELECT user_id, max_connections, max_connections_updated_at FROM users"
        )
        logger.info("Profile scan returned %d users", len(rows))
        return [
            RankingEntry(
                owner_id=r["user_id"],
                score=float(r["max_connections"] or 0),
                updated_at=r["max_connections_updated_at"],
            )
            for r in rows
        ]


def _owner_from_row(row: dict[str, Any]) -> OwnerProfile:
    return OwnerProfile(
        owner_id=row["user_id"],
        display_name=row.get("name") or "Unknown User",
        max_connections=int(row.get("max_connections") or 0),
        max_connections_updated_at=row.get("max_connections_updated_at"),
    )
