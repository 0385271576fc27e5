"""
Stale-while-revalidate cache for raw API GET responses.

Entries are served until they expire. Once past 75% of their TTL they are
still served, but their key is queued on the refresh queue so the next
maintenance drain re-fetches them.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

import aiosqlite

from .refresh_queue import RefreshQueue
from .store import StoreHandle, now_ms

logger = logging.getLogger(__name__)

STALE_THRESHOLD = 0.75
DEFAULT_TTL_SECONDS = 300

# Checked in order, first prefix match wins.
DEFAULT_TTLS: dict[str, int] = {
    "/projects": 3600,
    "/people": 3600,
    "/services": 3600,
    "/companies": 3600,
    "/deals": 900,
    "/time_entries": 300,
    "/tasks": 900,
    "/budgets": 900,
}


def ttl_for(endpoint: str) -> int:
    for prefix, ttl in DEFAULT_TTLS.items():
        if endpoint.startswith(prefix):
            return ttl
    return DEFAULT_TTL_SECONDS


class QueryCache:
    """Key/value cache of API responses scoped to one tenant handle."""

    def __init__(self, handle: StoreHandle, queue: RefreshQueue):
        self._handle = handle
        self._queue = queue

    def key_for(self, endpoint: str, params: dict[str, Any]) -> str:
        normalized = json.dumps(
            {"endpoint": endpoint, "orgId": self._handle.tenant_id, "params": params},
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]

    async def get_with_meta(
        self, endpoint: str, params: dict[str, Any]
    ) -> tuple[Any, bool] | None:
        """Return (data, is_stale) for a live entry, without queueing anything."""
        key = self.key_for(endpoint, params)
        now = now_ms()

        async def _read(conn: aiosqlite.Connection) -> tuple[Any, bool] | None:
            async with conn.execute(
                "SELECT data, stale_at FROM query_cache WHERE key = ? AND expires_at > ?",
                (key, now),
            ) as cur:
                row = await cur.fetchone()
            if row is None:
                return None
            return json.loads(row["data"]), now >= row["stale_at"]

        return await self._handle.run("query cache get", _read, None)

    async def get(self, endpoint: str, params: dict[str, Any]) -> Any | None:
        """Return cached data or None; a stale hit is queued for refresh."""
        hit = await self.get_with_meta(endpoint, params)
        if hit is None:
            return None
        data, is_stale = hit
        if is_stale:
            await self._queue.enqueue(self.key_for(endpoint, params), endpoint, params)
        return data

    async def set(
        self,
        endpoint: str,
        params: dict[str, Any],
        data: Any,
        ttl_seconds: int | None = None,
    ) -> bool:
        """Store a response; returns False when the store is unavailable."""
        key = self.key_for(endpoint, params)
        ttl_ms = (ttl_seconds if ttl_seconds is not None else ttl_for(endpoint)) * 1000
        now = now_ms()
        row = (
            key,
            json.dumps(data, default=str),
            endpoint,
            json.dumps(params, sort_keys=True, default=str),
            now + int(ttl_ms * STALE_THRESHOLD),
            now + ttl_ms,
            now,
        )

        async def _write(conn: aiosqlite.Connection) -> bool:
            await conn.execute(
                """
                INSERT OR REPLACE INTO query_cache
                    (key, data, endpoint, params, stale_at, expires_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                row,
            )
            await conn.commit()
            return True

        stored = await self._handle.run("query cache set", _write, False, write=True)
        if stored:
            await self._queue.dequeue(key)
        return stored

    async def invalidate(self, endpoint_pattern: str | None = None) -> int:
        """Delete entries whose endpoint contains the pattern, or all entries."""

        async def _write(conn: aiosqlite.Connection) -> int:
            if endpoint_pattern:
                cur = await conn.execute(
                    "DELETE FROM query_cache WHERE instr(endpoint, ?) > 0",
                    (endpoint_pattern,),
                )
            else:
                cur = await conn.execute("DELETE FROM query_cache")
            removed = cur.rowcount
            await cur.close()
            await conn.commit()
            return max(removed, 0)

        return await self._handle.run("query cache invalidate", _write, 0, write=True)

    async def cleanup(self) -> int:
        """Remove expired entries."""
        now = now_ms()

        async def _write(conn: aiosqlite.Connection) -> int:
            cur = await conn.execute("DELETE FROM query_cache WHERE expires_at <= ?", (now,))
            removed = cur.rowcount
            await cur.close()
            await conn.commit()
            return max(removed, 0)

        return await self._handle.run("query cache cleanup", _write, 0, write=True)

    async def stats(self) -> dict[str, int]:
        now = now_ms()

        async def _read(conn: aiosqlite.Connection) -> dict[str, int]:
            async with conn.execute(
                """
                SELECT COUNT(*) AS entries,
                       COALESCE(SUM(LENGTH(data)), 0) AS size,
                       MIN(created_at) AS oldest
                FROM query_cache WHERE expires_at > ?
                """,
                (now,),
            ) as cur:
                row = await cur.fetchone()
            oldest = row["oldest"] if row else None
            return {
                "entries": row["entries"] if row else 0,
                "sizeBytes": row["size"] if row else 0,
                "oldestAgeSeconds": round((now - oldest) / 1000) if oldest else 0,
            }

        return await self._handle.run(
            "query cache stats",
            _read,
            {"entries": 0, "sizeBytes": 0, "oldestAgeSeconds": 0},
        )
