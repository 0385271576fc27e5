"""
Background refresh queue for stale query-cache entries.

Jobs are queued when a cached API response is served past its stale
threshold and are drained later by a maintenance call, never inline with a
resolve. A job is removed after one attempt whatever the outcome.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import aiosqlite

from .store import StoreHandle, now_ms

if TYPE_CHECKING:
    from .query_cache import QueryCache

logger = logging.getLogger(__name__)

DEFAULT_DRAIN_MAX_JOBS = 10


class Fetcher(Protocol):
    async def fetch(self, endpoint: str, params: dict[str, Any]) -> Any: ...


@dataclass
class RefreshJob:
    cache_key: str
    endpoint: str
    params: dict[str, Any]
    queued_at: int

    def to_dict(self, now: int | None = None) -> dict[str, Any]:
        current = now if now is not None else now_ms()
        return {
            "cacheKey": self.cache_key,
            "endpoint": self.endpoint,
            "params": self.params,
            "queuedAt": self.queued_at,
            "ageSeconds": max(0, round((current - self.queued_at) / 1000)),
        }


@dataclass
class DrainResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class RefreshQueue:
    """Persisted FIFO of cache keys waiting for a refresh, at most one job per key."""

    def __init__(self, handle: StoreHandle):
        self._handle = handle

    async def enqueue(self, cache_key: str, endpoint: str, params: dict[str, Any]) -> None:
        payload = json.dumps(params, sort_keys=True, default=str)
        queued_at = now_ms()

        async def _write(conn: aiosqlite.Connection) -> None:
            await conn.execute(
                """
                INSERT INTO refresh_queue (cache_key, endpoint, params, queued_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    endpoint = excluded.endpoint,
                    params = excluded.params,
                    queued_at = excluded.queued_at
                """,
                (cache_key, endpoint, payload, queued_at),
            )
            await conn.commit()

        await self._handle.run("enqueue refresh", _write, None, write=True)

    async def dequeue(self, cache_key: str) -> None:
        async def _write(conn: aiosqlite.Connection) -> None:
            await conn.execute("DELETE FROM refresh_queue WHERE cache_key = ?", (cache_key,))
            await conn.commit()

        await self._handle.run("dequeue refresh", _write, None, write=True)

    async def pending(self) -> list[RefreshJob]:
        async def _read(conn: aiosqlite.Connection) -> list[RefreshJob]:
            async with conn.execute(
                """
                SELECT cache_key, endpoint, params, queued_at
                FROM refresh_queue
                ORDER BY queued_at ASC, rowid ASC
                """
            ) as cur:
                rows = await cur.fetchall()
            return [
                RefreshJob(
                    cache_key=row["cache_key"],
                    endpoint=row["endpoint"],
                    params=json.loads(row["params"] or "{}"),
                    queued_at=row["queued_at"],
                )
                for row in rows
            ]

        return await self._handle.run("list refresh jobs", _read, [])

    async def count(self) -> int:
        async def _read(conn: aiosqlite.Connection) -> int:
            async with conn.execute("SELECT COUNT(*) FROM refresh_queue") as cur:
                row = await cur.fetchone()
            return row[0] if row else 0

        return await self._handle.run("count refresh jobs", _read, 0)

    async def clear(self) -> int:
        async def _write(conn: aiosqlite.Connection) -> int:
            cur = await conn.execute("DELETE FROM refresh_queue")
            removed = cur.rowcount
            await cur.close()
            await conn.commit()
            return max(removed, 0)

        return await self._handle.run("clear refresh queue", _write, 0, write=True)

    async def drain(
        self,
        remote: Fetcher,
        cache: QueryCache,
        max_jobs: int = DEFAULT_DRAIN_MAX_JOBS,
    ) -> DrainResult:
        """
        Refresh up to `max_jobs` queued entries in FIFO order.

        Successful responses are written back to `cache`; a response the
        cache cannot store counts as failed. Failed jobs are logged and
        dropped; remaining jobs stay queued and count as skipped.
        """
        result = DrainResult()
        jobs = await self.pending()
        if not jobs:
            return result

        limit = max(max_jobs, 0)
        for job in jobs[:limit]:
            result.processed += 1
            try:
                data = await remote.fetch(job.endpoint, job.params)
                if await cache.set(job.endpoint, job.params, data):
                    result.succeeded += 1
                else:
                    result.failed += 1
                    logger.warning(
                        "Dropping refresh job %s for %s: local store unavailable",
                        job.cache_key,
                        job.endpoint,
                    )
            except Exception as exc:
                result.failed += 1
                logger.warning(
                    "Dropping refresh job %s for %s (%s): %s",
                    job.cache_key,
                    job.endpoint,
                    exc.__class__.__name__,
                    exc,
                )
            finally:
                await self.dequeue(job.cache_key)

        result.skipped = max(0, len(jobs) - limit)
        if result.processed:
            logger.info(
                "Refresh queue drained for tenant %s: %s",
                self._handle.tenant_id,
                result.to_dict(),
            )
        return result
