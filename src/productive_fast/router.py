"""
Cache routing for one Productive tenant: resolution, cached reads and maintenance.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from .patterns import ENTITY_KINDS, detect, is_numeric_id
from .query_cache import QueryCache
from .refresh_queue import DEFAULT_DRAIN_MAX_JOBS, RefreshQueue
from .remote import ProductiveApi, RemoteApiError
from .resolver import DEFAULT_REFERENCE_TTL_SECONDS, ResolveError, Resolver
from .store import ReferenceStore, StoreHandle

logger = logging.getLogger(__name__)


def _check_kind(kind: str | None) -> None:
    if kind is not None and kind not in ENTITY_KINDS:
        raise ValueError(f"unknown type {kind!r}, expected one of {', '.join(ENTITY_KINDS)}")


def _remote_error(exc: RemoteApiError) -> dict[str, Any]:
    return {"error": True, "code": exc.code, "message": exc.message, "status": exc.status}


class CacheRouter:
    """Routes reads between the tenant's local caches and the Productive API."""

    def __init__(
        self,
        handle: StoreHandle,
        remote: ProductiveApi,
        reference_ttl_seconds: int | None = None,
        drain_max_jobs: int | None = None,
        default_kinds: Sequence[str] = (),
    ):
        self._handle = handle
        self._remote = remote
        self._reference_ttl_seconds = reference_ttl_seconds or DEFAULT_REFERENCE_TTL_SECONDS
        self._drain_max_jobs = drain_max_jobs or int(
            os.getenv("PRODUCTIVE_FAST_DRAIN_MAX_JOBS", str(DEFAULT_DRAIN_MAX_JOBS))
        )
        self._store = ReferenceStore(handle)
        self._queue = RefreshQueue(handle)
        self._cache = QueryCache(handle, self._queue)
        self._resolver = Resolver(
            self._store,
            remote,
            reference_ttl_seconds=self._reference_ttl_seconds,
            default_kinds=default_kinds,
        )

    @property
    def resolver(self) -> Resolver:
        return self._resolver

    @property
    def store(self) -> ReferenceStore:
        return self._store

    @property
    def query_cache(self) -> QueryCache:
        return self._cache

    @property
    def refresh_queue(self) -> RefreshQueue:
        return self._queue

    async def resolve(
        self,
        query: str,
        kind: str | None = None,
        owner_id: str | None = None,
        prefer_first: bool = False,
    ) -> dict[str, Any]:
        _check_kind(kind)
        try:
            candidates = await self._resolver.resolve(query, kind, owner_id, prefer_first)
        except ResolveError as exc:
            return exc.to_dict()
        return {
            "query": query,
            "matches": [c.to_dict() for c in candidates],
            "exact": bool(candidates) and candidates[0].exact,
        }

    def detect(self, query: str) -> dict[str, Any]:
        detection = detect(query)
        return {
            "query": query,
            "isNumericId": is_numeric_id(query.strip()),
            "detection": detection.to_dict() if detection else None,
        }

    async def resolve_filters(
        self, filters: Mapping[str, Any], project_id: str | None = None
    ) -> dict[str, Any]:
        return await self._resolver.resolve_filters(filters, project_id=project_id)

    async def cached_get(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        refresh: bool = False,
        no_cache: bool = False,
    ) -> dict[str, Any]:
        """
        GET through the query cache.

        A stale hit is served and queued for refresh. `refresh` skips the read
        but stores the fresh response; `no_cache` bypasses the cache entirely.
        """
        query = dict(params or {})
        if not no_cache and not refresh:
            hit = await self._cache.get_with_meta(endpoint, query)
            if hit is not None:
                data, is_stale = hit
                if is_stale:
                    await self._queue.enqueue(self._cache.key_for(endpoint, query), endpoint, query)
                return {"data": data, "cached": True, "stale": is_stale}

        try:
            data = await self._remote.fetch(endpoint, query)
        except RemoteApiError as exc:
            return _remote_error(exc)
        if not no_cache:
            await self._cache.set(endpoint, query, data)
        return {"data": data, "cached": False, "stale": False}

    async def drain_refresh_queue(self, max_jobs: int | None = None) -> dict[str, Any]:
        result = await self._queue.drain(
            self._remote,
            self._cache,
            max_jobs if max_jobs is not None else self._drain_max_jobs,
        )
        return {**result.to_dict(), "remaining": await self._queue.count()}

    async def list_refresh_jobs(self) -> list[dict[str, Any]]:
        return [job.to_dict() for job in await self._queue.pending()]

    async def clear_refresh_queue(self) -> dict[str, int]:
        return {"removed": await self._queue.clear()}

    async def sync_reference_data(self, kinds: Iterable[str] | None = None) -> dict[str, Any]:
        """Mirror every record of the given kinds (default: all) into the store."""
        selected = list(kinds) if kinds else list(ENTITY_KINDS)
        for kind in selected:
            _check_kind(kind)

        synced: dict[str, int] = {}
        errors: dict[str, dict[str, Any]] = {}
        for kind in selected:
            try:
                records = await self._remote.list_all(kind)
            except RemoteApiError as exc:
                errors[kind] = _remote_error(exc)
                continue
            synced[kind] = await self._store.upsert(kind, records)
        logger.info("Reference sync for tenant %s: %s", self._handle.tenant_id, synced)
        return {"synced": synced, "errors": errors}

    async def clear_cache(
        self, kind: str | None = None, endpoint_pattern: str | None = None
    ) -> dict[str, Any]:
        """
        Clear cached data.

        With `kind`, only that reference table is cleared; with
        `endpoint_pattern`, only matching query-cache entries. With neither,
        every reference table, the query cache and the refresh queue are wiped.
        """
        _check_kind(kind)
        cleared: list[str] = []
        queries_removed = 0
        jobs_removed = 0

        if kind is not None:
            await self._store.clear(kind)
            cleared.append(kind)
        if endpoint_pattern:
            queries_removed = await self._cache.invalidate(endpoint_pattern)
        if kind is None and not endpoint_pattern:
            await self._store.clear()
            cleared.extend(ENTITY_KINDS)
            queries_removed = await self._cache.invalidate()
            jobs_removed = await self._queue.clear()

        return {
            "referenceCleared": cleared,
            "queryEntriesRemoved": queries_removed,
            "refreshJobsRemoved": jobs_removed,
        }

    async def cache_stats(self) -> dict[str, Any]:
        await self._cache.cleanup()
        return {
            "tenant": self._handle.tenant_id,
            "reference": await self._store.stats(),
            "queryCache": await self._cache.stats(),
            "refreshQueue": {"pending": await self._queue.count()},
            "database": {
                "path": str(self._handle.db_path),
                "sizeBytes": self._handle.size_bytes(),
            },
            "referenceTtlSeconds": self._reference_ttl_seconds,
            "degraded": self._handle.is_degraded(),
        }

    def get_health(self) -> dict[str, Any]:
        return {
            "store": self._handle.get_health(),
            "remote": self._remote.get_health(),
            "referenceTtlSeconds": self._reference_ttl_seconds,
            "drainMaxJobs": self._drain_max_jobs,
        }

    async def aclose(self) -> None:
        await self._resolver.wait_idle()
