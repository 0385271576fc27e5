"""
Per-tenant SQLite store for Productive reference data.

Mirrors projects, people, services, companies and deals so that resolving a
human-friendly name does not need an API round-trip. Storage failures never
reach the caller: the handle is marked degraded and every read behaves like a
cache miss.
"""

from __future__ import annotations

import asyncio
import difflib
import json
import logging
import re
import sqlite3
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

import aiosqlite

from .patterns import ENTITY_KINDS

logger = logging.getLogger(__name__)

T = TypeVar("T")

STORE_ERRORS = (sqlite3.Error, OSError, ValueError)

# Separates search fields inside search_key so exact field matches can be found with instr().
FIELD_SEPARATOR = "\x1f"

DEFAULT_SEARCH_LIMIT = 50
FUZZY_CANDIDATE_LIMIT = 500
FUZZY_MIN_SCORE = 0.6


def now_ms() -> int:
    return int(time.time() * 1000)


def _table(kind: str) -> str:
    if kind not in ENTITY_KINDS:
        raise ValueError(f"unknown entity kind: {kind!r}")
    return f"ref_{kind}"


def _reference_table_sql(kind: str) -> str:
    table = _table(kind)
    return f"""
    CREATE TABLE IF NOT EXISTS {table} (
        id TEXT PRIMARY KEY,
        label TEXT NOT NULL,
        label_key TEXT NOT NULL,
        search_fields TEXT NOT NULL DEFAULT '[]',
        search_key TEXT NOT NULL DEFAULT '',
        owner_id TEXT,
        data TEXT,
        synced_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_{table}_label ON {table}(label_key);
    CREATE INDEX IF NOT EXISTS idx_{table}_owner ON {table}(owner_id);
    """


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS ref_meta (
        kind TEXT PRIMARY KEY,
        max_synced_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS query_cache (
        key TEXT PRIMARY KEY,
        data TEXT NOT NULL,
        endpoint TEXT NOT NULL,
        params TEXT NOT NULL DEFAULT '{}',
        stale_at INTEGER NOT NULL,
        expires_at INTEGER NOT NULL,
        created_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_query_cache_expires ON query_cache(expires_at);
    CREATE INDEX IF NOT EXISTS idx_query_cache_endpoint ON query_cache(endpoint);

    CREATE TABLE IF NOT EXISTS refresh_queue (
        cache_key TEXT PRIMARY KEY,
        endpoint TEXT NOT NULL,
        params TEXT NOT NULL DEFAULT '{}',
        queued_at INTEGER NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_refresh_queue_queued ON refresh_queue(queued_at);
    """
    + "".join(_reference_table_sql(kind) for kind in ENTITY_KINDS)
)


def normalize_text(value: str | None) -> str:
    """Lowercase, strip, collapse whitespace."""
    if not value:
        return ""
    return re.sub(r"\s+", " ", value.strip().lower())


def _search_key(fields: Iterable[str]) -> str:
    keys = [normalize_text(f) for f in fields if f]
    if not keys:
        return ""
    return FIELD_SEPARATOR + FIELD_SEPARATOR.join(keys) + FIELD_SEPARATOR


def _tokenize(value: str) -> list[str]:
    return [token for token in re.findall(r"\w+", value.lower()) if len(token) > 1]


def _fuzzy_score(query: str, tokens: list[str], text: str) -> float:
    text_lower = normalize_text(text)
    if not text_lower:
        return 0.0
    overlap = 0.0
    if tokens:
        text_tokens = set(re.findall(r"\w+", text_lower))
        overlap = len(set(tokens) & text_tokens) / len(tokens)
    ratio = difflib.SequenceMatcher(None, normalize_text(query), text_lower).ratio()
    return max(overlap, ratio)


@dataclass
class EntityRecord:
    """A cached mirror of one remote entity."""

    id: str
    kind: str
    label: str
    search_fields: list[str] = field(default_factory=list)
    owner_id: str | None = None
    synced_at: int = 0
    data: dict[str, Any] | None = None

    def matches_exactly(self, query: str) -> bool:
        needle = normalize_text(query)
        if not needle:
            return False
        if normalize_text(self.label) == needle:
            return True
        return any(normalize_text(f) == needle for f in self.search_fields)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.kind,
            "label": self.label,
            "searchFields": list(self.search_fields),
            "ownerId": self.owner_id,
            "syncedAt": self.synced_at,
        }


@dataclass
class StoreHealth:
    """Health state for local store access."""

    degraded: bool = False
    reason: str | None = None
    failure_count: int = 0
    last_error: str | None = None
    last_error_at: float | None = None
    last_success_at: float | None = None


class StoreHandle:
    """
    One SQLite database for one tenant.

    The tenant is fixed at construction. The connection is opened lazily and
    shared by the reference store, the query cache and the refresh queue.
    """

    def __init__(self, tenant_id: str, db_path: str | Path):
        if not tenant_id:
            raise ValueError("tenant_id is required")
        self._tenant_id = tenant_id
        self._db_path = Path(db_path)
        self._conn: aiosqlite.Connection | None = None
        self._open_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._health = StoreHealth()

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _set_degraded(self, reason: str) -> None:
        self._health.degraded = True
        self._health.reason = reason
        self._health.failure_count += 1
        self._health.last_error = reason
        self._health.last_error_at = time.time()

    def _set_healthy(self) -> None:
        self._health.degraded = False
        self._health.reason = None
        self._health.failure_count = 0
        self._health.last_success_at = time.time()

    def is_degraded(self) -> bool:
        return self._health.degraded

    def get_health(self) -> dict[str, Any]:
        return {
            "tenant": self._tenant_id,
            "path": str(self._db_path),
            "open": self._conn is not None,
            "degraded": self._health.degraded,
            "reason": self._health.reason,
            "failureCount": self._health.failure_count,
            "lastError": self._health.last_error,
            "lastErrorAt": self._health.last_error_at,
            "lastSuccessAt": self._health.last_success_at,
        }

    def size_bytes(self) -> int:
        try:
            return self._db_path.stat().st_size
        except OSError:
            return 0

    async def connection(self) -> aiosqlite.Connection:
        if self._conn is not None:
            return self._conn
        async with self._open_lock:
            if self._conn is None:
                self._db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = await aiosqlite.connect(self._db_path)
                try:
                    conn.row_factory = aiosqlite.Row
                    await conn.executescript(SCHEMA)
                    await conn.commit()
                except BaseException:
                    await conn.close()
                    raise
                self._conn = conn
        return self._conn

    async def run(
        self,
        op: str,
        fn: Callable[[aiosqlite.Connection], Awaitable[T]],
        default: T,
        *,
        write: bool = False,
    ) -> T:
        """Run a store operation, degrading to `default` on storage errors."""
        try:
            conn = await self.connection()
            if write:
                async with self._write_lock:
                    result = await fn(conn)
            else:
                result = await fn(conn)
        except STORE_ERRORS as exc:
            logger.warning("Store %s failed for tenant %s: %s", op, self._tenant_id, exc)
            self._set_degraded(f"{op}: {exc}")
            return default
        self._set_healthy()
        return result

    async def close(self) -> None:
        async with self._open_lock:
            conn = self._conn
            self._conn = None
            if conn is not None:
                try:
                    await conn.close()
                except STORE_ERRORS as exc:
                    logger.warning("Store close failed for tenant %s: %s", self._tenant_id, exc)


def _row_to_record(kind: str, row: Any) -> EntityRecord:
    data = row["data"]
    return EntityRecord(
        id=row["id"],
        kind=kind,
        label=row["label"],
        search_fields=list(json.loads(row["search_fields"] or "[]")),
        owner_id=row["owner_id"],
        synced_at=row["synced_at"],
        data=json.loads(data) if data else None,
    )


_RECORD_COLUMNS = "id, label, search_fields, owner_id, data, synced_at"


class ReferenceStore:
    """Searchable mirror of entity records, one table per kind."""

    def __init__(self, handle: StoreHandle):
        self._handle = handle

    @property
    def handle(self) -> StoreHandle:
        return self._handle

    async def upsert(self, kind: str, records: Iterable[EntityRecord]) -> int:
        """
        Replace records by id as one transaction.

        Every record in the batch gets the same synced_at, which is never
        earlier than the newest synced_at already stored for the kind.
        Returns the number of records written (0 when the store is unavailable).
        """
        table = _table(kind)
        batch = list(records)
        if not batch:
            return 0

        async def _write(conn: aiosqlite.Connection) -> int:
            async with conn.execute(
                "SELECT max_synced_at FROM ref_meta WHERE kind = ?", (kind,)
            ) as cur:
                row = await cur.fetchone()
            synced_at = max(now_ms(), row[0] if row else 0)
            rows = [
                (
                    record.id,
                    record.label,
                    normalize_text(record.label),
                    json.dumps(list(record.search_fields)),
                    _search_key(record.search_fields),
                    record.owner_id,
                    json.dumps(record.data) if record.data is not None else None,
                    synced_at,
                )
                for record in batch
            ]
            try:
                await conn.executemany(
                    f"""
                    INSERT INTO {table}
                        (id, label, label_key, search_fields, search_key, owner_id, data, synced_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        label = excluded.label,
                        label_key = excluded.label_key,
                        search_fields = excluded.search_fields,
                        search_key = excluded.search_key,
                        owner_id = excluded.owner_id,
                        data = excluded.data,
                        synced_at = MAX({table}.synced_at, excluded.synced_at)
                    """,
                    rows,
                )
                await conn.execute(
                    """
                    INSERT INTO ref_meta (kind, max_synced_at) VALUES (?, ?)
                    ON CONFLICT(kind) DO UPDATE SET
                        max_synced_at = MAX(max_synced_at, excluded.max_synced_at)
                    """,
                    (kind, synced_at),
                )
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise
            for record in batch:
                record.synced_at = synced_at
            return len(rows)

        return await self._handle.run(f"upsert {kind}", _write, 0, write=True)

    async def search(
        self,
        kind: str,
        query: str,
        owner_id: str | None = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> list[EntityRecord]:
        """
        Case-insensitive search on label and search fields.

        Exact matches come first, then substring matches; within each group
        the most recently synced records lead, then insertion order.
        """
        table = _table(kind)
        needle = normalize_text(query)
        if not needle or limit <= 0:
            return []

        sql = f"""
            SELECT {_RECORD_COLUMNS},
                   (label_key = ? OR instr(search_key, ?) > 0) AS exact
            FROM {table}
            WHERE (instr(label_key, ?) > 0 OR instr(search_key, ?) > 0)
        """
        params: list[Any] = [
            needle,
            FIELD_SEPARATOR + needle + FIELD_SEPARATOR,
            needle,
            needle,
        ]
        if owner_id is not None:
            sql += " AND owner_id = ?"
            params.append(owner_id)
        sql += " ORDER BY exact DESC, synced_at DESC, rowid ASC LIMIT ?"
        params.append(limit)

        async def _read(conn: aiosqlite.Connection) -> list[EntityRecord]:
            async with conn.execute(sql, params) as cur:
                rows = await cur.fetchall()
            return [_row_to_record(kind, row) for row in rows]

        return await self._handle.run(f"search {kind}", _read, [])

    async def search_fuzzy(
        self,
        kind: str,
        query: str,
        owner_id: str | None = None,
        limit: int = 5,
    ) -> list[EntityRecord]:
        """Relaxed match used for "did you mean" suggestions."""
        table = _table(kind)
        if not normalize_text(query) or limit <= 0:
            return []
        tokens = _tokenize(query)

        sql = f"SELECT {_RECORD_COLUMNS} FROM {table}"
        params: list[Any] = []
        if owner_id is not None:
            sql += " WHERE owner_id = ?"
            params.append(owner_id)
        sql += " ORDER BY synced_at DESC, rowid ASC LIMIT ?"
        params.append(max(FUZZY_CANDIDATE_LIMIT, limit * 10))

        async def _read(conn: aiosqlite.Connection) -> list[EntityRecord]:
            async with conn.execute(sql, params) as cur:
                rows = await cur.fetchall()
            return [_row_to_record(kind, row) for row in rows]

        candidates = await self._handle.run(f"fuzzy search {kind}", _read, [])
        scored: list[tuple[float, EntityRecord]] = []
        for record in candidates:
            texts = [record.label, *record.search_fields]
            score = max(_fuzzy_score(query, tokens, text) for text in texts)
            if score >= FUZZY_MIN_SCORE:
                scored.append((score, record))
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [record for _, record in scored[:limit]]

    async def get(self, kind: str, record_id: str) -> EntityRecord | None:
        table = _table(kind)

        async def _read(conn: aiosqlite.Connection) -> EntityRecord | None:
            async with conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM {table} WHERE id = ?", (record_id,)
            ) as cur:
                row = await cur.fetchone()
            return _row_to_record(kind, row) if row else None

        return await self._handle.run(f"get {kind}", _read, None)

    async def last_synced_at(self, kind: str) -> int | None:
        _table(kind)

        async def _read(conn: aiosqlite.Connection) -> int | None:
            async with conn.execute(
                "SELECT max_synced_at FROM ref_meta WHERE kind = ?", (kind,)
            ) as cur:
                row = await cur.fetchone()
            return row[0] if row else None

        return await self._handle.run(f"sync time {kind}", _read, None)

    async def is_fresh(self, kind: str, max_age_ms: int) -> bool:
        synced_at = await self.last_synced_at(kind)
        if synced_at is None:
            return False
        return now_ms() - synced_at <= max_age_ms

    async def count(self, kind: str) -> int:
        table = _table(kind)

        async def _read(conn: aiosqlite.Connection) -> int:
            async with conn.execute(f"SELECT COUNT(*) FROM {table}") as cur:
                row = await cur.fetchone()
            return row[0] if row else 0

        return await self._handle.run(f"count {kind}", _read, 0)

    async def clear(self, kind: str | None = None) -> None:
        kinds = [kind] if kind is not None else list(ENTITY_KINDS)
        tables = [_table(k) for k in kinds]

        async def _write(conn: aiosqlite.Connection) -> None:
            try:
                for k, table in zip(kinds, tables):
                    await conn.execute(f"DELETE FROM {table}")
                    await conn.execute("DELETE FROM ref_meta WHERE kind = ?", (k,))
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise

        await self._handle.run("clear", _write, None, write=True)

    async def stats(self) -> dict[str, Any]:
        counts: dict[str, int] = {}
        synced: dict[str, int | None] = {}
        for kind in ENTITY_KINDS:
            counts[kind] = await self.count(kind)
            synced[kind] = await self.last_synced_at(kind)
        return {"counts": counts, "lastSyncedAt": synced}

