"""
Resolve human-friendly identifiers into Productive numeric IDs.

Lookups go to the local reference store while it is fresh and fall through
to the remote search endpoint otherwise, or when the store has no exact hit.
Remote results are written back to the store in the background, so a failed
warm-up never fails a resolve.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from .patterns import (
    DEAL,
    PROJECT,
    SERVICE,
    detect,
    is_deal_number,
    is_numeric_id,
    is_project_number,
    normalize_deal_number,
    normalize_project_number,
)
from .remote import RemoteApiError
from .store import EntityRecord, ReferenceStore

logger = logging.getLogger(__name__)

DEFAULT_REFERENCE_TTL_SECONDS = int(os.getenv("PRODUCTIVE_FAST_REFERENCE_TTL_SECONDS", "3600"))
DEFAULT_SUGGESTION_LIMIT = 5

FILTER_TYPE_MAPPING: dict[str, str] = {
    "person_id": "person",
    "assignee_id": "person",
    "creator_id": "person",
    "responsible_id": "person",
    "project_id": "project",
    "company_id": "company",
    "deal_id": "deal",
    "service_id": "service",
}


class RemoteSearch(Protocol):
    async def search(
        self, kind: str, query: str, owner_id: str | None = None
    ) -> list[EntityRecord]: ...


@dataclass(frozen=True)
class ResolutionCandidate:
    id: str
    kind: str | None
    label: str
    query: str
    exact: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.kind,
            "label": self.label,
            "query": self.query,
            "exact": self.exact,
        }


class ResolveError(Exception):
    """Base class for resolution failures surfaced to callers."""

    code = "resolve_error"

    def __init__(
        self,
        message: str,
        query: str,
        expected_kind: str | None = None,
        suggestions: Sequence[EntityRecord] = (),
    ):
        super().__init__(message)
        self.message = message
        self.query = query
        self.expected_kind = expected_kind
        self.suggestions = list(suggestions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "query": self.query,
            "type": self.expected_kind,
            "suggestions": [
                {"id": s.id, "type": s.kind, "label": s.label} for s in self.suggestions
            ],
        }


class NoKindDetected(ResolveError):
    code = "no_kind_detected"


class NoMatch(ResolveError):
    code = "no_match"


class Ambiguous(ResolveError):
    code = "ambiguous"

    def __init__(
        self,
        message: str,
        query: str,
        expected_kind: str | None,
        candidates: Sequence[ResolutionCandidate],
    ):
        super().__init__(message, query, expected_kind)
        self.candidates = list(candidates)

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["candidates"] = [c.to_dict() for c in self.candidates]
        return payload


class CollaboratorUnavailable(ResolveError):
    code = "collaborator_unavailable"

    def __init__(
        self,
        message: str,
        query: str,
        expected_kind: str | None,
        remote_code: str,
    ):
        super().__init__(message, query, expected_kind)
        self.remote_code = remote_code

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["remoteCode"] = self.remote_code
        return payload


def _query_variants(kind: str, value: str) -> list[str]:
    """Forms of the query to try, most specific first."""
    if kind == PROJECT and is_project_number(value):
        normalized = normalize_project_number(value)
    elif kind == DEAL and is_deal_number(value):
        normalized = normalize_deal_number(value)
    else:
        return [value]
    return [normalized, value] if normalized != value else [value]


class Resolver:
    """Turns a query into ordered resolution candidates for one tenant."""

    def __init__(
        self,
        store: ReferenceStore,
        remote: RemoteSearch,
        reference_ttl_seconds: int = DEFAULT_REFERENCE_TTL_SECONDS,
        default_kinds: Sequence[str] = (),
        suggestion_limit: int = DEFAULT_SUGGESTION_LIMIT,
    ):
        self._store = store
        self._remote = remote
        self._reference_ttl_ms = reference_ttl_seconds * 1000
        self._default_kinds = tuple(default_kinds)
        self._suggestion_limit = suggestion_limit
        self._warm_tasks: set[asyncio.Task[int]] = set()

    @property
    def store(self) -> ReferenceStore:
        return self._store

    def _kinds_for(self, value: str, expected_kind: str | None) -> tuple[str, ...]:
        if expected_kind:
            return (expected_kind,)
        detection = detect(value)
        if detection is not None:
            return (detection.kind,)
        return self._default_kinds

    def _warm(self, kind: str, records: list[EntityRecord]) -> None:
        task = asyncio.create_task(self._store.upsert(kind, records))
        self._warm_tasks.add(task)
        task.add_done_callback(self._on_warm_done)

    def _on_warm_done(self, task: asyncio.Task[int]) -> None:
        self._warm_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Reference cache warm-up failed (%s): %s", exc.__class__.__name__, exc)

    async def wait_idle(self) -> None:
        """Wait for background cache warm-ups started by earlier resolves."""
        while self._warm_tasks:
            await asyncio.gather(*list(self._warm_tasks), return_exceptions=True)

    async def _search(
        self, kind: str, variants: list[str], owner_id: str | None, query: str
    ) -> list[EntityRecord]:
        # Warm-ups from single searches keep a kind fresh without mirroring all
        # of it, so only an exact local hit can skip the remote.
        local: list[EntityRecord] = []
        if await self._store.is_fresh(kind, self._reference_ttl_ms):
            for variant in variants:
                local = await self._store.search(kind, variant, owner_id)
                if local:
                    break
            if any(r.matches_exactly(v) for r in local for v in variants):
                return local

        try:
            records = await self._remote.search(kind, variants[-1], owner_id)
        except RemoteApiError as exc:
            raise CollaboratorUnavailable(
                f"Productive API unavailable while resolving '{query}': {exc.message}",
                query,
                kind,
                exc.code,
            ) from exc
        if not records:
            return local
        self._warm(kind, records)
        return records

    async def resolve(
        self,
        query: str,
        expected_kind: str | None = None,
        owner_id: str | None = None,
        prefer_first: bool = False,
    ) -> list[ResolutionCandidate]:
        """
        Resolve a query into candidates, exact matches first.

        A bare integer is returned as-is without any lookup. Several candidates
        are not an error; callers wanting one value take the first or use
        `resolve_value`. Raises a `ResolveError` subclass when nothing matches.
        """
        value = query.strip()
        if not value:
            raise ValueError("query must not be empty")

        if is_numeric_id(value):
            return [ResolutionCandidate(value, expected_kind, value, query, True)]

        kinds = self._kinds_for(value, expected_kind)
        if not kinds:
            raise NoKindDetected(
                f"Cannot detect what '{query}' refers to; specify a type explicitly",
                query,
            )

        candidates: list[ResolutionCandidate] = []
        for kind in kinds:
            variants = _query_variants(kind, value)
            for record in await self._search(kind, variants, owner_id, query):
                exact = any(record.matches_exactly(v) for v in variants)
                candidates.append(ResolutionCandidate(record.id, kind, record.label, query, exact))

        if not candidates:
            suggestions: list[EntityRecord] = []
            for kind in kinds:
                suggestions.extend(
                    await self._store.search_fuzzy(kind, value, owner_id, self._suggestion_limit)
                )
            raise NoMatch(
                f"No {'/'.join(kinds)} found matching '{query}'",
                query,
                expected_kind or (kinds[0] if len(kinds) == 1 else None),
                suggestions[: self._suggestion_limit],
            )

        # sorted() is stable, so store/remote order is kept within each group.
        candidates = sorted(candidates, key=lambda c: not c.exact)
        if prefer_first:
            return candidates[:1]
        return candidates

    async def resolve_value(
        self,
        query: str,
        expected_kind: str | None = None,
        owner_id: str | None = None,
        prefer_first: bool = False,
    ) -> ResolutionCandidate:
        """Resolve to a single candidate, raising `Ambiguous` when it cannot pick one."""
        candidates = await self.resolve(query, expected_kind, owner_id, prefer_first)
        if len(candidates) == 1:
            return candidates[0]
        exact = [c for c in candidates if c.exact]
        if len(exact) == 1:
            return exact[0]
        raise Ambiguous(
            f"'{query}' matches {len(exact) or len(candidates)} records",
            query,
            expected_kind,
            exact or candidates,
        )

    async def resolve_filters(
        self,
        filters: Mapping[str, Any],
        type_mapping: Mapping[str, str] = FILTER_TYPE_MAPPING,
        project_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Resolve the ID-typed values of an API filter map concurrently.

        Keys absent from `type_mapping`, numeric values and values that fail to
        resolve are passed through unchanged. `metadata` records what each
        resolved key came from; `reusable` is true for exact matches.
        """
        resolved: dict[str, Any] = dict(filters)
        metadata: dict[str, dict[str, Any]] = {}

        pending: list[tuple[str, str, str]] = []
        for key, value in filters.items():
            kind = type_mapping.get(key)
            if kind is None or not isinstance(value, str) or not value.strip():
                continue
            if is_numeric_id(value.strip()):
                continue
            pending.append((key, value, kind))

        async def _one(value: str, kind: str) -> list[ResolutionCandidate]:
            owner_id = project_id if kind == SERVICE else None
            return await self.resolve(value, kind, owner_id, prefer_first=True)

        results = await asyncio.gather(
            *(_one(value, kind) for _, value, kind in pending), return_exceptions=True
        )
        for (key, value, _), result in zip(pending, results):
            if isinstance(result, ResolveError):
                logger.info("Filter %s=%r left unresolved: %s", key, value, result.message)
                continue
            if isinstance(result, BaseException):
                raise result
            best = result[0]
            resolved[key] = best.id
            metadata[key] = {
                "input": value,
                "id": best.id,
                "label": best.label,
                "reusable": best.exact,
            }

        return {"resolved": resolved, "metadata": metadata}
