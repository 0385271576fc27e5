"""
MCP server exposing Productive identifier resolution and the local reference cache.
"""

import logging
import os
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from mcp.server.fastmcp import Context, FastMCP

from .registry import StoreRegistry
from .remote import ProductiveApi
from .router import CacheRouter

logger = logging.getLogger(__name__)

DEFAULT_TENANT = "default"


@dataclass
class AppContext:
    registry: StoreRegistry
    remote: ProductiveApi
    router: CacheRouter


def _drain_on_start() -> bool:
    return os.getenv("PRODUCTIVE_FAST_DRAIN_ON_START", "1").lower() not in ("0", "false", "no", "")


@asynccontextmanager
async def _lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the tenant store and drain leftover refresh jobs from the last run."""
    registry = StoreRegistry()
    remote = ProductiveApi()
    tenant_id = remote.organization_id or DEFAULT_TENANT
    router = CacheRouter(registry.get(tenant_id), remote)

    if _drain_on_start() and remote.get_health()["configured"]:
        try:
            await router.drain_refresh_queue()
        except Exception as exc:
            logger.warning("Startup refresh drain failed: %s", exc)

    try:
        yield AppContext(registry=registry, remote=remote, router=router)
    finally:
        await router.aclose()
        await remote.aclose()
        await registry.close_all()


mcp = FastMCP(
    "OhMyProductive (Fast resolve + cache)",
    instructions=(
        "Resolves human-friendly Productive identifiers (emails, project numbers "
        "like PRJ-123, deal numbers, names) into numeric IDs using a local "
        "reference cache that falls back to the Productive API. "
        "Use resolve or resolve_filters before calling endpoints that expect IDs."
    ),
    lifespan=_lifespan,
)


def _router(ctx: Context) -> CacheRouter:
    return ctx.request_context.lifespan_context.router


@mcp.tool()
async def resolve(
    ctx: Context,
    query: str,
    type: str | None = None,
    project_id: str | None = None,
    first: bool = False,
) -> dict[str, Any]:
    """Resolve a human-friendly identifier to Productive IDs.

    Args:
        query: Email, project number (PRJ-123 or P-123), deal number (D-12), or a name.
            A bare number is returned unchanged.
        type: Entity type: person, project, service, company or deal.
            Detected from the query when omitted.
        project_id: Restrict the search to one project (used for services).
        first: Return only the best match.

    Returns:
        dict with "query", "matches" (list of {id, type, label, query, exact})
        and "exact", or an error dict with {code, message, suggestions}.
    """
    return await _router(ctx).resolve(query, type, project_id, first)


@mcp.tool()
def detect(ctx: Context, query: str) -> dict[str, Any]:
    """Detect which entity type a query looks like, without any lookup.

    Returns:
        dict with "query", "isNumericId" and "detection" ({type, pattern,
        confidence} or None).
    """
    return _router(ctx).detect(query)


@mcp.tool()
async def resolve_filters(
    ctx: Context, filters: dict[str, str], project_id: str | None = None
) -> dict[str, Any]:
    """Resolve ID-typed filter values (person_id, project_id, company_id, ...).

    Values that are already numeric or cannot be resolved are left unchanged.

    Returns:
        dict with "resolved" (filter map) and "metadata" per resolved key
        ({input, id, label, reusable}).
    """
    return await _router(ctx).resolve_filters(filters, project_id)


@mcp.tool()
async def api_get(
    ctx: Context,
    endpoint: str,
    params: dict[str, Any] | None = None,
    refresh: bool = False,
    no_cache: bool = False,
) -> dict[str, Any]:
    """GET a Productive API endpoint through the local query cache.

    Args:
        endpoint: API path, e.g. "/projects" or "/time_entries".
        params: Query parameters, e.g. {"filter[project_id]": "123"}.
        refresh: Bypass the cached copy and store the fresh response.
        no_cache: Do not read or write the cache.

    Returns:
        dict with "data", "cached" and "stale", or an error dict.
    """
    return await _router(ctx).cached_get(endpoint, params, refresh, no_cache)


@mcp.tool()
async def sync_cache(ctx: Context, types: list[str] | None = None) -> dict[str, Any]:
    """Download all records of the given entity types (default: all) into the local cache."""
    return await _router(ctx).sync_reference_data(types)


@mcp.tool()
async def drain_refresh_queue(ctx: Context, max_jobs: int | None = None) -> dict[str, Any]:
    """Refresh stale cached API responses in FIFO order.

    Failed jobs are dropped, not retried.

    Returns:
        dict with processed, succeeded, failed, skipped and remaining counts.
    """
    return await _router(ctx).drain_refresh_queue(max_jobs)


@mcp.tool()
async def list_refresh_jobs(ctx: Context) -> list[dict[str, Any]]:
    """List pending refresh jobs, oldest first."""
    return await _router(ctx).list_refresh_jobs()


@mcp.tool()
async def cache_stats(ctx: Context) -> dict[str, Any]:
    """Return reference counts, query cache size and refresh queue length."""
    return await _router(ctx).cache_stats()


@mcp.tool()
async def clear_cache(
    ctx: Context, type: str | None = None, endpoint_pattern: str | None = None
) -> dict[str, Any]:
    """Clear cached data.

    Args:
        type: Clear only this reference type.
        endpoint_pattern: Clear only query cache entries whose endpoint contains this.

    With no arguments the whole tenant cache and refresh queue are wiped.
    """
    return await _router(ctx).clear_cache(type, endpoint_pattern)


@mcp.tool()
def get_cache_health(ctx: Context) -> dict[str, Any]:
    """Return local store and Productive API health."""
    return _router(ctx).get_health()


def main() -> None:
    logging.basicConfig(
        level=os.getenv("PRODUCTIVE_FAST_LOG_LEVEL", "WARNING").upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    mcp.run()
