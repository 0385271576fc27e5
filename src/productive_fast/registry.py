"""
Tenant-scoped store handles.

The process entry point owns one registry and passes handles into the
components that need them; nothing here is a module-level global.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

from .store import StoreHandle

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def default_cache_dir() -> Path:
    override = os.getenv("PRODUCTIVE_FAST_CACHE_DIR")
    if override:
        return Path(override).expanduser()
    xdg = os.getenv("XDG_CACHE_HOME")
    base = Path(xdg).expanduser() if xdg else Path.home() / ".cache"
    return base / "productive-fast"


def db_filename(tenant_id: str) -> str:
    return f"productive-{_UNSAFE_CHARS.sub('_', tenant_id)}.db"


class StoreRegistry:
    """Maps tenant (organization) ids to their SQLite store handle."""

    def __init__(self, cache_dir: str | Path | None = None):
        self._cache_dir = Path(cache_dir) if cache_dir is not None else default_cache_dir()
        self._handles: dict[str, StoreHandle] = {}

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def get(self, tenant_id: str) -> StoreHandle:
        if not tenant_id:
            raise ValueError("tenant_id is required")
        handle = self._handles.get(tenant_id)
        if handle is None:
            handle = StoreHandle(tenant_id, self._cache_dir / db_filename(tenant_id))
            self._handles[tenant_id] = handle
            logger.debug("Opened store handle for tenant %s at %s", tenant_id, handle.db_path)
        return handle

    def tenants(self) -> list[str]:
        return sorted(self._handles)

    async def close_all(self) -> None:
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            await handle.close()
