"""
Productive REST API collaborator.

Thin async client over the Productive JSON:API with single-retry semantics
for transient failures. Only the reads the resolver and the refresh queue
need are implemented: entity search, paginated listing and raw GETs.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from .patterns import (
    COMPANY,
    DEAL,
    PERSON,
    PROJECT,
    SERVICE,
    is_deal_number,
    is_email,
    is_project_number,
    normalize_deal_number,
    normalize_project_number,
)
from .store import EntityRecord

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.productive.io/api/v2"
JSONAPI_CONTENT_TYPE = "application/vnd.api+json"

SEARCH_PAGE_SIZE = 10
SERVICE_PAGE_SIZE = 200
SYNC_PAGE_SIZE = 200
DEFAULT_TIMEOUT_SECONDS = float(os.getenv("PRODUCTIVE_FAST_TIMEOUT_SECONDS", "30"))

TRANSIENT_STATUS_CODES = {500, 502, 503, 504}


class RemoteApiError(RuntimeError):
    """Raised when a Productive API call fails."""

    def __init__(self, code: str, message: str, status: int | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status


def _attr(resource: dict[str, Any], name: str) -> str:
    value = (resource.get("attributes") or {}).get(name)
    if value is None:
        return ""
    return str(value).strip()


def _relationship_id(resource: dict[str, Any], name: str) -> str | None:
    rel = (resource.get("relationships") or {}).get(name) or {}
    data = rel.get("data")
    if isinstance(data, dict) and data.get("id") is not None:
        return str(data["id"])
    return None


def _person_label(resource: dict[str, Any]) -> str:
    name = f"{_attr(resource, 'first_name')} {_attr(resource, 'last_name')}".strip()
    return name or _attr(resource, "email")


def _name_label(resource: dict[str, Any]) -> str:
    return _attr(resource, "name")


@dataclass(frozen=True)
class KindSpec:
    """How one entity kind maps onto the Productive API."""

    endpoint: str
    label: Callable[[dict[str, Any]], str]
    search_attributes: tuple[str, ...]
    owner_relationship: str | None


KIND_SPECS: dict[str, KindSpec] = {
    PERSON: KindSpec("/people", _person_label, ("email",), "company"),
    PROJECT: KindSpec("/projects", _name_label, ("project_number",), "company"),
    SERVICE: KindSpec("/services", _name_label, (), "project"),
    COMPANY: KindSpec("/companies", _name_label, ("billing_name",), None),
    DEAL: KindSpec("/deals", _name_label, ("deal_number",), "company"),
}


def record_from_resource(kind: str, resource: dict[str, Any]) -> EntityRecord:
    kind_spec = KIND_SPECS[kind]
    fields = [value for value in (_attr(resource, a) for a in kind_spec.search_attributes) if value]
    owner_id = (
        _relationship_id(resource, kind_spec.owner_relationship)
        if kind_spec.owner_relationship
        else None
    )
    return EntityRecord(
        id=str(resource["id"]),
        kind=kind,
        label=kind_spec.label(resource),
        search_fields=fields,
        owner_id=owner_id,
        data=resource,
    )


class ProductiveApi:
    """Async client for the Productive REST API."""

    def __init__(
        self,
        api_token: str | None = None,
        organization_id: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_token = api_token or os.getenv("PRODUCTIVE_API_TOKEN")
        self._organization_id = organization_id or os.getenv("PRODUCTIVE_ORG_ID")
        self._base_url = (base_url or os.getenv("PRODUCTIVE_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        self._request_count = 0
        self._failure_count = 0
        self._last_error: str | None = None
        self._last_failure_at: float | None = None
        self._last_success_at: float | None = None

    @property
    def organization_id(self) -> str | None:
        return self._organization_id

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": JSONAPI_CONTENT_TYPE,
            "X-Auth-Token": self._api_token or "",
            "X-Organization-Id": self._organization_id or "",
        }

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers(),
                timeout=self._timeout_seconds,
                transport=self._transport,
            )
        return self._client

    def _record_failure(self, exc: Exception) -> None:
        self._failure_count += 1
        self._last_failure_at = time.time()
        self._last_error = f"{exc.__class__.__name__}: {exc}"
        logger.warning("Productive API call failed (%s): %s", exc.__class__.__name__, exc)

    def _record_success(self) -> None:
        self._failure_count = 0
        self._last_error = None
        self._last_success_at = time.time()

    @staticmethod
    def _error_for_status(response: httpx.Response, endpoint: str) -> RemoteApiError:
        status = response.status_code
        if status in (401, 403):
            return RemoteApiError("remote_auth", f"{endpoint}: not authorized ({status})", status)
        if status == 429:
            return RemoteApiError("remote_rate_limited", f"{endpoint}: rate limited", status)
        if status >= 500:
            return RemoteApiError("remote_unavailable", f"{endpoint}: server error ({status})", status)
        return RemoteApiError("remote_error", f"{endpoint}: request failed ({status})", status)

    async def fetch(self, endpoint: str, params: dict[str, Any] | None = None) -> Any:
        """GET an endpoint and return the decoded JSON body."""
        if not self._api_token or not self._organization_id:
            raise RemoteApiError(
                "remote_auth",
                "PRODUCTIVE_API_TOKEN and PRODUCTIVE_ORG_ID must be configured",
            )
        query = {k: v for k, v in (params or {}).items() if v is not None}
        client = self._ensure_client()

        for attempt in range(2):
            self._request_count += 1
            try:
                response = await client.get(endpoint, params=query)
            except httpx.HTTPError as exc:
                self._record_failure(exc)
                if attempt == 1:
                    raise RemoteApiError(
                        "remote_unavailable",
                        f"Productive API request failed for '{endpoint}': {exc}",
                    ) from exc
                continue

            if response.status_code in TRANSIENT_STATUS_CODES and attempt == 0:
                self._record_failure(self._error_for_status(response, endpoint))
                continue

            if response.status_code >= 400:
                error = self._error_for_status(response, endpoint)
                self._record_failure(error)
                raise error

            try:
                body = response.json()
            except ValueError as exc:
                self._record_failure(exc)
                raise RemoteApiError(
                    "remote_error", f"{endpoint}: invalid JSON response", response.status_code
                ) from exc
            self._record_success()
            return body

        raise RemoteApiError("remote_unavailable", "Productive API unavailable")

    async def _fetch_records(self, kind: str, params: dict[str, Any]) -> list[EntityRecord]:
        body = await self.fetch(KIND_SPECS[kind].endpoint, params)
        resources = body.get("data") if isinstance(body, dict) else None
        return [record_from_resource(kind, r) for r in resources or [] if r.get("id") is not None]

    async def _search_by_number(
        self, kind: str, filter_name: str, normalized: str, raw: str
    ) -> list[EntityRecord]:
        records = await self._fetch_records(kind, {f"filter[{filter_name}]": normalized, "page[size]": 1})
        if not records and normalized != raw:
            records = await self._fetch_records(kind, {f"filter[{filter_name}]": raw, "page[size]": 1})
        return records

    async def search(
        self, kind: str, query: str, owner_id: str | None = None
    ) -> list[EntityRecord]:
        """
        Search one entity kind.

        Emails, project numbers and deal numbers use exact API filters; services
        are listed (optionally within a project) and matched by name locally;
        everything else goes through the API's free-text `query` filter.
        """
        if kind not in KIND_SPECS:
            raise ValueError(f"unknown entity kind: {kind!r}")

        if kind == PERSON and is_email(query):
            records = await self._fetch_records(kind, {"filter[email]": query, "page[size]": 1})
        elif kind == PROJECT and is_project_number(query):
            records = await self._search_by_number(
                kind, "project_number", normalize_project_number(query), query
            )
        elif kind == DEAL and is_deal_number(query):
            records = await self._search_by_number(
                kind, "deal_number", normalize_deal_number(query), query
            )
        elif kind == SERVICE:
            params: dict[str, Any] = {"page[size]": SERVICE_PAGE_SIZE}
            if owner_id:
                params["filter[project_id]"] = owner_id
            needle = query.strip().lower()
            records = [
                r for r in await self._fetch_records(kind, params) if needle in r.label.lower()
            ]
        else:
            records = await self._fetch_records(
                kind, {"filter[query]": query, "page[size]": SEARCH_PAGE_SIZE}
            )

        if owner_id:
            records = [r for r in records if r.owner_id == owner_id]
        return records

    async def list_all(self, kind: str, max_pages: int | None = None) -> list[EntityRecord]:
        """Page through every record of a kind."""
        records: list[EntityRecord] = []
        page = 1
        while True:
            body = await self.fetch(
                KIND_SPECS[kind].endpoint, {"page[number]": page, "page[size]": SYNC_PAGE_SIZE}
            )
            resources = body.get("data") if isinstance(body, dict) else None
            records.extend(
                record_from_resource(kind, r) for r in resources or [] if r.get("id") is not None
            )
            meta = body.get("meta") if isinstance(body, dict) else None
            total_pages = (meta or {}).get("total_pages") or 1
            if page >= total_pages or (max_pages is not None and page >= max_pages):
                break
            page += 1
        return records

    def get_health(self) -> dict[str, Any]:
        return {
            "baseUrl": self._base_url,
            "configured": bool(self._api_token and self._organization_id),
            "organizationId": self._organization_id,
            "requestCount": self._request_count,
            "failureCount": self._failure_count,
            "lastError": self._last_error,
            "lastFailureAt": self._last_failure_at,
            "lastSuccessAt": self._last_success_at,
        }

    async def aclose(self) -> None:
        client = self._client
        self._client = None
        if client is not None:
            await client.aclose()
