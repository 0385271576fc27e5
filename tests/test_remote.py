from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from productive_fast.patterns import DEAL, PERSON, PROJECT, SERVICE
from productive_fast.remote import (
    DEFAULT_BASE_URL,
    ProductiveApi,
    RemoteApiError,
    record_from_resource,
)


@pytest.fixture(autouse=True)
def _clear_productive_env(monkeypatch: pytest.MonkeyPatch):
    for key in ("PRODUCTIVE_API_TOKEN", "PRODUCTIVE_ORG_ID", "PRODUCTIVE_BASE_URL"):
        monkeypatch.delenv(key, raising=False)


def _person(id: str, first: str, last: str, email: str, company: str | None = None) -> dict[str, Any]:
    resource: dict[str, Any] = {
        "id": id,
        "type": "people",
        "attributes": {"first_name": first, "last_name": last, "email": email},
    }
    if company:
        resource["relationships"] = {"company": {"data": {"type": "companies", "id": company}}}
    return resource


class Recorder:
    def __init__(self, responses: list[httpx.Response | Exception]):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _api(recorder: Recorder) -> ProductiveApi:
    return ProductiveApi(
        api_token="token-1",
        organization_id="org-1",
        base_url="https://api.test/api/v2",
        transport=httpx.MockTransport(recorder),
    )


def test_env_configuration(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("PRODUCTIVE_API_TOKEN", "secret")
    monkeypatch.setenv("PRODUCTIVE_ORG_ID", "42")
    api = ProductiveApi()

    health = api.get_health()
    assert health["baseUrl"] == DEFAULT_BASE_URL
    assert health["configured"] is True
    assert api.organization_id == "42"


def test_unconfigured_client_raises_auth_error():
    async def run():
        api = ProductiveApi()
        with pytest.raises(RemoteApiError) as exc_info:
            await api.fetch("/people", {})
        assert exc_info.value.code == "remote_auth"

    asyncio.run(run())


def test_fetch_sends_auth_headers():
    recorder = Recorder([httpx.Response(200, json={"data": []})])

    async def run():
        api = _api(recorder)
        try:
            assert await api.fetch("/projects", {"page[size]": 5, "skip": None}) == {"data": []}
        finally:
            await api.aclose()

    asyncio.run(run())
    [request] = recorder.requests
    assert request.headers["X-Auth-Token"] == "token-1"
    assert request.headers["X-Organization-Id"] == "org-1"
    assert request.headers["Content-Type"] == "application/vnd.api+json"
    assert request.url.path == "/api/v2/projects"
    assert request.url.params["page[size]"] == "5"
    assert "skip" not in request.url.params


def test_transient_failure_is_retried_once():
    recorder = Recorder(
        [httpx.ConnectError("boom"), httpx.Response(200, json={"data": [{"id": "1"}]})]
    )

    async def run():
        api = _api(recorder)
        try:
            body = await api.fetch("/people", {})
            assert body == {"data": [{"id": "1"}]}
            assert api.get_health()["failureCount"] == 0
        finally:
            await api.aclose()

    asyncio.run(run())
    assert len(recorder.requests) == 2


def test_repeated_server_errors_raise_unavailable():
    recorder = Recorder([httpx.Response(503), httpx.Response(502)])

    async def run():
        api = _api(recorder)
        try:
            with pytest.raises(RemoteApiError) as exc_info:
                await api.fetch("/people", {})
            assert exc_info.value.code == "remote_unavailable"
            assert exc_info.value.status == 502
            assert api.get_health()["lastError"] is not None
        finally:
            await api.aclose()

    asyncio.run(run())
    assert len(recorder.requests) == 2


@pytest.mark.parametrize(
    ("status", "code"),
    [(401, "remote_auth"), (403, "remote_auth"), (429, "remote_rate_limited"), (404, "remote_error")],
)
def test_client_errors_are_not_retried(status: int, code: str):
    recorder = Recorder([httpx.Response(status)])

    async def run():
        api = _api(recorder)
        try:
            with pytest.raises(RemoteApiError) as exc_info:
                await api.fetch("/people", {})
            assert exc_info.value.code == code
        finally:
            await api.aclose()

    asyncio.run(run())
    assert len(recorder.requests) == 1


def test_search_person_by_email_uses_email_filter():
    recorder = Recorder(
        [httpx.Response(200, json={"data": [_person("500521", "John", "Doe", "john@example.com", "9")]})]
    )

    async def run():
        api = _api(recorder)
        try:
            return await api.search(PERSON, "john@example.com")
        finally:
            await api.aclose()

    [record] = asyncio.run(run())
    assert record.id == "500521"
    assert record.label == "John Doe"
    assert record.search_fields == ["john@example.com"]
    assert record.owner_id == "9"
    assert recorder.requests[0].url.params["filter[email]"] == "john@example.com"


def test_search_project_number_falls_back_to_raw_form():
    recorder = Recorder(
        [
            httpx.Response(200, json={"data": []}),
            httpx.Response(
                200,
                json={"data": [{"id": "77", "attributes": {"name": "Website", "project_number": "P-12"}}]},
            ),
        ]
    )

    async def run():
        api = _api(recorder)
        try:
            return await api.search(PROJECT, "P-12")
        finally:
            await api.aclose()

    [record] = asyncio.run(run())
    assert record.id == "77"
    assert [r.url.params["filter[project_number]"] for r in recorder.requests] == ["PRJ-12", "P-12"]


def test_search_deal_number_is_normalized():
    recorder = Recorder(
        [httpx.Response(200, json={"data": [{"id": "5", "attributes": {"name": "Renewal", "deal_number": "D-3"}}]})]
    )

    async def run():
        api = _api(recorder)
        try:
            return await api.search(DEAL, "DEAL-3")
        finally:
            await api.aclose()

    [record] = asyncio.run(run())
    assert record.search_fields == ["D-3"]
    assert recorder.requests[0].url.params["filter[deal_number]"] == "D-3"


def test_search_services_matches_names_within_project():
    services = [
        {"id": "1", "attributes": {"name": "Design"}, "relationships": {"project": {"data": {"id": "100"}}}},
        {"id": "2", "attributes": {"name": "Development"}, "relationships": {"project": {"data": {"id": "100"}}}},
    ]
    recorder = Recorder([httpx.Response(200, json={"data": services})])

    async def run():
        api = _api(recorder)
        try:
            return await api.search(SERVICE, "devel", owner_id="100")
        finally:
            await api.aclose()

    records = asyncio.run(run())
    assert [r.id for r in records] == ["2"]
    assert recorder.requests[0].url.params["filter[project_id]"] == "100"


def test_list_all_follows_pages():
    recorder = Recorder(
        [
            httpx.Response(200, json={"data": [_person("1", "A", "B", "a@x.io")], "meta": {"total_pages": 2}}),
            httpx.Response(200, json={"data": [_person("2", "C", "D", "c@x.io")], "meta": {"total_pages": 2}}),
        ]
    )

    async def run():
        api = _api(recorder)
        try:
            return await api.list_all(PERSON)
        finally:
            await api.aclose()

    records = asyncio.run(run())
    assert [r.id for r in records] == ["1", "2"]
    assert [r.url.params["page[number]"] for r in recorder.requests] == ["1", "2"]


def test_person_label_falls_back_to_email():
    record = record_from_resource(PERSON, _person("3", "", "", "ghost@example.com"))
    assert record.label == "ghost@example.com"
    assert record.owner_id is None
