from __future__ import annotations

import httpx
import pytest

from rostersync.core.config import get_settings
from rostersync.core.errors import ExternalFetchError, ReauthorizationRequiredError
from rostersync.domain.models import Integration
from rostersync.providers.roster.planning_center import TELEMETRY_NAME, PlanningCenterRosterProvider
from rostersync.services.integrations import vault
from rostersync.services.telemetry import external_call_stats, get_counter
from rostersync.tests.utils.roster import create_test_integration


API_BASE = "https://api.planningcenteronline.com"


def _api_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=API_BASE)


def _token_client(calls: list[str], *, status_code: int = 200, access_token: str = "access-2") -> httpx.AsyncClient:
    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.content.decode("utf-8"))
        return httpx.Response(status_code, json={"access_token": access_token, "expires_in": 3600})

    return httpx.AsyncClient(transport=httpx.MockTransport(_handler))


def _list_item(list_id: str, name: str) -> dict:
    return {"type": "List", "id": list_id, "attributes": {"name": name, "list_type": "smart"}}


def _provider(integration, client, token_client=None, session_factory=None) -> PlanningCenterRosterProvider:
    return PlanningCenterRosterProvider(
        integration,
        client=client,
        token_client=token_client,
        session_factory=session_factory,
    )


@pytest.mark.asyncio
async def test_fetch_lists_follows_pagination(session_factory) -> None:
    integration = await create_test_integration(session_factory)
    seen: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        assert request.headers["Authorization"] == "Bearer access-1"
        if request.url.params.get("offset") == "2":
            return httpx.Response(200, json={"data": [_list_item("L3", "Choir")], "links": {}})
        return httpx.Response(
            200,
            json={
                "data": [_list_item("L1", "Youth"), _list_item("L2", "Men")],
                "links": {"next": f"{API_BASE}/people/v2/lists?offset=2&per_page=2"},
            },
        )

    async with _api_client(_handler) as client:
        lists = await _provider(integration, client).fetch_lists()

    assert [item.id for item in lists] == ["L1", "L2", "L3"]
    assert lists[0].name == "Youth"
    assert lists[0].list_type == "smart"
    assert len(seen) == 2
    assert "per_page=100" in seen[0]
    assert external_call_stats(TELEMETRY_NAME)["calls"] == 2


@pytest.mark.asyncio
async def test_pagination_stops_at_item_cap(session_factory, monkeypatch) -> None:
    monkeypatch.setenv("SYNC_MAX_ITEMS", "3")
    get_settings.cache_clear()
    integration = await create_test_integration(session_factory)
    pages = 0

    def _handler(request: httpx.Request) -> httpx.Response:
        nonlocal pages
        pages += 1
        return httpx.Response(
            200,
            json={
                "data": [_list_item(f"L{pages}-{n}", "x") for n in range(2)],
                "links": {"next": f"{API_BASE}/people/v2/lists?offset={pages * 2}"},
            },
        )

    async with _api_client(_handler) as client:
        lists = await _provider(integration, client).fetch_lists()

    assert len(lists) == 3
    assert pages == 2


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_once_and_persisted(session_factory) -> None:
    integration = await create_test_integration(session_factory)
    token_calls: list[str] = []
    api_calls: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        api_calls.append(request.headers["Authorization"])
        if request.headers["Authorization"] == "Bearer access-1":
            return httpx.Response(401, json={"errors": []})
        return httpx.Response(200, json={"data": [_list_item("L1", "Youth")], "links": {}})

    async with _api_client(_handler) as client, _token_client(token_calls) as token_client:
        provider = _provider(integration, client, token_client, session_factory)
        lists = await provider.fetch_lists()

    assert [item.id for item in lists] == ["L1"]
    assert len(token_calls) == 1
    assert "grant_type=refresh_token" in token_calls[0]
    assert api_calls == ["Bearer access-1", "Bearer access-2"]
    assert get_counter("roster_token_refreshes_total") == 1
    async with session_factory() as session:
        stored = await session.get(Integration, integration.id)
    assert stored.access_token == "access-2"
    # The refresh response omitted a refresh token, so the old one is kept.
    assert vault.get_credentials(stored).refresh_token == "refresh-1"


@pytest.mark.asyncio
async def test_second_unauthorized_requires_reauthorization(session_factory) -> None:
    integration = await create_test_integration(session_factory)
    token_calls: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"errors": []})

    async with _api_client(_handler) as client, _token_client(token_calls) as token_client:
        provider = _provider(integration, client, token_client, session_factory)
        with pytest.raises(ReauthorizationRequiredError):
            await provider.fetch_lists()

    assert len(token_calls) == 1


@pytest.mark.asyncio
async def test_rejected_refresh_requires_reauthorization(session_factory) -> None:
    integration = await create_test_integration(session_factory)
    token_calls: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"errors": []})

    async with _api_client(_handler) as client, _token_client(token_calls, status_code=400) as token_client:
        provider = _provider(integration, client, token_client, session_factory)
        with pytest.raises(ReauthorizationRequiredError):
            await provider.fetch_lists()

    async with session_factory() as session:
        stored = await session.get(Integration, integration.id)
    assert stored.access_token == "access-1"


@pytest.mark.asyncio
async def test_transient_server_error_is_retried(session_factory) -> None:
    integration = await create_test_integration(session_factory)
    attempts = 0

    def _handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"data": [_list_item("L1", "Youth")], "links": {}})

    async with _api_client(_handler) as client:
        lists = await _provider(integration, client).fetch_lists()

    assert [item.id for item in lists] == ["L1"]
    assert attempts == 2
    assert get_counter("external_retries_total") == 1


@pytest.mark.asyncio
async def test_persistent_server_error_raises_fetch_error(session_factory) -> None:
    integration = await create_test_integration(session_factory)
    attempts = 0

    def _handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        return httpx.Response(500)

    async with _api_client(_handler) as client:
        with pytest.raises(ExternalFetchError) as excinfo:
            await _provider(integration, client).fetch_lists()

    assert excinfo.value.status_code == 500
    assert attempts == get_settings().ext_retry_max_attempts
    assert external_call_stats(TELEMETRY_NAME)["error_rate"] == 1.0


@pytest.mark.asyncio
async def test_client_error_is_not_retried(session_factory) -> None:
    integration = await create_test_integration(session_factory)
    attempts = 0

    def _handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        return httpx.Response(404, json={"errors": []})

    async with _api_client(_handler) as client:
        with pytest.raises(ExternalFetchError) as excinfo:
            await _provider(integration, client).fetch_list_people("missing")

    assert excinfo.value.status_code == 404
    assert attempts == 1


@pytest.mark.asyncio
async def test_fetch_list_people_resolves_included_emails(session_factory) -> None:
    integration = await create_test_integration(session_factory)
    seen: list[httpx.URL] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url)
        return httpx.Response(
            200,
            json={
                "data": [
                    {
                        "type": "Person",
                        "id": "P1",
                        "attributes": {"first_name": "Ada", "last_name": "Lovelace"},
                        "relationships": {"emails": {"data": [{"type": "Email", "id": "E1"}, {"type": "Email", "id": "E2"}]}},
                    },
                    {"type": "Person", "id": "P2", "attributes": {"first_name": "No", "last_name": "Mail"}},
                ],
                "included": [
                    {"type": "Email", "id": "E1", "attributes": {"address": "old@example.com", "primary": False}},
                    {"type": "Email", "id": "E2", "attributes": {"address": "ada@example.com", "primary": True}},
                ],
                "links": {},
            },
        )

    async with _api_client(_handler) as client:
        people = await _provider(integration, client).fetch_list_people("L1")

    assert seen[0].path == "/people/v2/lists/L1/people"
    assert seen[0].params["include"] == "emails"
    assert [(p.id, p.email, p.first_name) for p in people] == [
        ("P1", "ada@example.com", "Ada"),
        ("P2", None, "No"),
    ]


@pytest.mark.asyncio
async def test_pagination_link_to_foreign_host_is_rejected(session_factory) -> None:
    integration = await create_test_integration(session_factory)

    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"data": [_list_item("L1", "Youth")], "links": {"next": "https://evil.example.com/steal"}},
        )

    async with _api_client(_handler) as client:
        with pytest.raises(ExternalFetchError):
            await _provider(integration, client).fetch_lists()


@pytest.mark.asyncio
async def test_pagination_link_to_lookalike_host_is_rejected(session_factory) -> None:
    integration = await create_test_integration(session_factory)
    seen: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.host)
        return httpx.Response(
            200,
            json={
                "data": [_list_item("L1", "Youth")],
                "links": {"next": "https://api.planningcenteronline.com.evil.example/people/v2/lists?offset=1"},
            },
        )

    async with _api_client(_handler) as client:
        with pytest.raises(ExternalFetchError):
            await _provider(integration, client).fetch_lists()

    assert seen == ["api.planningcenteronline.com"]


@pytest.mark.asyncio
async def test_fetch_person_returns_typed_person(session_factory) -> None:
    integration = await create_test_integration(session_factory)
    seen: list[httpx.URL] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url)
        return httpx.Response(
            200,
            json={
                "data": {
                    "type": "Person",
                    "id": "P1",
                    "attributes": {"first_name": "Ada", "last_name": "Lovelace"},
                    "relationships": {"emails": {"data": [{"type": "Email", "id": "E1"}]}},
                },
                "included": [{"type": "Email", "id": "E1", "attributes": {"address": "ada@example.com"}}],
            },
        )

    async with _api_client(_handler) as client:
        person = await _provider(integration, client).fetch_person("P1")

    assert seen[0].path == "/people/v2/people/P1"
    assert seen[0].params["include"] == "emails"
    assert (person.id, person.email, person.last_name) == ("P1", "ada@example.com", "Lovelace")


@pytest.mark.asyncio
async def test_fetch_person_missing_raises_fetch_error(session_factory) -> None:
    integration = await create_test_integration(session_factory)

    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"errors": []})

    async with _api_client(_handler) as client:
        with pytest.raises(ExternalFetchError) as excinfo:
            await _provider(integration, client).fetch_person("gone")

    assert excinfo.value.status_code == 404


@pytest.mark.asyncio
async def test_fetch_all_validates_resource(session_factory) -> None:
    integration = await create_test_integration(session_factory)

    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": [], "links": {}})

    async with _api_client(_handler) as client:
        provider = _provider(integration, client)
        with pytest.raises(ValueError):
            await provider.fetch_all("households")
        with pytest.raises(ValueError):
            await provider.fetch_all("list_people")
        assert await provider.fetch_all("people") == []


@pytest.mark.asyncio
async def test_connection_probe_reports_failure(session_factory) -> None:
    integration = await create_test_integration(session_factory)

    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"errors": []})

    async with _api_client(_handler) as client:
        assert await _provider(integration, client).test_connection() is False


@pytest.mark.asyncio
async def test_connection_probe_reports_success(session_factory) -> None:
    integration = await create_test_integration(session_factory)

    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/people/v2/me"
        return httpx.Response(200, json={"data": {"id": "me"}})

    async with _api_client(_handler) as client:
        assert await _provider(integration, client).test_connection() is True
