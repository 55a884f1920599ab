from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rostersync.core.config import get_settings
from rostersync.core.errors import ExternalFetchError, ReauthorizationRequiredError
from rostersync.domain.models import Integration
from rostersync.domain.roster import ExternalList, ExternalPerson, OAuthCredentials
from rostersync.services.integrations import oauth, vault
from rostersync.services.resilience import retry_async
from rostersync.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

TELEMETRY_NAME = "roster.planning_center"

_RESOURCE_PATHS = {
    "lists": "/people/v2/lists",
    "people": "/people/v2/people",
    "list_people": "/people/v2/lists/{list_id}/people",
}
_PERSON_PATH = "/people/v2/people/{person_id}"


def _retryable(exc: Exception) -> bool:
    # Timeouts, dropped connections and throttled or failing upstream pages only.
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, TimeoutError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and (status >= 500 or status == 429)


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _email_index(included: list[dict[str, Any]]) -> dict[str, tuple[str, bool]]:
    # Email records side-loaded with include=emails, keyed by record id.
    index: dict[str, tuple[str, bool]] = {}
    for record in included:
        if record.get("type") != "Email":
            continue
        attributes = record.get("attributes") or {}
        address = _clean(attributes.get("address"))
        if address:
            index[str(record.get("id"))] = (address, bool(attributes.get("primary")))
    return index


def _person_email(item: dict[str, Any], emails: dict[str, tuple[str, bool]]) -> str | None:
    attributes = item.get("attributes") or {}
    direct = _clean(attributes.get("email"))
    if direct:
        return direct
    related = ((item.get("relationships") or {}).get("emails") or {}).get("data") or []
    candidates = [emails[str(ref.get("id"))] for ref in related if str(ref.get("id")) in emails]
    if not candidates:
        return None
    for address, primary in candidates:
        if primary:
            return address
    return candidates[0][0]


def parse_list(item: dict[str, Any]) -> ExternalList:
    attributes = item.get("attributes") or {}
    return ExternalList(
        id=str(item["id"]),
        name=_clean(attributes.get("name")) or str(item["id"]),
        list_type=_clean(attributes.get("list_type")),
        description=_clean(attributes.get("description")),
    )


def parse_person(item: dict[str, Any], emails: dict[str, tuple[str, bool]] | None = None) -> ExternalPerson:
    attributes = dict(item.get("attributes") or {})
    return ExternalPerson(
        id=str(item["id"]),
        email=_person_email(item, emails or {}),
        first_name=_clean(attributes.get("first_name")),
        last_name=_clean(attributes.get("last_name")),
        attributes=attributes,
    )


class PlanningCenterRosterProvider:
    """Roster client for the Planning Center People API.

    Every request carries the integration's current bearer token. A 401 triggers
    exactly one refresh-and-retry for that request; concurrent requests that hit
    the same expired token share a single refresh. A second 401 after a fresh
    token means the grant itself is gone and surfaces as
    ``ReauthorizationRequiredError``.
    """

    def __init__(
        self,
        integration: Integration,
        *,
        client: httpx.AsyncClient | None = None,
        token_client: httpx.AsyncClient | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._settings = get_settings()
        self._integration = integration
        self._client = client
        self._owns_client = client is None
        self._token_client = token_client
        self._session_factory = session_factory
        self._credentials: OAuthCredentials | None = None
        self._refresh_lock = asyncio.Lock()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per run for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(base_url=self._settings.roster_api_base, timeout=timeout_s)
        return self._client

    def _current_credentials(self) -> OAuthCredentials:
        if self._credentials is None:
            self._credentials = vault.get_credentials(self._integration)
        return self._credentials

    async def _send(self, url: str, params: dict[str, Any] | None, access_token: str) -> httpx.Response:
        client = self._get_client()
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

        async def _call() -> httpx.Response:
            response = await client.get(url, params=params, headers=headers)
            if response.status_code >= 500 or response.status_code == 429:
                raise ExternalFetchError(
                    f"Roster API returned {response.status_code}",
                    status_code=response.status_code,
                )
            return response

        start = time.monotonic()
        try:
            response = await retry_async(_call, retryable=_retryable)
        except (httpx.HTTPError, TimeoutError) as exc:
            record_external_call(
                integration=TELEMETRY_NAME,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise ExternalFetchError(f"Roster API request failed: {type(exc).__name__}") from exc
        except ExternalFetchError:
            record_external_call(
                integration=TELEMETRY_NAME,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise
        record_external_call(
            integration=TELEMETRY_NAME,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=response.status_code < 400,
        )
        return response

    async def _refresh(self, stale_token: str) -> None:
        async with self._refresh_lock:
            current = self._current_credentials()
            if current.access_token != stale_token:
                # Another request already rotated the token while we waited.
                return
            refreshed = await oauth.refresh_credentials(current, client=self._token_client)
            await vault.rotate(self._integration, refreshed, session_factory=self._session_factory)
            self._credentials = refreshed
            increment_counter("roster_token_refreshes_total")

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        token = self._current_credentials().access_token
        response = await self._send(url, params, token)
        if response.status_code == 401:
            logger.info("roster_token_rejected integration_id=%s", self._integration.id)
            await self._refresh(token)
            response = await self._send(url, params, self._current_credentials().access_token)
            if response.status_code == 401:
                raise ReauthorizationRequiredError("Roster API rejected the refreshed access token")
        if response.status_code >= 400:
            raise ExternalFetchError(
                f"Roster API returned {response.status_code}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ExternalFetchError("Roster API returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise ExternalFetchError("Roster API returned an unexpected document")
        return body

    def _next_link(self, body: dict[str, Any]) -> str | None:
        link = (body.get("links") or {}).get("next")
        if not link:
            return None
        link = str(link)
        try:
            target = httpx.URL(link)
        except httpx.InvalidURL as exc:
            raise ExternalFetchError("Roster API returned a malformed pagination link") from exc
        # Never forward the bearer token to a host other than the configured API.
        if target.is_absolute_url:
            base = httpx.URL(self._settings.roster_api_base)
            if (target.scheme, target.host, target.port) != (base.scheme, base.host, base.port):
                raise ExternalFetchError("Roster API pagination link points outside the API host")
        return link

    async def _collect(
        self,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        # Follow links.next sequentially; page order is the provider's order.
        cap = self._settings.sync_max_items
        items: list[dict[str, Any]] = []
        included: list[dict[str, Any]] = []
        url: str | None = path
        query: dict[str, Any] | None = {"per_page": self._settings.sync_page_size, **(params or {})}
        while url:
            body = await self._get_json(url, query)
            items.extend(body.get("data") or [])
            included.extend(body.get("included") or [])
            if len(items) >= cap:
                if self._next_link(body) or len(items) > cap:
                    logger.warning(
                        "roster_pagination_capped integration_id=%s path=%s cap=%s",
                        self._integration.id,
                        path,
                        cap,
                    )
                items = items[:cap]
                break
            url = self._next_link(body)
            # The next link already carries the query string.
            query = None
        return items, included

    async def fetch_all(self, resource: str, *, list_id: str | None = None) -> list[dict[str, Any]]:
        template = _RESOURCE_PATHS.get(resource)
        if template is None:
            raise ValueError(f"Unknown roster resource: {resource}")
        if "{list_id}" in template and not list_id:
            raise ValueError(f"Resource {resource} requires a list id")
        items, _included = await self._collect(template.format(list_id=list_id))
        return items

    async def fetch_lists(self) -> list[ExternalList]:
        items, _included = await self._collect(_RESOURCE_PATHS["lists"])
        return [parse_list(item) for item in items]

    async def fetch_list_people(self, list_id: str) -> list[ExternalPerson]:
        path = _RESOURCE_PATHS["list_people"].format(list_id=list_id)
        items, included = await self._collect(path, {"include": "emails"})
        emails = _email_index(included)
        return [parse_person(item, emails) for item in items]

    async def fetch_person(self, person_id: str) -> ExternalPerson:
        path = _PERSON_PATH.format(person_id=person_id)
        body = await self._get_json(path, {"include": "emails"})
        item = body.get("data")
        if not isinstance(item, dict) or "id" not in item:
            raise ExternalFetchError(f"Roster API returned no person for {person_id}")
        return parse_person(item, _email_index(body.get("included") or []))

    async def test_connection(self) -> bool:
        try:
            await self._get_json("/people/v2/me")
        except Exception as exc:  # noqa: BLE001 - a failed probe is reported, not raised
            logger.warning(
                "roster_connection_test_failed integration_id=%s error=%s",
                self._integration.id,
                type(exc).__name__,
            )
            return False
        return True

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
