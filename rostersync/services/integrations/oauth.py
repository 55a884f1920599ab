from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import httpx

from rostersync.core.config import get_settings
from rostersync.core.errors import (
    AuthExchangeError,
    ExternalFetchError,
    InvalidOAuthStateError,
    ProviderConfigError,
    ReauthorizationRequiredError,
)
from rostersync.domain.roster import OAuthCredentials


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _base64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("utf-8")


def _base64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _client_config() -> tuple[str, str]:
    settings = get_settings()
    if not settings.oauth_client_id or not settings.oauth_client_secret:
        raise ProviderConfigError("OAUTH_CLIENT_ID and OAUTH_CLIENT_SECRET are required")
    return settings.oauth_client_id, settings.oauth_client_secret


def _sign(payload: bytes) -> str:
    secret = get_settings().oauth_state_secret.encode("utf-8")
    return _base64url_encode(hmac.new(secret, payload, hashlib.sha256).digest())


def build_oauth_state(organization_id: str, *, now: float | None = None) -> str:
    # Bind the callback to the organization with an HMAC so it cannot be swapped.
    body = {
        "org": organization_id,
        "nonce": secrets.token_hex(16),
        "iat": int(now if now is not None else time.time()),
    }
    encoded = _base64url_encode(json.dumps(body, separators=(",", ":")).encode("utf-8"))
    return f"{encoded}.{_sign(encoded.encode('utf-8'))}"


def parse_oauth_state(state: str, *, now: float | None = None) -> str:
    """Validate a state value and return the organization id it was issued for."""
    try:
        encoded, signature = state.split(".", 1)
    except ValueError as exc:
        raise InvalidOAuthStateError("Malformed OAuth state") from exc
    if not hmac.compare_digest(signature, _sign(encoded.encode("utf-8"))):
        raise InvalidOAuthStateError("OAuth state signature mismatch")
    try:
        body = json.loads(_base64url_decode(encoded))
        organization_id = str(body["org"])
        issued_at = int(body["iat"])
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidOAuthStateError("Malformed OAuth state") from exc
    current = now if now is not None else time.time()
    if current - issued_at > get_settings().oauth_state_ttl_seconds:
        raise InvalidOAuthStateError("OAuth state expired")
    return organization_id


def build_authorize_url(state: str) -> str:
    settings = get_settings()
    client_id, _secret = _client_config()
    if not settings.oauth_redirect_uri:
        raise ProviderConfigError("OAUTH_REDIRECT_URI is required")
    query = {
        "client_id": client_id,
        "redirect_uri": settings.oauth_redirect_uri,
        "response_type": "code",
        "scope": settings.oauth_scope,
        "state": state,
    }
    return f"{settings.oauth_authorize_url}?{urlencode(query)}"


def _parse_token_body(body: dict[str, Any], *, fallback_scope: str) -> tuple[str, str | None, datetime, str, str]:
    access_token = body.get("access_token")
    if not access_token:
        raise ValueError("token response missing access_token")
    expires_in = int(body.get("expires_in") or 0)
    expires_at = _utc_now() + timedelta(seconds=max(expires_in, 0))
    return (
        str(access_token),
        body.get("refresh_token"),
        expires_at,
        str(body.get("scope") or fallback_scope),
        str(body.get("token_type") or "bearer"),
    )


async def _post_token(payload: dict[str, str], client: httpx.AsyncClient | None) -> httpx.Response:
    settings = get_settings()
    if client is not None:
        return await client.post(settings.oauth_token_url, data=payload)
    timeout = settings.ext_call_timeout_ms / 1000
    async with httpx.AsyncClient(timeout=timeout) as owned:
        return await owned.post(settings.oauth_token_url, data=payload)


async def exchange_code_for_credentials(
    code: str,
    *,
    client: httpx.AsyncClient | None = None,
) -> OAuthCredentials:
    # Exchange the authorization code from the consent redirect for tokens.
    settings = get_settings()
    client_id, client_secret = _client_config()
    payload = {
        "grant_type": "authorization_code",
        "code": code,
        "client_id": client_id,
        "client_secret": client_secret,
        "redirect_uri": settings.oauth_redirect_uri or "",
    }
    try:
        response = await _post_token(payload, client)
    except httpx.HTTPError as exc:
        logger.warning("oauth_code_exchange_transport_failed error=%s", type(exc).__name__)
        raise AuthExchangeError("Failed to authenticate with the roster provider") from exc
    if response.status_code >= 400:
        logger.warning("oauth_code_exchange_failed status=%s", response.status_code)
        raise AuthExchangeError("Failed to authenticate with the roster provider")
    try:
        access_token, refresh_token, expires_at, scope, token_type = _parse_token_body(
            response.json(), fallback_scope=settings.oauth_scope
        )
    except ValueError as exc:
        raise AuthExchangeError("Token exchange response was incomplete") from exc
    if not refresh_token:
        raise AuthExchangeError("Token exchange response missing refresh_token")
    return OAuthCredentials(
        access_token=access_token,
        refresh_token=str(refresh_token),
        expires_at=expires_at,
        scope=scope,
        token_type=token_type,
    )


async def refresh_credentials(
    credentials: OAuthCredentials,
    *,
    client: httpx.AsyncClient | None = None,
) -> OAuthCredentials:
    # A rejected refresh means the grant is unusable until an operator re-authorizes.
    try:
        client_id, client_secret = _client_config()
    except ProviderConfigError as exc:
        raise ReauthorizationRequiredError(str(exc)) from exc
    payload = {
        "grant_type": "refresh_token",
        "refresh_token": credentials.refresh_token,
        "client_id": client_id,
        "client_secret": client_secret,
    }
    try:
        response = await _post_token(payload, client)
    except httpx.HTTPError as exc:
        # Transport trouble is transient; only a rejected grant needs an operator.
        logger.warning("oauth_refresh_transport_failed error=%s", type(exc).__name__)
        raise ExternalFetchError("Token endpoint unreachable during refresh") from exc
    if response.status_code >= 500:
        logger.warning("oauth_refresh_failed status=%s", response.status_code)
        raise ExternalFetchError("Token endpoint failed during refresh", status_code=response.status_code)
    if response.status_code >= 400:
        logger.warning("oauth_refresh_failed status=%s", response.status_code)
        raise ReauthorizationRequiredError("Failed to refresh access token")
    try:
        access_token, refresh_token, expires_at, _scope, _token_type = _parse_token_body(
            response.json(), fallback_scope=credentials.scope
        )
    except ValueError as exc:
        raise ReauthorizationRequiredError("Refresh response was incomplete") from exc
    return credentials.rotate(
        access_token=access_token,
        refresh_token=str(refresh_token) if refresh_token else None,
        expires_at=expires_at,
    )
