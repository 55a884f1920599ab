from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rostersync.core.errors import DecryptionError, IntegrationNotFoundError
from rostersync.domain.models import Integration
from rostersync.domain.roster import OAuthCredentials
from rostersync.persistence.db import SessionLocal
from rostersync.persistence.repos import integrations as integrations_repo
from rostersync.services.crypto.cipher import CipherError, SealedPayload, decrypt_json, encrypt_json


logger = logging.getLogger(__name__)


def seal_credentials(credentials: OAuthCredentials) -> SealedPayload:
    return encrypt_json(credentials.to_payload())


def get_credentials(integration: Integration) -> OAuthCredentials:
    # The encrypted blob is authoritative; the plaintext columns are only a cache.
    sealed = SealedPayload(
        cipher_text=integration.credentials_cipher_text,
        iv=integration.credentials_iv,
        tag=integration.credentials_tag,
    )
    try:
        payload = decrypt_json(sealed)
        return OAuthCredentials.from_payload(payload)
    except (CipherError, KeyError, TypeError, ValueError) as exc:
        logger.error("credential_decrypt_failed integration_id=%s", integration.id)
        raise DecryptionError("Stored integration credentials could not be decrypted") from exc


async def store_credentials(
    session: AsyncSession,
    integration_id: str,
    credentials: OAuthCredentials,
) -> SealedPayload:
    # Caller owns the transaction; used when credentials change with other fields.
    sealed = seal_credentials(credentials)
    updated = await integrations_repo.update_credentials(
        session,
        integration_id,
        cipher_text=sealed.cipher_text,
        iv=sealed.iv,
        tag=sealed.tag,
        access_token=credentials.access_token,
        token_expires_at=credentials.expires_at,
    )
    if not updated:
        raise IntegrationNotFoundError(f"Integration {integration_id} not found")
    return sealed


async def rotate(
    integration: Integration,
    credentials: OAuthCredentials,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> None:
    """Persist refreshed credentials in one committed UPDATE.

    The blob and its plaintext cache are written by the same statement, so a
    concurrent reader sees either the old pair or the new pair. The in-memory
    row is refreshed only after the commit succeeds.
    """
    factory = session_factory or SessionLocal
    async with factory() as session:
        sealed = await store_credentials(session, integration.id, credentials)
        await session.commit()
    integration.credentials_cipher_text = sealed.cipher_text
    integration.credentials_iv = sealed.iv
    integration.credentials_tag = sealed.tag
    integration.access_token = credentials.access_token
    integration.token_expires_at = credentials.expires_at
    logger.info("credentials_rotated integration_id=%s", integration.id)
