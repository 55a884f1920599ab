from __future__ import annotations

import pytest

from rostersync.core.errors import DecryptionError, IntegrationNotFoundError
from rostersync.domain.models import Integration
from rostersync.services.crypto.cipher import CipherError, SealedPayload, decrypt_json, encrypt_json
from rostersync.services.integrations import vault
from rostersync.tests.utils.roster import create_test_integration, make_credentials


def test_encrypt_json_roundtrip_uses_fresh_iv() -> None:
    payload = {"access_token": "a", "refresh_token": "r"}
    first = encrypt_json(payload)
    second = encrypt_json(payload)
    assert first.iv != second.iv
    assert first.cipher_text != second.cipher_text
    assert decrypt_json(first) == payload


def test_decrypt_json_rejects_tampered_tag() -> None:
    sealed = encrypt_json({"access_token": "a"})
    other = encrypt_json({"access_token": "b"})
    tampered = SealedPayload(cipher_text=sealed.cipher_text, iv=sealed.iv, tag=other.tag)
    with pytest.raises(CipherError):
        decrypt_json(tampered)


def test_decrypt_json_rejects_wrong_key() -> None:
    sealed = encrypt_json({"access_token": "a"}, key=b"k" * 32)
    with pytest.raises(CipherError):
        decrypt_json(sealed, key=b"z" * 32)


def test_get_credentials_reads_encrypted_blob_not_cache() -> None:
    credentials = make_credentials(access_token="from-blob")
    sealed = vault.seal_credentials(credentials)
    integration = Integration(
        id="int-1",
        organization_id="org-1",
        provider="PLANNING_CENTER",
        credentials_cipher_text=sealed.cipher_text,
        credentials_iv=sealed.iv,
        credentials_tag=sealed.tag,
        access_token="stale-cache",
    )
    loaded = vault.get_credentials(integration)
    assert loaded.access_token == "from-blob"
    assert loaded.refresh_token == credentials.refresh_token
    assert loaded.expires_at == credentials.expires_at


def test_get_credentials_raises_decryption_error_on_corrupt_blob() -> None:
    integration = Integration(
        id="int-1",
        organization_id="org-1",
        provider="PLANNING_CENTER",
        credentials_cipher_text="bm90LXJlYWw=",
        credentials_iv="bm90LXJlYWw=",
        credentials_tag="bm90LXJlYWw=",
    )
    with pytest.raises(DecryptionError):
        vault.get_credentials(integration)


@pytest.mark.asyncio
async def test_rotate_persists_blob_and_cache(session_factory) -> None:
    integration = await create_test_integration(session_factory)
    refreshed = make_credentials(access_token="access-2", refresh_token="refresh-2")

    await vault.rotate(integration, refreshed, session_factory=session_factory)

    assert integration.access_token == "access-2"
    async with session_factory() as session:
        stored = await session.get(Integration, integration.id)
    assert stored.access_token == "access-2"
    assert vault.get_credentials(stored).refresh_token == "refresh-2"
    assert stored.credentials_cipher_text == integration.credentials_cipher_text


@pytest.mark.asyncio
async def test_rotate_missing_integration_raises(session_factory) -> None:
    integration = await create_test_integration(session_factory)
    integration.id = "missing"
    with pytest.raises(IntegrationNotFoundError):
        await vault.rotate(integration, make_credentials(), session_factory=session_factory)
