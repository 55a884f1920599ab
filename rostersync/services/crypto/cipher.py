from __future__ import annotations

import binascii
import hashlib
import json
import os
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from rostersync.core.config import get_settings
from rostersync.services.crypto.utils import (
    b64decode_str,
    b64encode_bytes,
    decode_key_material,
    stable_json,
)


_TAG_BYTES = 16
_IV_BYTES = 12


@dataclass(frozen=True)
class SealedPayload:
    cipher_text: str
    iv: str
    tag: str


class CipherError(ValueError):
    pass


def _load_key() -> bytes:
    settings = get_settings()
    if settings.credentials_encryption_key:
        return _ensure_32_bytes(decode_key_material(settings.credentials_encryption_key))
    # Deterministic fallback for dev/test to avoid breaking local workflows.
    seed = f"{settings.app_name}-credentials".encode("utf-8")
    return hashlib.sha256(seed).digest()


def _ensure_32_bytes(value: bytes) -> bytes:
    if len(value) == 32:
        return value
    return hashlib.sha256(value).digest()


def encrypt_json(payload: dict[str, Any], *, key: bytes | None = None) -> SealedPayload:
    # AES-256-GCM with a fresh IV per write; the tag is stored separately.
    aesgcm = AESGCM(key or _load_key())
    iv = os.urandom(_IV_BYTES)
    sealed = aesgcm.encrypt(iv, stable_json(payload), None)
    return SealedPayload(
        cipher_text=b64encode_bytes(sealed[:-_TAG_BYTES]),
        iv=b64encode_bytes(iv),
        tag=b64encode_bytes(sealed[-_TAG_BYTES:]),
    )


def decrypt_json(sealed: SealedPayload, *, key: bytes | None = None) -> dict[str, Any]:
    try:
        cipher_text = b64decode_str(sealed.cipher_text)
        iv = b64decode_str(sealed.iv)
        tag = b64decode_str(sealed.tag)
        plaintext = AESGCM(key or _load_key()).decrypt(iv, cipher_text + tag, None)
        payload = json.loads(plaintext.decode("utf-8"))
    except (InvalidTag, binascii.Error, ValueError) as exc:
        # Keep the message generic; never echo ciphertext or key material.
        raise CipherError("sealed payload could not be decrypted") from exc
    if not isinstance(payload, dict):
        raise CipherError("sealed payload is not a JSON object")
    return payload
