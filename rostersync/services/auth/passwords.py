from __future__ import annotations

import hmac
import os
import secrets
import string

from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from rostersync.services.crypto.utils import b64decode_str, b64encode_bytes


_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1
_SCRYPT_LENGTH = 32
_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"
HASH_PREFIX = "scrypt"


def generate_temporary_password(length: int = 16) -> str:
    # Throwaway secret; provisioned accounts must reset on first login.
    if length < 8:
        raise ValueError("temporary password length must be at least 8")
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def _kdf(salt: bytes) -> Scrypt:
    return Scrypt(salt=salt, length=_SCRYPT_LENGTH, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)


def hash_password(password: str) -> str:
    salt = os.urandom(16)
    digest = _kdf(salt).derive(password.encode("utf-8"))
    return f"{HASH_PREFIX}${_SCRYPT_N}${b64encode_bytes(salt)}${b64encode_bytes(digest)}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        prefix, n_value, salt_b64, digest_b64 = encoded.split("$")
        cost = int(n_value)
    except ValueError:
        return False
    if prefix != HASH_PREFIX or cost != _SCRYPT_N:
        return False
    expected = b64decode_str(digest_b64)
    actual = _kdf(b64decode_str(salt_b64)).derive(password.encode("utf-8"))
    return hmac.compare_digest(expected, actual)
