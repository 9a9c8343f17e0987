"""Secure token and password primitives.

Everything here is stateless and safe to call concurrently. Password
hashing is deliberately slow, so request paths use the ``*_async``
variants which run the hasher in a worker thread.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import re
import secrets
from functools import lru_cache

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from coursegate.storage.models import generate_uuid7

DEFAULT_PASSWORD_COST = 12
# 16 -> 1 GiB per hash; argon2 rejects memory costs past 32 bits
MIN_PASSWORD_COST = 4
MAX_PASSWORD_COST = 16

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


@lru_cache(maxsize=8)
def _hasher(cost: int) -> PasswordHasher:
    if not MIN_PASSWORD_COST <= cost <= MAX_PASSWORD_COST:
        raise ValueError(
            f"password cost must be between {MIN_PASSWORD_COST} and {MAX_PASSWORD_COST}"
        )
    # cost is a log2 work factor: memory doubles per step, 12 -> 64 MiB
    return PasswordHasher(memory_cost=2 ** (cost + 4), type=Type.ID)


def hash_password(password: str, cost: int = DEFAULT_PASSWORD_COST) -> str:
    """Salted argon2id hash of ``password``; salt is embedded in the result."""
    return _hasher(cost).hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Constant-time check of ``password`` against an encoded hash.

    Parameters are read from the encoded hash, so hashes produced with any
    cost verify correctly.
    """
    if not password_hash:
        return False
    try:
        return _hasher(DEFAULT_PASSWORD_COST).verify(password_hash, password)
    except (VerifyMismatchError, VerificationError, InvalidHash):
        return False


async def hash_password_async(password: str, cost: int = DEFAULT_PASSWORD_COST) -> str:
    return await asyncio.to_thread(hash_password, password, cost)


async def verify_password_async(password: str, password_hash: str) -> bool:
    return await asyncio.to_thread(verify_password, password, password_hash)


def generate_secure_token(byte_length: int = 32) -> str:
    return secrets.token_urlsafe(byte_length)


def hash_token(token: str) -> str:
    """SHA-256 hex digest used as a storage key for secrets we must not keep."""
    return hashlib.sha256(token.encode()).hexdigest()


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def generate_code_verifier() -> str:
    """PKCE code verifier: 43 chars of base64url over 32 random bytes."""
    return _b64url(secrets.token_bytes(32))


def generate_code_challenge(verifier: str) -> str:
    """PKCE S256 challenge (RFC 7636 section 4.2)."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_session_id() -> str:
    return generate_uuid7()


def is_valid_uuid(value: str) -> bool:
    return bool(value) and bool(_UUID_RE.match(value))
