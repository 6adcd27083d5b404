"""
Password hashing with Argon2id.

Verification runs in a worker thread so the event loop is never blocked by
the deliberately slow hash. Unknown accounts are verified against a dummy
hash built with the same parameters, which keeps failure timing the same
whether or not the account exists.
"""

import asyncio
import secrets
import time
from typing import Protocol

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from structlog import get_logger

from app.observability.metrics import metrics

logger = get_logger(__name__)


class PasswordHashing(Protocol):
    async def hash(self, password: str) -> str: ...

    async def verify(self, password_hash: str | None, password: str) -> bool:
        """Verify against password_hash, or against the dummy hash when None."""
        ...


class Argon2PasswordHasher:
    """
    argon2-cffi backed PasswordHashing.

    Usage:
        hasher = Argon2PasswordHasher()
        stored = await hasher.hash("correct horse")
        assert await hasher.verify(stored, "correct horse")
    """

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher()
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    async def hash(self, password: str) -> str:
        return await asyncio.to_thread(self._hasher.hash, password)

    async def verify(self, password_hash: str | None, password: str) -> bool:
        target = password_hash if password_hash is not None else self._dummy_hash
        started = time.perf_counter()
        try:
            matched = await asyncio.to_thread(self._verify_sync, target, password)
        finally:
            metrics.password_verify_duration_seconds.observe(time.perf_counter() - started)
        return matched and password_hash is not None

    def _verify_sync(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False
