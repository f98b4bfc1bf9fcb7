from __future__ import annotations

import asyncio

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from zentik_auth.logging import get_logger

logger = get_logger(__name__)

ALGORITHM = "argon2id"


class SecretHasher:
    """One-way argon2id hashing for passwords and opaque token secrets.

    ``verify`` never raises on a mismatch or a malformed hash; it answers
    False. argon2's verification compares digests in constant time.
    The ``*_async`` variants run the CPU-bound work in a worker thread so the
    event loop keeps serving other requests.
    """

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, digest: str | None, secret: str) -> bool:
        if not digest or secret is None:
            return False
        try:
            return self._hasher.verify(digest, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("secret_hash_unverifiable", error_type=type(exc).__name__)
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True

    async def hash_async(self, secret: str) -> str:
        return await asyncio.to_thread(self.hash, secret)

    async def verify_async(self, digest: str | None, secret: str) -> bool:
        return await asyncio.to_thread(self.verify, digest, secret)


__all__ = ["ALGORITHM", "SecretHasher"]
