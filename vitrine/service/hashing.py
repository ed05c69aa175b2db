from __future__ import annotations

import hashlib
import hmac
from typing import Protocol

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from vitrine.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher(Protocol):
    def hash(self, password: str) -> str: ...

    def verify(self, stored_hash: str, password: str) -> bool: ...

    def needs_rehash(self, stored_hash: str) -> bool: ...

    def dummy_verify(self, password: str) -> None: ...


class TokenDigest(Protocol):
    def digest(self, value: str) -> str: ...

    def matches(self, value: str, expected: str) -> bool: ...


class Argon2PasswordHasher:
    """argon2id password hashing with configurable cost.

    ``dummy_verify`` runs a full verification against a throwaway hash so a
    lookup miss costs the same as a wrong password.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash = self._hasher.hash("vitrine-dummy-password")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, stored_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    def dummy_verify(self, password: str) -> None:
        self.verify(self._dummy_hash, password)


class HmacDigest:
    """Keyed SHA-256 digest for refresh tokens and one-time codes.

    The namespace is mixed into the key so a refresh-token digest can never
    collide with a code digest computed from the same secret.
    """

    def __init__(self, key: str, *, namespace: str) -> None:
        if not key:
            raise ValueError("digest key must not be empty")
        self._key = f"{namespace}:{key}".encode("utf-8")

    def digest(self, value: str) -> str:
        return hmac.new(self._key, value.encode("utf-8"), hashlib.sha256).hexdigest()

    def matches(self, value: str, expected: str) -> bool:
        return hmac.compare_digest(self.digest(value), expected)
