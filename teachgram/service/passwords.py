from __future__ import annotations

import secrets

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError


class PasswordHasher:
    """argon2id hashing for account passwords."""

    def __init__(self, hasher: Argon2Hasher | None = None) -> None:
        self._hasher = hasher or Argon2Hasher(type=Type.ID)
        # digest compared against when no account matches an identifier
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, stored_hash: str | None, password: str) -> bool:
        try:
            return self._hasher.verify(stored_hash or self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def burn(self, password: str) -> None:
        """Run a verification that always fails, to equalise response time."""
        self.verify(None, password)

    def unusable(self) -> str:
        """Hash a random secret nobody knows, for provider-provisioned accounts."""
        return self.hash(secrets.token_urlsafe(32))
