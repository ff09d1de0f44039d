from __future__ import annotations

from typing import Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError


class CredentialHasher(Protocol):
    def hash(self, secret: str) -> str: ...

    def verify(self, secret: str, digest: str) -> bool: ...


class Argon2Hasher:
    """argon2id password hashing; a mismatch or unreadable digest verifies False."""

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, secret: str) -> str:
        return self._pwd_hasher.hash(secret)

    def verify(self, secret: str, digest: str) -> bool:
        if not digest:
            return False
        try:
            return self._pwd_hasher.verify(digest, secret)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False
