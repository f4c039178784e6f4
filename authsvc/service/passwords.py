from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from authsvc.logging import get_logger

logger = get_logger(__name__)


class CredentialHasher:
    """argon2id hashing for local passwords."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, password: str, digest: Optional[str]) -> bool:
        if not digest:
            return False
        try:
            return self._pwd_hasher.verify(digest, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(digest)
        except InvalidHash:
            logger.warning("password_digest_unrecognized")
            return False
