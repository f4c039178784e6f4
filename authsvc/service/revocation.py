from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from authsvc.logging import get_logger
from authsvc.service.tokens import token_fingerprint
from authsvc.storage.models import RevocationEntry, utcnow

logger = get_logger(__name__)


class RevocationBackend(Protocol):
    def insert_revocation(self, entry: RevocationEntry) -> None: ...

    def revocation_exists(self, token_id: str) -> bool: ...

    def purge_expired_revocations(self, now: Optional[datetime] = None) -> int: ...


class RevocationCache(Protocol):
    async def mark_token_revoked(self, token_id: str, ttl_seconds: int) -> None: ...

    async def is_token_revoked(self, token_id: str) -> bool: ...


class RevocationStore:
    """Denylist of tokens invalidated before their natural expiry.

    The durable backend is authoritative. Redis, when configured, holds a copy
    of each entry with a TTL matching the token's remaining lifetime and
    answers positive lookups without touching the backend.
    """

    def __init__(
        self, backend: RevocationBackend, cache: Optional[RevocationCache] = None
    ) -> None:
        self.backend = backend
        self.cache = cache

    async def insert(self, entry: RevocationEntry) -> None:
        self.backend.insert_revocation(entry)
        if not self.cache:
            return
        ttl = int((entry.expires_at - utcnow()).total_seconds())
        if ttl <= 0:
            return
        try:
            await self.cache.mark_token_revoked(entry.token_id, ttl)
        except Exception as exc:
            logger.warning(
                "cache_mark_token_revoked_failed", fingerprint=entry.token_id, error=str(exc)
            )

    async def revoke_token(
        self, token: str, *, subject_email: Optional[str], expires_at: datetime
    ) -> RevocationEntry:
        entry = RevocationEntry(
            token_id=token_fingerprint(token),
            subject_email=subject_email,
            expires_at=expires_at,
        )
        await self.insert(entry)
        return entry

    async def exists_by_token(self, token: str) -> bool:
        token_id = token_fingerprint(token)
        if self.cache:
            try:
                if await self.cache.is_token_revoked(token_id):
                    return True
            except Exception as exc:
                logger.warning(
                    "cache_check_token_revoked_failed", fingerprint=token_id, error=str(exc)
                )
        # A cache miss may just mean the cache write was lost; the backend decides
        return self.backend.revocation_exists(token_id)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        return self.backend.purge_expired_revocations(now)
