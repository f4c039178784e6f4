from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for the revoked-token fast path."""

    KEY_PREFIX = "auth:revoked:"

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @classmethod
    def _key(cls, token_id: str) -> str:
        return f"{cls.KEY_PREFIX}{token_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def mark_token_revoked(self, token_id: str, ttl_seconds: int) -> None:
        # Redis rejects non-positive expiries
        await self.client.set(self._key(token_id), "1", ex=max(1, int(ttl_seconds)))

    async def is_token_revoked(self, token_id: str) -> bool:
        return bool(await self.client.exists(self._key(token_id)))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def mark_token_revoked(self, token_id: str, ttl_seconds: int) -> None:
        self._sync_client.set(
            RedisCache._key(token_id), "1", ex=max(1, int(ttl_seconds))
        )

    async def is_token_revoked(self, token_id: str) -> bool:
        return bool(self._sync_client.exists(RedisCache._key(token_id)))

    async def close(self) -> None:
        self._sync_client.close()
