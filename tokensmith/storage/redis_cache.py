from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from redis import Redis


class EphemeralCache(Protocol):
    """TTL key-value contract used for throttling and verification memos.

    Last writer wins; there is no cross-key atomicity.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...


class RedisCache:
    """Thin async Redis wrapper with a key namespace."""

    def __init__(
        self, redis_url: str, *, namespace: str = "tokensmith", socket_timeout: float = 5.0
    ):
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(self._key(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(self._key(key), value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        await self.client.delete(self._key(key))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(
        self, redis_url: str, *, namespace: str = "tokensmith", socket_timeout: float = 5.0
    ):
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    def verify_connection(self) -> None:
        self.client.ping()

    async def get(self, key: str) -> Optional[str]:
        return self.client.get(self._key(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.set(self._key(key), value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        self.client.delete(self._key(key))

    async def close(self) -> None:
        self.client.close()


class MemoryCache:
    """Process-local TTL cache used when Redis is unavailable in dev/test.

    Entries expire lazily on read; ``ttls`` keeps the TTL each key was last
    written with so callers can inspect it.
    """

    def __init__(self, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self.ttls: Dict[str, int] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                self._entries.pop(key, None)
                self.ttls.pop(key, None)
                return None
            return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ttl = max(1, int(ttl_seconds))
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)
            self.ttls[key] = ttl

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self.ttls.pop(key, None)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
            self.ttls.clear()
