"""
Volatile key-value storage with TTL semantics.

Used for values that are cheap to lose (provider access tokens and similar).
Sponsorship state never lives here: the reservation protocol and the
reconciliation writes depend only on the database.
"""
import asyncio
import time
from typing import Optional, Protocol, runtime_checkable

import redis.asyncio as aioredis
import structlog

from sponsorships.config import Settings

logger = structlog.get_logger(__name__)


@runtime_checkable
class KeyValueStore(Protocol):
    """Minimal async key-value contract."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class InMemoryKeyValueStore:
    """Process-local store; entries expire lazily on access."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._data[key]
                return None
            return value

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is not None and ttl_seconds <= 0:
            await self.delete(key)
            return
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        async with self._lock:
            self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        async with self._lock:
            self._data.clear()


class RedisKeyValueStore:
    """Redis-backed store shared by all workers."""

    def __init__(self, redis_client: aioredis.Redis):
        self.redis_client = redis_client

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        return cls(aioredis.from_url(url, encoding="utf-8", decode_responses=True))

    async def get(self, key: str) -> Optional[str]:
        return await self.redis_client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is not None and ttl_seconds <= 0:
            await self.delete(key)
            return
        await self.redis_client.set(key, value, ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self.redis_client.delete(key)

    async def ping(self) -> bool:
        return bool(await self.redis_client.ping())

    async def close(self) -> None:
        await self.redis_client.aclose()


def create_kv_store(settings: Settings) -> KeyValueStore:
    """Pick Redis when configured, otherwise the in-memory store."""
    if settings.redis_url:
        logger.info("kv_store_selected", backend="redis")
        return RedisKeyValueStore.from_url(settings.redis_url)
    logger.info("kv_store_selected", backend="memory")
    return InMemoryKeyValueStore()
