"""Cache stores for balance and price snapshots.

Two tiers: a shared Redis store (primary) and a per-process dictionary
(fallback). The local tier is not shared across instances, so it is only
suitable for best-effort caching; nonce allocation never goes through here.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol, Tuple

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class CacheStore(Protocol):
    """Key/value store with per-entry expiry holding JSON-serialisable values."""

    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value for ``key`` or ``None`` when absent/expired."""

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        """Store ``value`` under ``key`` for ``ttl_seconds``."""

    async def delete(self, key: str) -> None:
        """Drop ``key`` if present."""

    async def ping(self) -> bool:
        """Return True if the store is reachable."""

    async def close(self) -> None:  # pragma: no cover - interface default
        """Release any resources held by the store."""


class InMemoryCacheStore(CacheStore):
    """Process-local cache; entries expire lazily on read."""

    def __init__(self, clock=time.monotonic) -> None:
        self._entries: Dict[str, Tuple[float, str]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, raw = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        raw = json.dumps(value, default=_json_default)
        async with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, raw)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:  # pragma: no cover - nothing to release
        return None


class RedisCacheStore(CacheStore):
    """Cache backed by Redis, shared by every process of the service."""

    def __init__(self, client: "Redis", key_prefix: str = "custody") -> None:
        self._redis = client
        self._key_prefix = key_prefix

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._redis.get(self._key(key))
        if raw is None:
            return None
        if isinstance(raw, bytes):  # pragma: no cover - depends on redis config
            raw = raw.decode("utf-8")
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        await self._redis.set(
            self._key(key),
            json.dumps(value, default=_json_default),
            ex=max(1, int(ttl_seconds)),
        )

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def close(self) -> None:
        await self._redis.aclose()

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"


class TieredCache(CacheStore):
    """Read the primary store; the local store answers only when the primary is absent or failing.

    Writes and deletes go to both tiers so a primary outage does not serve
    values that were invalidated while it was reachable. Primary failures are
    logged and absorbed.
    """

    def __init__(self, primary: Optional[CacheStore], local: Optional[CacheStore] = None) -> None:
        self._primary = primary
        self._local = local or InMemoryCacheStore()

    async def get(self, key: str) -> Optional[Any]:
        if self._primary is not None:
            try:
                value = await self._primary.get(key)
            except Exception as exc:
                logger.warning("Primary cache get failed for %s: %s", key, exc)
            else:
                return value
        return await self._local.get(key)

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        if self._primary is not None:
            try:
                await self._primary.set(key, value, ttl_seconds)
            except Exception as exc:
                logger.warning("Primary cache set failed for %s: %s", key, exc)
        await self._local.set(key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        if self._primary is not None:
            try:
                await self._primary.delete(key)
            except Exception as exc:
                logger.warning("Primary cache delete failed for %s: %s", key, exc)
        await self._local.delete(key)

    async def ping(self) -> bool:
        if self._primary is None:
            return await self._local.ping()
        try:
            return await self._primary.ping()
        except Exception as exc:
            logger.warning("Primary cache ping failed: %s", exc)
            return False

    async def close(self) -> None:
        if self._primary is not None:
            await self._primary.close()
        await self._local.close()


def create_cache(redis_url: str | None) -> TieredCache:
    """Create the cache appropriate for the runtime configuration."""

    if redis_url:
        import redis.asyncio as redis

        client = redis.from_url(redis_url, decode_responses=True)
        logger.info("Using Redis primary cache with in-memory fallback")
        return TieredCache(RedisCacheStore(client))

    logger.info("REDIS_URL not set, using in-memory cache only")
    return TieredCache(None)


def _json_default(value: Any) -> Any:
    """Gracefully serialise otherwise unsupported values."""

    return str(value)
