"""Cache store backends: the persistent key-value medium under SmartCache.

A store only moves strings around: ``get``/``put``/``delete``/``list_keys``.
Freshness is decided by SmartCache when it decodes a ``CacheEntry``; the
per-entry TTL given to ``put`` lets the medium reclaim space on its own.

Backends raise ``StorageUnavailable`` for any failure of the medium so the
caller has a single exception type to degrade on.

Env:
    REDIS_URL           redis://host:6379/0 (unset -> per-process memory store)
    CACHE_KEY_PREFIX    namespace for Redis keys (default "vinylcache:")
    MEMORY_CACHE_MAX    capacity of the memory store (default 4096)
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, List, Optional, Protocol, Tuple

from cachetools import TLRUCache
from pydantic import BaseModel, ValidationError
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from .errors import CacheDecodeError, StorageUnavailable
from .settings import settings

log = logging.getLogger(__name__)


def _glob_escape(text: str) -> str:
    """Escape Redis MATCH metacharacters so a prefix is matched literally."""
    return "".join("\\" + ch if ch in "*?[]\\" else ch for ch in text)


class CacheEntry(BaseModel):
    """Serialized unit written to a store under ``"{category}:{key}"``."""

    category: str
    key: str
    payload: Any = None
    stored_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def dumps(self) -> str:
        return self.model_dump_json()

    @classmethod
    def loads(cls, raw: str | bytes) -> "CacheEntry":
        """Decode a stored entry.

        Raises:
            CacheDecodeError: If the payload is not a valid entry.
        """
        try:
            return cls.model_validate_json(raw)
        except (ValidationError, ValueError) as exc:
            raise CacheDecodeError(str(exc)) from exc


class CacheStore(Protocol):
    """Contract consumed by SmartCache. No transactional guarantees."""

    async def get(self, key: str) -> Optional[str]: ...

    async def put(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list_keys(self, prefix: str = "") -> List[str]: ...


class MemoryCacheStore:
    """Per-process store with per-entry TTL and LRU capacity.

    Backed by ``cachetools.TLRUCache``; each value carries its own expiry so
    categories with different TTLs can share one bounded cache.
    """

    def __init__(
        self, capacity: int = 1024, timer: Callable[[], float] = time.time
    ) -> None:
        self._cap = capacity
        self._cache: "TLRUCache[str, Tuple[float, str]]" = TLRUCache(
            maxsize=capacity,
            ttu=lambda _key, value, _now: value[0],
            timer=timer,
        )
        self._timer = timer

    async def get(self, key: str) -> Optional[str]:
        item = self._cache.get(key)
        return item[1] if item else None

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        self._cache[key] = (self._timer() + ttl_seconds, value)

    async def delete(self, key: str) -> None:
        self._cache.pop(key, None)

    async def list_keys(self, prefix: str = "") -> List[str]:
        self._cache.expire()
        return [k for k in list(self._cache.keys()) if k.startswith(prefix)]


class RedisCacheStore:
    """Shared store over ``redis.asyncio``.

    Keys are namespaced with ``namespace`` so several services can share a
    database; the namespace is stripped again in ``list_keys``.
    """

    def __init__(self, client: "aioredis.Redis", namespace: str = "") -> None:
        self._client = client
        self._ns = namespace

    @classmethod
    def from_url(cls, url: str, namespace: str = "") -> "RedisCacheStore":
        client = aioredis.Redis.from_url(
            url,
            decode_responses=True,
            encoding="utf-8",
            socket_connect_timeout=2.0,
            socket_timeout=2.0,
        )
        return cls(client, namespace=namespace)

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(self._ns + key)
        except (RedisError, OSError) as exc:
            raise StorageUnavailable("get", exc) from exc

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._client.set(self._ns + key, value, ex=max(1, int(ttl_seconds)))
        except (RedisError, OSError) as exc:
            raise StorageUnavailable("put", exc) from exc

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(self._ns + key)
        except (RedisError, OSError) as exc:
            raise StorageUnavailable("delete", exc) from exc

    async def list_keys(self, prefix: str = "") -> List[str]:
        keys: List[str] = []
        try:
            async for k in self._client.scan_iter(match=_glob_escape(self._ns + prefix) + "*"):
                keys.append(k[len(self._ns):])
        except (RedisError, OSError) as exc:
            raise StorageUnavailable("list_keys", exc) from exc
        return keys

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError):
            return False

    async def close(self) -> None:
        await self._client.aclose()


def build_store(redis_url: str | None = None) -> CacheStore:
    """Pick the store backend from configuration."""
    url = settings.REDIS_URL if redis_url is None else redis_url
    if url:
        log.info("cache.store backend=redis namespace=%s", settings.CACHE_KEY_PREFIX)
        return RedisCacheStore.from_url(url, namespace=settings.CACHE_KEY_PREFIX)
    log.info("cache.store backend=memory capacity=%d", settings.MEMORY_CACHE_MAX)
    return MemoryCacheStore(capacity=settings.MEMORY_CACHE_MAX)
