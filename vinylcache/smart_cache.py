"""Read-through cache with per-category freshness and request coalescing.

``SmartCache.get_or_fetch`` is the single entry point used by the collection
aggregator and the cached upstream client:

1) Build ``"{category}:{key}"``.
2) If a fetch for that key is already in flight in this process, await it
   (single-flight); no second fetch is issued.
3) Otherwise register a pending task, read the store, and on a miss call the
   fetcher. Successful values are written back with ``max_age`` or the
   category default TTL.
4) The pending entry is removed exactly once when the task settles, on both
   the success and the failure path, so a failed fetch is retried by the next
   caller instead of replayed.

Coalescing is per process only. Two processes racing on one key both fetch
upstream; store writes are idempotent and last-writer-wins, which is accepted
for this data.

Store failures never fail a read: the value is fetched directly and returned
uncached. Upstream errors propagate unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, Union

from . import metrics
from .errors import CacheDecodeError, StorageUnavailable
from .keys import CacheCategory, full_key
from .schemas import CacheStats
from .store import CacheEntry, CacheStore

log = logging.getLogger(__name__)

_MISS = object()


@dataclass(frozen=True)
class FetchOptions:
    """Per-call cache options.

    ``max_age`` overrides the category default TTL (seconds) for this call
    only. A value ``<= 0`` fetches without persisting.
    """

    max_age: Optional[int] = None

    def resolve_ttl(self, category: CacheCategory) -> int:
        return self.max_age if self.max_age is not None else category.default_ttl


@dataclass(frozen=True)
class Fetcher:
    """A named producer: an async callable plus its captured arguments."""

    func: Callable[..., Awaitable[Any]]
    args: Tuple[Any, ...] = ()
    kwargs: Mapping[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return getattr(self.func, "__qualname__", repr(self.func))

    async def __call__(self) -> Any:
        return await self.func(*self.args, **self.kwargs)


FetchFn = Union[Fetcher, Callable[[], Awaitable[Any]]]


class PendingRegistry:
    """In-flight fetch tasks keyed by full cache key (one SmartCache each)."""

    def __init__(self) -> None:
        self._tasks: Dict[str, "asyncio.Task[Any]"] = {}

    def get(self, key: str) -> Optional["asyncio.Task[Any]"]:
        return self._tasks.get(key)

    def register(self, key: str, task: "asyncio.Task[Any]") -> None:
        if key not in self._tasks:
            metrics.pending_added()
        self._tasks[key] = task

    def discard(self, key: str, task: Optional["asyncio.Task[Any]"]) -> bool:
        """Remove ``key`` only if it still maps to ``task``."""
        if self._tasks.get(key) is not task:
            return False
        del self._tasks[key]
        metrics.pending_removed()
        return True

    def prune_settled(self) -> int:
        done = [k for k, t in self._tasks.items() if t.done()]
        for k in done:
            del self._tasks[k]
        if done:
            metrics.pending_removed(len(done))
        return len(done)

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, key: object) -> bool:
        return key in self._tasks


def _retrieve_exception(task: "asyncio.Task[Any]") -> None:
    # Waiters may all have been cancelled; mark the error as observed.
    if not task.cancelled():
        task.exception()


class SmartCache:
    """Get-or-fetch cache over a ``CacheStore``."""

    def __init__(
        self, store: CacheStore, clock: Callable[[], float] = time.time
    ) -> None:
        self._store = store
        self._clock = clock
        self._pending = PendingRegistry()

    @property
    def store(self) -> CacheStore:
        return self._store

    @property
    def pending(self) -> PendingRegistry:
        return self._pending

    async def get_or_fetch(
        self,
        category: CacheCategory | str,
        key: str,
        fetch: FetchFn,
        options: Optional[FetchOptions] = None,
    ) -> Any:
        """Return the cached value for ``key`` or produce it with ``fetch``.

        Args:
            category: Freshness bucket; selects the default TTL.
            key: Category-local key (see ``CacheKeys``).
            fetch: Zero-argument async producer, called at most once per
                in-flight key.
            options: Optional per-call TTL override.

        Returns:
            The cached or freshly fetched value.

        Raises:
            Whatever ``fetch`` raises; the error is not cached.
        """
        category = CacheCategory(category)
        fk = full_key(category, key)

        task = self._pending.get(fk)
        if task is not None:
            log.debug("cache.coalesced key=%s", fk)
            metrics.record_lookup(category.value, "coalesced")
            return await asyncio.shield(task)

        ttl = (options or FetchOptions()).resolve_ttl(category)
        task = asyncio.ensure_future(self._load(category, fk, fetch, ttl))
        task.add_done_callback(_retrieve_exception)
        self._pending.register(fk, task)
        return await asyncio.shield(task)

    async def _load(
        self, category: CacheCategory, fk: str, fetch: FetchFn, ttl: int
    ) -> Any:
        try:
            cached = await self._read(fk)
            if cached is not _MISS:
                log.debug("cache.hit key=%s", fk)
                metrics.record_lookup(category.value, "hit")
                return cached

            log.debug(
                "cache.miss key=%s ttl=%ds fetcher=%s",
                fk,
                ttl,
                getattr(fetch, "name", getattr(fetch, "__qualname__", "?")),
            )
            metrics.record_lookup(category.value, "miss")
            value = await fetch()
            if ttl > 0:
                await self._write(category, fk, value, ttl)
            return value
        finally:
            self._pending.discard(fk, asyncio.current_task())

    async def _read(self, fk: str) -> Any:
        try:
            raw = await self._store.get(fk)
        except StorageUnavailable as exc:
            log.warning("cache.store_unavailable op=get key=%s error=%r", fk, exc.cause)
            metrics.record_cache_error("get")
            return _MISS
        if raw is None:
            return _MISS

        try:
            entry = CacheEntry.loads(raw)
        except CacheDecodeError as exc:
            log.warning("cache.decode_failed key=%s error=%s", fk, exc)
            metrics.record_cache_error("decode")
            return _MISS

        if entry.is_expired(self._clock()):
            log.debug("cache.stale key=%s expired_at=%.0f", fk, entry.expires_at)
            return _MISS
        return entry.payload

    async def _write(self, category: CacheCategory, fk: str, value: Any, ttl: int) -> None:
        now = self._clock()
        try:
            raw = CacheEntry(
                category=category.value,
                key=fk,
                payload=value,
                stored_at=now,
                expires_at=now + ttl,
            ).dumps()
            await self._store.put(fk, raw, ttl)
        except StorageUnavailable as exc:
            log.warning("cache.store_unavailable op=put key=%s error=%r", fk, exc.cause)
            metrics.record_cache_error("put")
        except ValueError as exc:
            # Unserializable payload: serve it, skip persistence.
            log.error("cache.encode_failed key=%s error=%s", fk, exc)
            metrics.record_cache_error("encode")

    async def invalidate(self, prefix: str) -> int:
        """Delete every stored entry whose full key starts with ``prefix``.

        In-flight fetches are unaffected and will still write their result.

        Returns:
            Number of entries removed.

        Raises:
            StorageUnavailable: If the store cannot be listed or written.
        """
        keys = await self._store.list_keys(prefix)
        for k in keys:
            await self._store.delete(k)
        log.info("cache.invalidate prefix=%s removed=%d", prefix, len(keys))
        return len(keys)

    async def get_stats(self) -> CacheStats:
        """Entry counts (total and per category) and pending fetch count."""
        by_category: Dict[str, int] = {}
        try:
            keys = await self._store.list_keys("")
        except StorageUnavailable as exc:
            log.warning("cache.store_unavailable op=list_keys error=%r", exc.cause)
            metrics.record_cache_error("list_keys")
            return CacheStats(
                total_entries=0,
                entries_by_category={},
                pending_requests=len(self._pending),
                store_available=False,
            )

        for k in keys:
            cat = k.split(":", 1)[0]
            by_category[cat] = by_category.get(cat, 0) + 1
        return CacheStats(
            total_entries=len(keys),
            entries_by_category=by_category,
            pending_requests=len(self._pending),
        )

    def cleanup_pending_requests(self) -> int:
        """Drop registry entries whose task already settled.

        Settled tasks remove themselves, so this returns 0 in steady state.
        """
        n = self._pending.prune_settled()
        if n:
            log.warning("cache.pending_leak cleared=%d", n)
        return n
