"""SmartCache tests.

Covers:
* Single-flight coalescing of concurrent misses.
* Cache hits within TTL, expiry, and per-call max_age overrides.
* Failed fetches are not cached and clear the pending entry.
* Store failures and undecodable entries degrade to a direct fetch.
* Prefix invalidation, stats, and pending-request cleanup.
"""

from __future__ import annotations

import asyncio

import pytest
from prometheus_client import REGISTRY

from vinylcache.errors import StorageUnavailable
from vinylcache.keys import CacheCategory
from vinylcache.smart_cache import Fetcher, FetchOptions, SmartCache
from vinylcache.store import MemoryCacheStore


class Counter:
    """Async producer that counts invocations and can be held open."""

    def __init__(self, value=None, delay: float = 0.0, exc: Exception | None = None):
        self.n = 0
        self.value = value if value is not None else {"v": 42}
        self.delay = delay
        self.exc = exc

    async def __call__(self):
        self.n += 1
        await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        return self.value


class BrokenStore:
    """Store whose every operation fails like an unreachable Redis."""

    def __init__(self):
        self.puts = 0

    async def get(self, key):
        raise StorageUnavailable("get", ConnectionError("refused"))

    async def put(self, key, value, ttl_seconds):
        self.puts += 1
        raise StorageUnavailable("put", ConnectionError("refused"))

    async def delete(self, key):
        raise StorageUnavailable("delete", ConnectionError("refused"))

    async def list_keys(self, prefix=""):
        raise StorageUnavailable("list_keys", ConnectionError("refused"))


@pytest.mark.asyncio
async def test_concurrent_misses_fetch_exactly_once(cache):
    """M concurrent callers for one key share a single fetch."""
    fetch = Counter(delay=0.01)

    results = await asyncio.gather(
        *[cache.get_or_fetch("releases", "123", fetch) for _ in range(10)]
    )

    assert fetch.n == 1
    assert all(r == {"v": 42} for r in results)
    assert len(cache.pending) == 0


@pytest.mark.asyncio
async def test_distinct_keys_are_not_coalesced(cache):
    fetch = Counter(delay=0.01)
    await asyncio.gather(
        cache.get_or_fetch("releases", "1", fetch),
        cache.get_or_fetch("releases", "2", fetch),
        cache.get_or_fetch("stats", "1", fetch),
    )
    assert fetch.n == 3


@pytest.mark.asyncio
async def test_hit_within_ttl_skips_fetch(cache, clock):
    fetch = Counter()
    assert await cache.get_or_fetch("searches", "q", fetch) == {"v": 42}
    clock.advance(CacheCategory.SEARCHES.default_ttl - 1)
    assert await cache.get_or_fetch("searches", "q", fetch) == {"v": 42}
    assert fetch.n == 1


@pytest.mark.asyncio
async def test_expired_entry_is_refetched(cache, clock):
    fetch = Counter()
    await cache.get_or_fetch("searches", "q", fetch)
    clock.advance(CacheCategory.SEARCHES.default_ttl + 1)
    await cache.get_or_fetch("searches", "q", fetch)
    assert fetch.n == 2


@pytest.mark.asyncio
async def test_max_age_overrides_category_default(cache, clock):
    """An explicit max_age wins over the (longer) category TTL."""
    fetch = Counter()
    opts = FetchOptions(max_age=60)
    await cache.get_or_fetch("releases", "9", fetch, opts)
    clock.advance(61)
    await cache.get_or_fetch("releases", "9", fetch, opts)
    assert fetch.n == 2


def test_fetch_options_resolution_order():
    assert FetchOptions().resolve_ttl(CacheCategory.RELEASES) == CacheCategory.RELEASES.default_ttl
    assert FetchOptions(max_age=5).resolve_ttl(CacheCategory.RELEASES) == 5


@pytest.mark.asyncio
async def test_zero_max_age_fetches_without_storing(cache, store):
    fetch = Counter()
    await cache.get_or_fetch("searches", "nocache", fetch, FetchOptions(max_age=0))
    await cache.get_or_fetch("searches", "nocache", fetch, FetchOptions(max_age=0))
    assert fetch.n == 2
    assert await store.list_keys("") == []


@pytest.mark.asyncio
async def test_failure_is_not_cached_and_next_call_retries(cache, store):
    failing = Counter(exc=RuntimeError("429 from upstream"))

    with pytest.raises(RuntimeError, match="429"):
        await cache.get_or_fetch("collections", "alice:1", failing)

    assert len(cache.pending) == 0
    assert await store.get("collections:alice:1") is None

    ok = Counter(value={"ok": True})
    assert await cache.get_or_fetch("collections", "alice:1", ok) == {"ok": True}
    assert ok.n == 1


@pytest.mark.asyncio
async def test_failure_is_shared_by_coalesced_waiters(cache):
    failing = Counter(delay=0.01, exc=ValueError("boom"))
    results = await asyncio.gather(
        *[cache.get_or_fetch("stats", "alice", failing) for _ in range(5)],
        return_exceptions=True,
    )
    assert failing.n == 1
    assert all(isinstance(r, ValueError) for r in results)
    assert len(cache.pending) == 0


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_fetch(cache):
    """Other waiters still get the value when the initiating caller goes away."""
    fetch = Counter(delay=0.05)

    first = asyncio.ensure_future(cache.get_or_fetch("releases", "7", fetch))
    await asyncio.sleep(0)
    second = asyncio.ensure_future(cache.get_or_fetch("releases", "7", fetch))
    await asyncio.sleep(0.01)
    first.cancel()

    assert await second == {"v": 42}
    assert fetch.n == 1
    with pytest.raises(asyncio.CancelledError):
        await first


@pytest.mark.asyncio
async def test_fetcher_value_carries_arguments(cache):
    seen = []

    async def load(release_id, token=None):
        seen.append((release_id, token))
        return {"id": release_id}

    f = Fetcher(load, (5,), {"token": "t"})
    assert f.name.endswith("load")
    assert await cache.get_or_fetch("releases", "5", f) == {"id": 5}
    assert seen == [(5, "t")]


@pytest.mark.asyncio
async def test_unknown_category_is_rejected(cache):
    with pytest.raises(ValueError):
        await cache.get_or_fetch("nope", "k", Counter())


@pytest.mark.asyncio
async def test_store_outage_falls_through_to_direct_fetch(caplog):
    store = BrokenStore()
    cache = SmartCache(store)
    fetch = Counter()

    caplog.set_level("WARNING")
    assert await cache.get_or_fetch("releases", "1", fetch) == {"v": 42}
    assert await cache.get_or_fetch("releases", "1", fetch) == {"v": 42}

    assert fetch.n == 2  # nothing could be cached
    assert store.puts == 2
    assert "cache.store_unavailable" in caplog.text


@pytest.mark.asyncio
async def test_undecodable_entry_is_treated_as_miss(cache, store):
    await store.put("releases:1", "{not json", 60)
    fetch = Counter()
    assert await cache.get_or_fetch("releases", "1", fetch) == {"v": 42}
    assert fetch.n == 1
    # The refetch overwrote the bad entry.
    assert await cache.get_or_fetch("releases", "1", fetch) == {"v": 42}
    assert fetch.n == 1


@pytest.mark.asyncio
async def test_unserializable_value_is_returned_uncached(cache, store):
    marker = object()
    fetch = Counter(value={"obj": marker})
    assert (await cache.get_or_fetch("releases", "odd", fetch))["obj"] is marker
    assert await store.get("releases:odd") is None


@pytest.mark.asyncio
async def test_invalidate_by_prefix(cache):
    fetch = Counter()
    await cache.get_or_fetch("collections", "alice:1:default:desc", fetch)
    await cache.get_or_fetch("collections", "alice:complete:25", fetch)
    await cache.get_or_fetch("collections", "bob:1:default:desc", fetch)
    assert fetch.n == 3

    removed = await cache.invalidate("collections:alice")
    assert removed == 2

    await cache.get_or_fetch("collections", "alice:complete:25", fetch)
    assert fetch.n == 4
    await cache.get_or_fetch("collections", "bob:1:default:desc", fetch)
    assert fetch.n == 4


@pytest.mark.asyncio
async def test_invalidate_does_not_touch_in_flight_fetch(cache):
    fetch = Counter(delay=0.02)
    task = asyncio.ensure_future(cache.get_or_fetch("releases", "3", fetch))
    await asyncio.sleep(0)
    assert await cache.invalidate("releases:") == 0
    assert await task == {"v": 42}
    assert "releases:3" not in cache.pending


@pytest.mark.asyncio
async def test_get_stats_counts_by_category_and_pending(cache):
    fetch = Counter()
    await cache.get_or_fetch("releases", "1", fetch)
    await cache.get_or_fetch("releases", "2", fetch)
    await cache.get_or_fetch("userProfiles", "abc", fetch)

    slow = Counter(delay=0.05)
    task = asyncio.ensure_future(cache.get_or_fetch("searches", "slow", slow))
    await asyncio.sleep(0)

    stats = await cache.get_stats()
    assert stats.total_entries == 3
    assert stats.entries_by_category == {"releases": 2, "userProfiles": 1}
    assert stats.pending_requests == 1
    assert stats.store_available is True

    await task
    assert (await cache.get_stats()).pending_requests == 0


@pytest.mark.asyncio
async def test_get_stats_reports_store_outage():
    stats = await SmartCache(BrokenStore()).get_stats()
    assert stats.store_available is False
    assert stats.total_entries == 0


@pytest.mark.asyncio
async def test_cleanup_pending_requests_is_noop_in_steady_state(cache):
    await cache.get_or_fetch("releases", "1", Counter())
    assert cache.cleanup_pending_requests() == 0


@pytest.mark.asyncio
async def test_cleanup_pending_requests_drops_settled_leftovers(cache):
    async def done():
        return 1

    leaked = asyncio.ensure_future(done())
    await leaked
    cache.pending.register("releases:leak", leaked)

    assert cache.cleanup_pending_requests() == 1
    assert len(cache.pending) == 0


@pytest.mark.asyncio
async def test_memory_store_is_shared_between_cache_instances(clock):
    """Two caches over one store: the second hits what the first wrote."""
    store = MemoryCacheStore(timer=clock)
    a, b = SmartCache(store, clock=clock), SmartCache(store, clock=clock)
    fetch = Counter()
    await a.get_or_fetch("releases", "1", fetch)
    await b.get_or_fetch("releases", "1", fetch)
    assert fetch.n == 1


def _pending_gauge() -> float:
    return REGISTRY.get_sample_value("smart_cache_pending_requests") or 0.0


@pytest.mark.asyncio
async def test_pending_gauge_sums_across_cache_instances(store, clock):
    first = SmartCache(store, clock=clock)
    second = SmartCache(store, clock=clock)
    base = _pending_gauge()

    gate = asyncio.Event()

    async def held():
        await gate.wait()
        return 1

    t1 = asyncio.ensure_future(first.get_or_fetch("releases", "1", held))
    t2 = asyncio.ensure_future(second.get_or_fetch("releases", "2", held))
    await asyncio.sleep(0)
    assert _pending_gauge() == base + 2

    gate.set()
    await asyncio.gather(t1, t2)
    assert _pending_gauge() == base
