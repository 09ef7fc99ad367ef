"""Cached facade over the Discogs client, used by tool handlers.

Each upstream call is routed through ``SmartCache`` under the category that
matches how volatile the data is. Tools that need the whole collection
(search, stats, recommendations) share one cached aggregate via
``complete_collection``, so only the first call in a 45 minute window pays
the pagination cost.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from .aggregator import CollectionAggregator
from .clients import Credentials, DiscogsClient, filter_items
from .keys import CacheCategory, CacheKeys
from .schemas import AggregatedCollection, CacheStats, CollectionStats
from .settings import settings
from .smart_cache import Fetcher, FetchOptions, SmartCache
from .stats import compute_stats
from .store import CacheStore

log = logging.getLogger(__name__)

# Categories holding per-user data; userProfiles is keyed by token hash
# and releases are shared across users.
USER_SCOPED = (CacheCategory.COLLECTIONS, CacheCategory.SEARCHES, CacheCategory.STATS)


class CachedDiscogsClient:
    def __init__(
        self,
        client: DiscogsClient,
        store: CacheStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.cache = SmartCache(store, clock=clock)
        self.aggregator = CollectionAggregator(self.cache, client.fetch_page)

    async def get_release(
        self, release_id: int | str, credentials: Optional[Credentials] = None
    ) -> Dict[str, Any]:
        return await self.cache.get_or_fetch(
            CacheCategory.RELEASES,
            CacheKeys.release(release_id),
            Fetcher(self.client.get_release, (release_id, credentials)),
        )

    async def search_collection(
        self,
        username: str,
        credentials: Optional[Credentials] = None,
        *,
        query: Optional[str] = None,
        page: int = 1,
        per_page: int = 50,
        sort: Optional[str] = None,
        sort_order: str = "desc",
    ) -> Dict[str, Any]:
        """Browse (no query) or search (query) one page of a collection.

        Searches are context-specific and use the short ``searches`` TTL;
        plain browsing is cached as ``collections`` for 20 minutes.
        """
        if query:
            return await self.cache.get_or_fetch(
                CacheCategory.SEARCHES,
                CacheKeys.collection_search(
                    username, query, page, per_page, sort, sort_order
                ),
                Fetcher(
                    self._search_page,
                    (username, credentials, query, page, per_page, sort, sort_order),
                ),
            )
        return await self.cache.get_or_fetch(
            CacheCategory.COLLECTIONS,
            CacheKeys.collection(username, page, sort, sort_order, per_page),
            Fetcher(
                self.client.fetch_page,
                (username, page, per_page, credentials, sort, sort_order),
            ),
            FetchOptions(max_age=settings.COLLECTION_BROWSE_MAX_AGE),
        )

    async def _search_page(
        self,
        username: str,
        credentials: Optional[Credentials],
        query: str,
        page: int,
        per_page: int,
        sort: Optional[str],
        sort_order: str,
    ) -> Dict[str, Any]:
        resp = await self.client.fetch_page(
            username, page, per_page, credentials, sort, sort_order
        )
        matched = filter_items(resp["items"], query)
        return {"items": matched, "pagination": {**resp["pagination"], "items": len(matched)}}

    async def get_collection_value(
        self, username: str, credentials: Optional[Credentials] = None
    ) -> Dict[str, Any]:
        return await self.cache.get_or_fetch(
            CacheCategory.STATS,
            CacheKeys.stats(username),
            Fetcher(self.client.get_collection_value, (username, credentials)),
        )

    async def get_user_profile(self, credentials: Credentials) -> Dict[str, Any]:
        return await self.cache.get_or_fetch(
            CacheCategory.USER_PROFILES,
            CacheKeys.user_profile(credentials.access_token),
            Fetcher(self.client.get_user_profile, (credentials,)),
        )

    async def search_database(
        self,
        query: str,
        credentials: Optional[Credentials] = None,
        *,
        type: Optional[str] = None,
        page: int = 1,
        per_page: int = 50,
    ) -> Dict[str, Any]:
        return await self.cache.get_or_fetch(
            CacheCategory.SEARCHES,
            CacheKeys.database_search(query, type, page, per_page),
            Fetcher(
                self.client.search_database,
                (query, credentials),
                {"type": type, "page": page, "per_page": per_page},
            ),
            FetchOptions(max_age=settings.DATABASE_SEARCH_MAX_AGE),
        )

    # --- complete collection -------------------------------------------

    async def complete_collection(
        self,
        username: str,
        credentials: Optional[Credentials] = None,
        max_pages: Optional[int] = None,
    ) -> AggregatedCollection:
        return await self.aggregator.get_complete_collection(
            username, credentials, max_pages
        )

    async def complete_collection_items(
        self,
        username: str,
        credentials: Optional[Credentials] = None,
        max_pages: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        return await self.aggregator.get_complete_collection_items(
            username, credentials, max_pages
        )

    async def collection_stats(
        self,
        username: str,
        credentials: Optional[Credentials] = None,
        max_pages: Optional[int] = None,
    ) -> CollectionStats:
        """Stats computed from the cached aggregate; no extra upstream calls."""
        items = await self.complete_collection_items(username, credentials, max_pages)
        return compute_stats(items)

    # --- maintenance ---------------------------------------------------

    async def get_cache_stats(self) -> CacheStats:
        return await self.cache.get_stats()

    async def invalidate_user_cache(self, username: str) -> int:
        """Drop every per-user entry (collections, searches, stats)."""
        removed = 0
        for cat in USER_SCOPED:
            removed += await self.cache.invalidate(f"{cat.value}:{username}:")
        return removed

    async def warm_user_cache(self, username: str, credentials: Credentials) -> bool:
        """Preload page 1 and the profile. Failures are logged, not raised."""
        log.info("cache.warm start user=%s", username)
        try:
            await self.search_collection(username, credentials, page=1, per_page=50)
            await self.get_user_profile(credentials)
        except Exception as exc:
            log.warning("cache.warm failed user=%s error=%r", username, exc)
            return False
        log.info("cache.warm complete user=%s", username)
        return True

    def cleanup_cache(self) -> int:
        return self.cache.cleanup_pending_requests()
