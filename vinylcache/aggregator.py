"""Complete-collection aggregation on top of SmartCache.

Turns the page-oriented collection endpoint into one cached dataset per
(user, page cap). Pages are fetched strictly one after another: the upstream
allows a fixed number of requests per second and a parallel fan-out would get
throttled. The first tool call pays roughly ``items / 100`` requests; every
call in the next 45 minutes is served from the cache.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from . import metrics
from .clients import MAX_PER_PAGE
from .keys import CacheCategory, CacheKeys
from .schemas import AggregatedCollection, Pagination
from .settings import settings
from .smart_cache import Fetcher, FetchOptions, SmartCache

log = logging.getLogger(__name__)

# fetch_page(identity, page, per_page, credentials) -> {"items": [...], "pagination": {...}}
PageFetcher = Callable[[str, int, int, Any], Awaitable[Mapping[str, Any]]]


def _page_items(resp: Mapping[str, Any]) -> List[Dict[str, Any]]:
    items = resp.get("items")
    if items is None:
        items = resp.get("releases")  # raw upstream collection page
    return list(items or [])


def _reported_pages(resp: Mapping[str, Any]) -> int:
    try:
        pages = int((resp.get("pagination") or {}).get("pages") or 1)
    except (TypeError, ValueError):
        pages = 1
    return max(pages, 1)


class CollectionAggregator:
    """Fetch-all-pages with a safety cap, cached as a single entry."""

    def __init__(
        self,
        cache: SmartCache,
        fetch_page: PageFetcher,
        *,
        max_age: int = settings.COMPLETE_COLLECTION_MAX_AGE,
        per_page: int = MAX_PER_PAGE,
    ) -> None:
        self._cache = cache
        self._fetch_page = fetch_page
        self._max_age = max_age
        self._per_page = min(per_page, MAX_PER_PAGE)

    async def get_complete_collection(
        self,
        identity: str,
        credentials: Any = None,
        max_pages: Optional[int] = None,
    ) -> AggregatedCollection:
        """Return every item of ``identity``'s collection, up to ``max_pages``.

        Args:
            identity: Whose collection (username).
            credentials: Passed through to the page fetcher unmodified.
            max_pages: Page cap; worst case is ``max_pages * 100`` items.

        Returns:
            AggregatedCollection; ``truncated`` is True when upstream has more
            pages than the cap.

        Raises:
            ValueError: If ``max_pages`` < 1.
            Any error from the page fetcher; nothing is cached in that case.
        """
        if max_pages is None:
            max_pages = settings.COMPLETE_COLLECTION_MAX_PAGES
        if max_pages < 1:
            raise ValueError("max_pages must be >= 1")

        data = await self._cache.get_or_fetch(
            CacheCategory.COLLECTIONS,
            CacheKeys.complete_collection(identity, max_pages),
            Fetcher(self._fetch_all_pages, (identity, credentials, max_pages)),
            FetchOptions(max_age=self._max_age),
        )
        return AggregatedCollection.model_validate(data)

    async def get_complete_collection_items(
        self,
        identity: str,
        credentials: Any = None,
        max_pages: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Only the item list, for callers filtering in memory."""
        collection = await self.get_complete_collection(identity, credentials, max_pages)
        return collection.items

    async def _fetch_all_pages(
        self, identity: str, credentials: Any, max_pages: int
    ) -> Dict[str, Any]:
        log.info("aggregate.start user=%s max_pages=%d", identity, max_pages)

        first = await self._fetch_page(identity, 1, self._per_page, credentials)
        metrics.record_page_fetch()
        items = _page_items(first)
        reported = _reported_pages(first)
        last_page = min(reported, max_pages)

        for page in range(2, last_page + 1):
            resp = await self._fetch_page(identity, page, self._per_page, credentials)
            metrics.record_page_fetch()
            items.extend(_page_items(resp))

        truncated = reported > max_pages
        if truncated:
            metrics.record_truncation()
            log.warning(
                "aggregate.truncated user=%s max_pages=%d reported_pages=%d items=%d",
                identity,
                max_pages,
                reported,
                len(items),
            )
        log.info(
            "aggregate.complete user=%s pages=%d items=%d truncated=%s",
            identity,
            last_page,
            len(items),
            truncated,
        )

        collection = AggregatedCollection(
            items=items,
            pagination=Pagination(
                page=1, pages=last_page, per_page=len(items), items=len(items)
            ),
            page_count=last_page,
            total_pages=last_page,
            reported_pages=reported,
            truncated=truncated,
        )
        return collection.model_dump(mode="json")
