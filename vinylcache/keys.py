"""Cache categories (freshness buckets) and cache key builders.

Every cached value lives under ``"{category}:{key}"``. Key builders normalise
their inputs so that identical logical requests always map to the same key,
and they join parts with ``:`` in a fixed order so distinct requests never
collide. Usernames are placed first so a whole user can be invalidated by
prefix (``collections:alice``).
"""

from __future__ import annotations

import hashlib
from enum import Enum
from typing import Dict, List, Optional

from .settings import settings

DEFAULT_PER_PAGE = 50


class CacheCategory(str, Enum):
    """Named freshness policy buckets."""

    COLLECTIONS = "collections"
    SEARCHES = "searches"
    RELEASES = "releases"
    STATS = "stats"
    USER_PROFILES = "userProfiles"

    @property
    def default_ttl(self) -> int:
        """Default time-to-live in seconds for entries in this category."""
        return CATEGORY_TTLS[self]

    def __str__(self) -> str:
        return self.value


# Resolved once at import; categories are immutable after startup.
CATEGORY_TTLS: Dict[CacheCategory, int] = {
    CacheCategory.COLLECTIONS: settings.TTL_COLLECTIONS,
    CacheCategory.SEARCHES: settings.TTL_SEARCHES,
    CacheCategory.RELEASES: settings.TTL_RELEASES,
    CacheCategory.STATS: settings.TTL_STATS,
    CacheCategory.USER_PROFILES: settings.TTL_USER_PROFILES,
}


def full_key(category: CacheCategory | str, key: str) -> str:
    """Combine a category and a category-local key into the stored key."""
    return f"{CacheCategory(category).value}:{key}"


def _norm(value: object) -> str:
    if value is None:
        return "default"
    return str(value).strip()


def _page_size(per_page: Optional[int]) -> str:
    return str(per_page or DEFAULT_PER_PAGE)


def _ordering(sort: Optional[str], sort_order: Optional[str]) -> List[str]:
    return [_norm(sort), _norm(sort_order or "desc")]


class CacheKeys:
    """Builders for category-local cache keys."""

    @staticmethod
    def release(release_id: int | str) -> str:
        return _norm(release_id)

    @staticmethod
    def collection(
        username: str,
        page: Optional[int] = None,
        sort: Optional[str] = None,
        sort_order: Optional[str] = None,
        per_page: Optional[int] = None,
    ) -> str:
        return ":".join(
            [_norm(username), str(page or 1), _page_size(per_page)]
            + _ordering(sort, sort_order)
        )

    @staticmethod
    def collection_search(
        username: str,
        query: str,
        page: Optional[int] = None,
        per_page: Optional[int] = None,
        sort: Optional[str] = None,
        sort_order: Optional[str] = None,
    ) -> str:
        # Query text is case-insensitive upstream; fold it so "Miles" and
        # "miles " share one entry.
        return ":".join(
            [_norm(username), "search", query.strip().lower()]
            + [str(page or 1), _page_size(per_page)]
            + _ordering(sort, sort_order)
        )

    @staticmethod
    def complete_collection(username: str, max_pages: int) -> str:
        return f"{_norm(username)}:complete:{int(max_pages)}"

    @staticmethod
    def stats(username: str) -> str:
        return f"{_norm(username)}:value"

    @staticmethod
    def user_profile(access_token: str) -> str:
        """Key a profile by its credential token without storing the token."""
        return hashlib.sha256(access_token.encode("utf-8")).hexdigest()

    @staticmethod
    def database_search(
        query: str,
        type: Optional[str] = None,
        page: Optional[int] = None,
        per_page: Optional[int] = None,
    ) -> str:
        return ":".join(
            [query.strip().lower(), type or "all", str(page or 1), _page_size(per_page)]
        )
