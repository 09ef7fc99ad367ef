"""Pydantic schemas for cached aggregates, statistics and API bodies."""

from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Pagination(BaseModel):
    page: int = 1
    pages: int = 1
    per_page: int = 0
    items: int = 0


class AggregatedCollection(BaseModel):
    """Concatenation of every fetched page of a user's collection.

    ``pagination`` describes the aggregate, not an upstream page: ``pages`` is
    the number of pages fetched and ``per_page``/``items`` are the total item
    count. ``truncated`` is set when upstream reported more pages than the
    safety cap allowed; the data is valid but incomplete.
    """

    items: List[Dict[str, Any]] = Field(default_factory=list)
    pagination: Pagination
    page_count: int
    total_pages: int  # reported pages, capped at max_pages
    reported_pages: int
    truncated: bool = False


class CollectionStats(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total_items: int = 0
    total_value: float = 0.0
    genre_breakdown: Dict[str, int] = Field(default_factory=dict)
    decade_breakdown: Dict[str, int] = Field(default_factory=dict)
    format_breakdown: Dict[str, int] = Field(default_factory=dict)
    label_breakdown: Dict[str, int] = Field(default_factory=dict)
    average_rating: float = 0.0
    rated_item_count: int = 0


class CacheStats(BaseModel):
    total_entries: int
    entries_by_category: Dict[str, int]
    pending_requests: int
    store_available: bool = True


class CollectionOut(AggregatedCollection):
    caveat: Optional[str] = None


class InvalidateOut(BaseModel):
    username: str
    removed: int


class HealthcheckOut(BaseModel):
    status: Literal["ok", "degraded"]
    upstream_ok: bool
    store_ok: bool
    pending_requests: int


class ProblemDetail(BaseModel):
    """RFC 7807-style problem response (simplified)."""

    type: str = "about:blank"
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None
