"""Derived statistics over an aggregated collection.

Pure computation: no I/O, no caching, no shared state. Callers fetch the
complete collection once (see ``CollectionAggregator``) and pass its items
here, so stats cost zero additional upstream calls.
"""

from typing import Any, Dict, Iterable, Mapping

from .schemas import CollectionStats


def _bump(counts: Dict[str, int], label: Any) -> None:
    if label:
        counts[str(label)] = counts.get(str(label), 0) + 1


def _names(values: Any) -> Iterable[Any]:
    """Yield tag names from a list of strings or ``{"name": ...}`` dicts."""
    for v in values or []:
        yield v.get("name") if isinstance(v, Mapping) else v


def decade_of(year: Any) -> str | None:
    """``1969 -> "1960s"``; ``None`` for a missing or zero year."""
    try:
        y = int(year)
    except (TypeError, ValueError):
        return None
    if y <= 0:
        return None
    return f"{(y // 10) * 10}s"


def compute_stats(items: Iterable[Mapping[str, Any]]) -> CollectionStats:
    """Compute breakdowns and rating average in a single pass.

    Items may carry release fields directly or under ``basic_information``
    (upstream collection shape); ``rating`` and ``value`` are read from the
    item itself.

    Args:
        items: Collection items in any order.

    Returns:
        CollectionStats. ``average_rating`` is 0 when nothing is rated.
    """
    genres: Dict[str, int] = {}
    decades: Dict[str, int] = {}
    formats: Dict[str, int] = {}
    labels: Dict[str, int] = {}
    total = 0
    total_value = 0.0
    rating_sum = 0.0
    rated = 0

    for item in items:
        total += 1
        info = item.get("basic_information") or item

        for g in info.get("genres") or []:
            _bump(genres, g)
        for f in _names(info.get("formats")):
            _bump(formats, f)
        for lbl in _names(info.get("labels")):
            _bump(labels, lbl)
        _bump(decades, decade_of(info.get("year")))

        rating = item.get("rating") or 0
        if isinstance(rating, (int, float)) and rating > 0:
            rating_sum += rating
            rated += 1

        value = item.get("value")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            total_value += value

    return CollectionStats(
        total_items=total,
        total_value=round(total_value, 2),
        genre_breakdown=genres,
        decade_breakdown=decades,
        format_breakdown=formats,
        label_breakdown=labels,
        average_rating=rating_sum / rated if rated else 0.0,
        rated_item_count=rated,
    )
