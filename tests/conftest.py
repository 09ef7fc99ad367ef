# --- keep this shim at the very top ---
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
# --------------------------------------

import asyncio
from typing import Any, Dict, List, Optional

import pytest

# Never talk to a real Redis from unit tests.
os.environ["REDIS_URL"] = ""

from vinylcache.smart_cache import SmartCache  # noqa: E402
from vinylcache.store import MemoryCacheStore  # noqa: E402


class Clock:
    """Manually advanced clock shared by a store and a cache."""

    def __init__(self, t: float = 1_000.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class FakeUpstream:
    """Page-fetch collaborator serving ``total_items`` across 100-item pages.

    Records every call and the peak number of concurrent in-flight calls so
    tests can assert sequential pagination.
    """

    def __init__(
        self,
        total_items: int,
        per_page: int = 100,
        delay: float = 0.0,
        fail_on_page: Optional[int] = None,
    ) -> None:
        self.total_items = total_items
        self.per_page = per_page
        self.delay = delay
        self.fail_on_page = fail_on_page
        self.calls: List[Dict[str, Any]] = []
        self.events: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def pages(self) -> int:
        return max(1, -(-self.total_items // self.per_page))

    async def fetch_page(self, identity, page, per_page, credentials):
        self.calls.append(
            {"identity": identity, "page": page, "per_page": per_page, "credentials": credentials}
        )
        self.events.append(f"start:{page}")
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.fail_on_page == page:
                raise RuntimeError(f"upstream exploded on page {page}")
            start = (page - 1) * self.per_page
            end = min(start + self.per_page, self.total_items)
            items = [
                {"id": i, "rating": 0, "basic_information": {"title": f"Record {i}"}}
                for i in range(start + 1, end + 1)
            ]
            return {
                "items": items,
                "pagination": {
                    "page": page,
                    "pages": self.pages,
                    "per_page": self.per_page,
                    "items": self.total_items,
                },
            }
        finally:
            self.in_flight -= 1
            self.events.append(f"end:{page}")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(clock):
    return MemoryCacheStore(capacity=128, timer=clock)


@pytest.fixture
def cache(store, clock):
    return SmartCache(store, clock=clock)
