"""Exception types shared across the cache, aggregator and upstream client."""

from __future__ import annotations


class VinylCacheError(Exception):
    """Base class for service errors."""


class StorageUnavailable(VinylCacheError):
    """A cache store operation failed (unreachable, timeout, protocol error).

    Recovered locally by SmartCache: the read path falls through to a direct
    fetch and the value is returned uncached.
    """

    def __init__(self, op: str, cause: BaseException | None = None) -> None:
        self.op = op
        self.cause = cause
        super().__init__(f"cache store {op} failed: {cause!r}")


class CacheDecodeError(VinylCacheError):
    """A stored entry could not be decoded; treated as a cache miss."""


class UpstreamError(VinylCacheError):
    """The upstream API answered with a non-retryable error status."""

    def __init__(self, status_code: int, detail: str | None = None) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"upstream returned {status_code}: {detail or ''}".rstrip(": "))


class UpstreamFetchFailed(UpstreamError):
    """Retries against the upstream API were exhausted."""

    def __init__(self, url: str, attempts: int, detail: str | None = None) -> None:
        self.url = url
        self.attempts = attempts
        super().__init__(503, detail or f"upstream unavailable after {attempts} attempts")
