import time
from fastapi import FastAPI, Request, Response
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# --- Metric objects ---
REQUESTS = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["path", "method", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_latency_seconds",
    "Request latency seconds",
    labelnames=["path", "method"],
)
CACHE_LOOKUPS = Counter(
    "smart_cache_lookups_total",
    "SmartCache lookups by outcome (hit, miss, coalesced)",
    labelnames=["category", "result"],
)
CACHE_ERRORS = Counter(
    "cache_errors_total", "Cache operation errors", labelnames=["cache", "op"]
)
PENDING_G = Gauge("smart_cache_pending_requests", "In-flight coalesced fetches across all caches in this process")
UPSTREAM_PAGES = Counter(
    "upstream_page_fetches_total", "Collection pages fetched from upstream"
)
TRUNCATED = Counter(
    "collection_truncated_total", "Complete-collection aggregates cut at the page cap"
)


# --- Public helpers ---
def record_lookup(category: str, result: str) -> None:
    CACHE_LOOKUPS.labels(category=category, result=result).inc()


def record_cache_error(op: str, cache: str = "smart") -> None:
    CACHE_ERRORS.labels(cache=cache, op=op).inc()


def pending_added(n: int = 1) -> None:
    PENDING_G.inc(n)


def pending_removed(n: int = 1) -> None:
    PENDING_G.dec(n)


def record_page_fetch() -> None:
    UPSTREAM_PAGES.inc()


def record_truncation() -> None:
    TRUNCATED.inc()


# --- Installation: middleware + /metrics endpoint ---
def install(app: FastAPI) -> None:
    @app.middleware("http")
    async def _metrics_mw(request: Request, call_next):
        t0 = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = getattr(response, "status_code", 500)
            return response
        finally:
            dur = time.perf_counter() - t0
            REQUEST_LATENCY.labels(
                path=request.url.path, method=request.method
            ).observe(dur)
            REQUESTS.labels(
                path=request.url.path,
                method=request.method,
                status=str(status),
            ).inc()

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
