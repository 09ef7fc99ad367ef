"""FastAPI app, lifespan bootstrap, and HTTP routes.

Thin HTTP surface over ``CachedDiscogsClient`` for tool handlers:

- GET    /healthz                              -> liveness
- GET    /healthcheck                          -> store + upstream probe
- GET    /users/{username}/collection          -> complete (aggregated) collection
- GET    /users/{username}/collection/page     -> one browse/search page
- GET    /users/{username}/collection/stats    -> stats over the aggregate
- GET    /releases/{release_id}                -> release detail
- GET    /cache/stats                          -> entry counts + pending fetches
- DELETE /users/{username}/cache               -> invalidate a user's entries
- POST   /users/{username}/cache/warm          -> preload page 1 + profile

Credentials come from ``Authorization: Discogs token=...`` (or ``Bearer``)
and are passed through to the upstream client untouched.
"""

import os
import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse

from . import metrics
from .cached_client import CachedDiscogsClient
from .clients import Credentials, DiscogsClient
from .errors import StorageUnavailable, UpstreamError, UpstreamFetchFailed
from .logging_config import configure_logging
from .schemas import (
    CacheStats,
    CollectionOut,
    CollectionStats,
    HealthcheckOut,
    InvalidateOut,
    ProblemDetail,
)
from .settings import settings
from .store import build_store

configure_logging()
log = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# App
# ---------------------------------------------------------------------

app = FastAPI(title="Vinyl Cache", version="0.3.0")
metrics.install(app)


_STATUS_TITLES = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    422: "Unprocessable Entity",
    429: "Too Many Requests",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
}


def _problem(
    status: int,
    title: str | None = None,
    detail: str | None = None,
    instance: str | None = None,
) -> JSONResponse:
    """Return an RFC7807 problem+json response."""
    body = {
        "type": "about:blank",
        "title": title or _STATUS_TITLES.get(status, "Error"),
        "status": status,
        "detail": detail,
        "instance": instance,
    }
    return JSONResponse(
        status_code=status, content=body, media_type="application/problem+json"
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(_req: Request, exc: HTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else None
    return _problem(
        status=exc.status_code, title=_STATUS_TITLES.get(exc.status_code), detail=detail
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_req: Request, exc: RequestValidationError):
    msg = exc.errors()[0]["msg"] if exc.errors() else "Validation error"
    return _problem(status=422, title=_STATUS_TITLES[422], detail=msg)


@app.exception_handler(UpstreamError)
async def upstream_exception_handler(req: Request, exc: UpstreamError):
    if isinstance(exc, UpstreamFetchFailed):
        status = 503
    elif exc.status_code in (401, 403, 404):
        status = exc.status_code
    else:
        status = 502
    log.info(
        "route.upstream_error path=%s upstream_status=%d status=%d",
        req.url.path,
        exc.status_code,
        status,
    )
    return _problem(status=status, detail=str(exc), instance=req.url.path)


@app.exception_handler(StorageUnavailable)
async def storage_exception_handler(req: Request, exc: StorageUnavailable):
    log.warning("route.storage_unavailable path=%s op=%s", req.url.path, exc.op)
    return _problem(status=503, detail="Cache store unavailable", instance=req.url.path)


# ---------------------------------------------------------------------
# Lifespan + background pending-request sweeper
# ---------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build store + clients, start the pending-request sweeper."""
    store = build_store()
    upstream = DiscogsClient()
    app.state.discogs = CachedDiscogsClient(upstream, store)
    log.info("startup.clients ready base_url=%s", settings.UPSTREAM_BASE_URL)

    stop_event = asyncio.Event()
    interval = float(os.getenv("PENDING_SWEEP_INTERVAL", "300"))

    async def _sweeper():
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                n = app.state.discogs.cleanup_cache()
                if n:
                    log.info("pending_sweeper.cycle cleared=%d", n)

    task = asyncio.create_task(_sweeper())

    try:
        yield
    finally:
        stop_event.set()
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        await upstream.aclose()
        close = getattr(store, "close", None)
        if close is not None:
            await close()


app.router.lifespan_context = lifespan

_problem_resp = {
    "application/problem+json": {"schema": ProblemDetail.model_json_schema()},
}
_errors = {
    code: {"content": _problem_resp, "model": ProblemDetail}
    for code in (401, 422, 502, 503)
}

# ---------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------


def get_cached_client(request: Request) -> CachedDiscogsClient:
    client = getattr(request.app.state, "discogs", None)
    if client is None:
        raise HTTPException(status_code=503, detail="Service not initialised")
    return client


def get_credentials(
    authorization: Optional[str] = Header(None),
    x_discogs_token_secret: Optional[str] = Header(None),
) -> Credentials:
    """Extract the caller's upstream token from the Authorization header."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    scheme, _, rest = authorization.strip().partition(" ")
    rest = rest.strip()
    if scheme.lower() == "discogs" and rest.startswith("token="):
        token = rest[len("token="):]
    elif scheme.lower() == "bearer":
        token = rest
    else:
        token = ""
    if not token:
        raise HTTPException(status_code=401, detail="Unsupported Authorization scheme")
    if x_discogs_token_secret:
        return Credentials(
            access_token=token,
            access_token_secret=x_discogs_token_secret,
            consumer_key=settings.CONSUMER_KEY,
            consumer_secret=settings.CONSUMER_SECRET,
        )
    return Credentials(access_token=token)


# ---------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------


@app.get("/", include_in_schema=False)
async def root(_request: Request):
    """Redirect the root path to the interactive API docs (/docs)."""
    return RedirectResponse(url=app.docs_url or "/docs", status_code=307)


@app.get("/healthz", include_in_schema=False)
async def healthz():
    """Lightweight, in-process health endpoint."""
    return {"status": "ok"}


@app.get("/healthcheck", response_model=HealthcheckOut)
async def healthcheck(client: CachedDiscogsClient = Depends(get_cached_client)):
    """Deep health check: upstream probe and cache store reachability."""
    upstream_ok = await client.client.probe()
    stats = await client.get_cache_stats()
    status = "ok" if (upstream_ok and stats.store_available) else "degraded"
    log.info(
        "route.healthcheck status=%s upstream_ok=%s store_ok=%s pending=%d",
        status,
        upstream_ok,
        stats.store_available,
        stats.pending_requests,
    )
    return {
        "status": status,
        "upstream_ok": upstream_ok,
        "store_ok": stats.store_available,
        "pending_requests": stats.pending_requests,
    }


@app.get("/users/{username}/collection", response_model=CollectionOut, responses=_errors)
async def complete_collection(
    username: str,
    max_pages: int = Query(settings.COMPLETE_COLLECTION_MAX_PAGES, ge=1, le=100),
    credentials: Credentials = Depends(get_credentials),
    client: CachedDiscogsClient = Depends(get_cached_client),
):
    """Every item in the user's collection, fetched once and cached 45 minutes.

    A collection larger than ``max_pages * 100`` items is returned truncated
    with a ``caveat``; that is still a successful response.
    """
    collection = await client.complete_collection(username, credentials, max_pages)
    caveat = None
    if collection.truncated:
        caveat = (
            f"Collection truncated at {collection.page_count} of "
            f"{collection.reported_pages} pages ({len(collection.items)} items)."
        )
    log.info(
        "route.collection user=%s items=%d pages=%d truncated=%s",
        username,
        len(collection.items),
        collection.page_count,
        collection.truncated,
    )
    return CollectionOut(**collection.model_dump(), caveat=caveat)


@app.get("/users/{username}/collection/page", responses=_errors)
async def collection_page(
    username: str,
    q: Optional[str] = Query(None, min_length=1),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=100),
    sort: Optional[str] = Query(None, pattern=r"^(added|artist|title|year)$"),
    sort_order: str = Query("desc", pattern=r"^(asc|desc)$"),
    credentials: Credentials = Depends(get_credentials),
    client: CachedDiscogsClient = Depends(get_cached_client),
):
    """One page of the collection; ``q`` filters by title/artist."""
    return await client.search_collection(
        username,
        credentials,
        query=q,
        page=page,
        per_page=per_page,
        sort=sort,
        sort_order=sort_order,
    )


@app.get(
    "/users/{username}/collection/stats",
    response_model=CollectionStats,
    response_model_by_alias=True,
    responses=_errors,
)
async def collection_stats(
    username: str,
    max_pages: int = Query(settings.COMPLETE_COLLECTION_MAX_PAGES, ge=1, le=100),
    credentials: Credentials = Depends(get_credentials),
    client: CachedDiscogsClient = Depends(get_cached_client),
):
    """Genre/decade/format/label breakdowns over the cached aggregate."""
    return await client.collection_stats(username, credentials, max_pages)


@app.get("/releases/{release_id}", responses=_errors)
async def release(
    release_id: int,
    credentials: Credentials = Depends(get_credentials),
    client: CachedDiscogsClient = Depends(get_cached_client),
):
    return await client.get_release(release_id, credentials)


@app.get("/cache/stats", response_model=CacheStats)
async def cache_stats(client: CachedDiscogsClient = Depends(get_cached_client)):
    return await client.get_cache_stats()


@app.delete("/users/{username}/cache", response_model=InvalidateOut, responses=_errors)
async def invalidate_user(
    username: str,
    credentials: Credentials = Depends(get_credentials),
    client: CachedDiscogsClient = Depends(get_cached_client),
):
    removed = await client.invalidate_user_cache(username)
    return {"username": username, "removed": removed}


@app.post("/users/{username}/cache/warm", status_code=202, responses=_errors)
async def warm_user(
    username: str,
    credentials: Credentials = Depends(get_credentials),
    client: CachedDiscogsClient = Depends(get_cached_client),
):
    warmed = await client.warm_user_cache(username, credentials)
    return {"username": username, "warmed": warmed}
