"""Upstream Discogs API client.

Owns everything the cache core treats as a black box: authentication headers,
retry with exponential backoff on 429/5xx and transport errors (honouring
``Retry-After``), and the page-shaped collection endpoint consumed by the
aggregator. Errors surface as ``UpstreamError`` / ``UpstreamFetchFailed``.

Env (see settings):
    UPSTREAM_BASE_URL   default https://api.discogs.com
    REQUEST_TIMEOUT     per-request timeout seconds (default 10)
    MAX_RETRIES         attempts per request (default 5)
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import UpstreamError, UpstreamFetchFailed
from .settings import settings

log = logging.getLogger(__name__)

MAX_PER_PAGE = 100  # largest page size the upstream accepts


class TransientHTTPError(Exception):
    """Retryable upstream response (429 or 5xx)."""

    def __init__(self, status_code: int, retry_after: float | None = None) -> None:
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(f"Upstream error {status_code}")


@dataclass(frozen=True)
class Credentials:
    """Caller credentials, passed through the cache layers untouched.

    With only ``access_token`` set the personal-token scheme is used;
    otherwise OAuth 1.0a PLAINTEXT signing.
    """

    access_token: str
    access_token_secret: str = ""
    consumer_key: str = ""
    consumer_secret: str = ""

    def auth_header(self) -> str:
        if not self.consumer_key:
            return f"Discogs token={self.access_token}"
        parts = {
            "oauth_consumer_key": self.consumer_key,
            "oauth_token": self.access_token,
            "oauth_signature_method": "PLAINTEXT",
            "oauth_signature": f"{self.consumer_secret}&{self.access_token_secret}",
            "oauth_timestamp": str(int(time.time())),
            "oauth_nonce": secrets.token_hex(8),
            "oauth_version": "1.0",
        }
        return "OAuth " + ", ".join(f'{k}="{v}"' for k, v in parts.items())


def _parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header (integer seconds or HTTP-date)."""
    if not value:
        return None
    if value.isdigit():
        return float(value)
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if dt is None:
        return None
    return max(0.0, (dt - dt.now(dt.tzinfo)).total_seconds())


_backoff = wait_exponential(multiplier=0.5, min=0.5, max=8)


def _wait_retry_after(retry_state: RetryCallState) -> float:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, TransientHTTPError) and exc.retry_after is not None:
        return min(exc.retry_after, 60.0)
    return _backoff(retry_state)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    log.warning(
        "upstream.retry attempt=%d err=%r delay=%.3fs",
        retry_state.attempt_number,
        exc,
        retry_state.next_action.sleep if retry_state.next_action else 0.0,
    )


class DiscogsClient:
    """Async Discogs REST client with retry/backoff."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
        wait: Callable[[RetryCallState], float] = _wait_retry_after,
    ) -> None:
        self._base = (base_url or settings.UPSTREAM_BASE_URL).rstrip("/")
        self._client = client
        self._owns_client = client is None
        self._max_retries = max_retries or settings.MAX_RETRIES
        self._timeout = timeout or settings.REQUEST_TIMEOUT
        self._wait = wait

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"User-Agent": settings.USER_AGENT},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        credentials: Optional[Credentials] = None,
    ) -> Dict[str, Any]:
        """GET ``path`` with retries; return the decoded JSON body.

        Raises:
            UpstreamError: Non-retryable 4xx.
            UpstreamFetchFailed: Retries exhausted on 429/5xx/transport errors.
        """
        url = f"{self._base}{path}"
        headers = {"User-Agent": settings.USER_AGENT}
        if credentials is not None:
            headers["Authorization"] = credentials.auth_header()

        try:
            async for attempt in AsyncRetrying(
                wait=self._wait,
                stop=stop_after_attempt(self._max_retries),
                retry=retry_if_exception_type((TransientHTTPError, httpx.TransportError)),
                before_sleep=_log_retry,
                reraise=True,
            ):
                with attempt:
                    r = await self._http().get(
                        url, params=params, headers=headers, timeout=self._timeout
                    )
                    if r.status_code == 429 or 500 <= r.status_code < 600:
                        raise TransientHTTPError(
                            r.status_code, _parse_retry_after(r.headers.get("Retry-After"))
                        )
                    if r.status_code >= 400:
                        log.info("upstream.rejected url=%s status=%d", url, r.status_code)
                        raise UpstreamError(r.status_code, r.text[:200] or None)
                    if attempt.retry_state.attempt_number > 1:
                        log.info(
                            "upstream.recovered attempt=%d url=%s",
                            attempt.retry_state.attempt_number,
                            url,
                        )
                    return r.json()
        except (TransientHTTPError, httpx.TransportError) as exc:
            log.error(
                "upstream.failed url=%s attempts=%d err=%r", url, self._max_retries, exc
            )
            raise UpstreamFetchFailed(url, self._max_retries, str(exc)) from exc

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def fetch_page(
        self,
        identity: str,
        page: int,
        per_page: int,
        credentials: Optional[Credentials] = None,
        sort: Optional[str] = None,
        sort_order: Optional[str] = None,
    ) -> Dict[str, Any]:
        """One page of a user's collection (all folders).

        Returns:
            ``{"items": [...], "pagination": {page, pages, per_page, items}}``
        """
        params: Dict[str, Any] = {"page": page, "per_page": min(per_page, MAX_PER_PAGE)}
        if sort:
            params["sort"] = sort
        if sort_order:
            params["sort_order"] = sort_order
        data = await self._get(
            f"/users/{identity}/collection/folders/0/releases", params, credentials
        )
        pagination = data.get("pagination") or {}
        return {
            "items": data.get("releases") or [],
            "pagination": {
                "page": pagination.get("page", page),
                "pages": pagination.get("pages", 1),
                "per_page": pagination.get("per_page", per_page),
                "items": pagination.get("items", 0),
            },
        }

    async def get_release(
        self, release_id: int | str, credentials: Optional[Credentials] = None
    ) -> Dict[str, Any]:
        return await self._get(f"/releases/{release_id}", None, credentials)

    async def get_user_profile(self, credentials: Credentials) -> Dict[str, Any]:
        data = await self._get("/oauth/identity", None, credentials)
        return {"username": data.get("username"), "id": data.get("id")}

    async def get_collection_value(
        self, username: str, credentials: Optional[Credentials] = None
    ) -> Dict[str, Any]:
        return await self._get(f"/users/{username}/collection/value", None, credentials)

    async def search_database(
        self,
        query: str,
        credentials: Optional[Credentials] = None,
        type: Optional[str] = None,
        page: int = 1,
        per_page: int = 50,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"q": query, "page": page, "per_page": per_page}
        if type:
            params["type"] = type
        return await self._get("/database/search", params, credentials)

    async def probe(self) -> bool:
        """Lightweight upstream health probe (no retries)."""
        try:
            r = await self._http().get(f"{self._base}/", timeout=5.0)
            return r.status_code == 200
        except httpx.HTTPError:
            return False


def filter_items(items: List[Dict[str, Any]], query: str) -> List[Dict[str, Any]]:
    """Case-insensitive substring match on title and artist names."""
    q = query.strip().lower()
    out: List[Dict[str, Any]] = []
    for it in items:
        info = it.get("basic_information") or it
        hay = [str(info.get("title") or "")]
        hay += [str(a.get("name") or "") for a in info.get("artists") or []]
        if any(q in h.lower() for h in hay):
            out.append(it)
    return out
