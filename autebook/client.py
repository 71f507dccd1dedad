"""Async HTTP client shared by every book in a run.

All outbound requests, whatever book or stage they belong to, go through
one :class:`RateLimitedFetcher`: one token bucket for the request rate, one
semaphore for the number of in-flight requests, one ``httpx.AsyncClient``.
"""

from __future__ import annotations

import asyncio
import logging
import time

import httpx

from .config import Settings
from .errors import FetchError, NotFound
from .ratelimit import TokenBucket

log = logging.getLogger("autebook.client")


def _retry_after(response: httpx.Response, default: float) -> float:
    value = response.headers.get("Retry-After", "")
    try:
        return max(0.0, float(value))
    except ValueError:
        return default


class RateLimitedFetcher:
    """Async HTTP client with token-bucket throttling and retries.

    Each attempt acquires the concurrency semaphore and one token from the
    bucket, then fires. Transport errors, timeouts and 5xx answers are
    retried with exponential backoff; a 429 pauses *every* caller for the
    ``Retry-After`` delay; a 404 is raised immediately as :class:`NotFound`.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        bucket: TokenBucket | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = settings or Settings()
        self._bucket = bucket or TokenBucket(settings.requests_per_second, settings.burst)
        self._sem = asyncio.Semaphore(settings.max_concurrent)
        self._max_retries = settings.max_retries
        self._backoff = settings.backoff_base
        self._max_backoff = settings.max_backoff
        self._cooldown_until = 0.0
        self._client = httpx.AsyncClient(
            headers=settings.headers,
            timeout=httpx.Timeout(settings.timeout, connect=10),
            follow_redirects=True,
            limits=httpx.Limits(
                max_connections=settings.max_concurrent + 2,
                max_keepalive_connections=settings.max_concurrent,
            ),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> RateLimitedFetcher:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def _wait_cooldown(self) -> None:
        delay = self._cooldown_until - time.monotonic()
        if delay > 0:
            await asyncio.sleep(delay)

    def _backoff_delay(self, attempt: int) -> float:
        return min(self._backoff * (2**attempt), self._max_backoff)

    async def get(self, url: str, retries: int | None = None) -> httpx.Response:
        retries = retries if retries is not None else self._max_retries

        async with self._sem:
            for attempt in range(retries):
                await self._wait_cooldown()
                await self._bucket.acquire()
                try:
                    r = await self._client.get(url)
                except httpx.TransportError as exc:
                    if attempt < retries - 1:
                        log.debug("GET %s failed (%s), retry %d/%d", url, exc, attempt + 1, retries)
                        await asyncio.sleep(self._backoff_delay(attempt))
                        continue
                    raise FetchError(f"Transport error after {retries} retries: {exc} (URL: {url})") from exc
                except (httpx.HTTPError, httpx.InvalidURL) as exc:
                    raise FetchError(f"{type(exc).__name__}: {exc} (URL: {url})") from exc

                if r.status_code == 429:
                    wait = _retry_after(r, self._backoff_delay(attempt + 1))
                    if attempt < retries - 1:
                        log.warning("Too many requests, waiting for %.0f s", wait)
                        self._cooldown_until = max(self._cooldown_until, time.monotonic() + wait)
                        continue
                    raise FetchError(f"Rate limited after {retries} retries (URL: {url})")

                if r.status_code == 404:
                    raise NotFound(f"Not found: {url}")

                if r.status_code != 200:
                    if attempt < retries - 1 and (r.status_code >= 500 or r.status_code == 408):
                        log.debug("GET %s -> HTTP %d, retry %d/%d", url, r.status_code, attempt + 1, retries)
                        await asyncio.sleep(self._backoff_delay(attempt))
                        continue
                    raise FetchError(f"HTTP {r.status_code}: {url}")

                return r

        raise FetchError(f"Failed after {retries} retries: {url}")

    async def get_text(self, url: str) -> str:
        return (await self.get(url)).text

    async def get_bytes(self, url: str) -> bytes:
        """Fetch a URL and return raw bytes (for images)."""
        return (await self.get(url)).content
