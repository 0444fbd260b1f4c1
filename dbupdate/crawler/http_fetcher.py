"""HTTP client fetcher for page snapshots."""

import asyncio
import re
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import httpx
from bs4 import BeautifulSoup, SoupStrainer

from dbupdate.crawler.fetch_result import FetchResult
from dbupdate.utils.backoff import BackoffConfig, calculate_backoff
from dbupdate.utils.config import get_settings
from dbupdate.utils.logging import get_logger

logger = get_logger(__name__)


def parse_title(body: str) -> str | None:
    """Extract the <title> text, whitespace collapsed."""
    title = BeautifulSoup(body, "html.parser", parse_only=SoupStrainer("title")).title
    if title is None:
        return None
    return re.sub(r"\s+", " ", title.get_text()).strip()


class RateLimiter:
    """Global rate limiter: minimum spacing between request starts.

    All fetches target the same site, so a single lock is shared by every
    request rather than one per domain.
    """

    def __init__(self, min_interval: float | None = None) -> None:
        settings = get_settings()
        self.min_interval = (
            settings.crawler.rate_limit_delay if min_interval is None else min_interval
        )
        self._lock = asyncio.Lock()
        self._last_request = 0.0
        self.request_count = 0

    async def acquire(self) -> None:
        """Wait until the next request may start."""
        async with self._lock:
            elapsed = time.monotonic() - self._last_request
            wait_time = max(0.0, self.min_interval - elapsed)

            if wait_time > 0:
                await asyncio.sleep(wait_time)

            self._last_request = time.monotonic()
            self.request_count += 1


class HTTPFetcher:
    """HTTP client fetcher using httpx.

    Features:
    - Global request spacing (RateLimiter)
    - Batches of `crawler.batch_size` concurrent requests
    - Retries transient network errors with backoff
    - Optional requests/second stats per batch
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self._settings = get_settings()
        self._rate_limiter = rate_limiter or RateLimiter()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            follow_redirects=True,
            timeout=self._settings.crawler.request_timeout,
            headers={
                "User-Agent": self._settings.crawler.user_agent,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-CA,en;q=0.9,fr-CA;q=0.8",
            },
        )
        self.batch_size = self._settings.crawler.batch_size
        self.max_retries = self._settings.crawler.max_retries
        self.rate_limit_stats = self._settings.crawler.rate_limit_stats
        self._backoff = BackoffConfig(base_delay=1.0, max_delay=10.0)

    async def __aenter__(self) -> "HTTPFetcher":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def set_rate_limit_stats(self, enabled: bool) -> None:
        self.rate_limit_stats = enabled

    async def fetch(self, url: str) -> FetchResult:
        """Fetch a URL, prefixing https:// when it has no scheme.

        Network errors are retried up to `crawler.max_retries` times; any other
        request error (redirect loop, invalid url) gives `ok=False` at once. A
        404/410 is a successful fetch with `is_404` set.

        Args:
            url: URL to fetch (with or without scheme).

        Returns:
            FetchResult instance.
        """
        request_url = url if re.match(r"^https?://", url) else f"https://{url}"
        attempt = 0

        while True:
            await self._rate_limiter.acquire()

            try:
                response = await self._client.get(request_url)
                break
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    logger.error("HTTP fetch error", url=url, error=str(e))
                    return FetchResult(ok=False, url=url, reason=str(e))

                delay = calculate_backoff(attempt, self._backoff)
                logger.info(
                    "Retrying after network error",
                    url=url[:80],
                    error_type=type(e).__name__,
                    attempt=attempt + 1,
                    delay_seconds=round(delay, 2),
                )
                attempt += 1
                await asyncio.sleep(delay)
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                # Redirect loops and invalid urls are not retried
                logger.error(
                    "HTTP fetch error",
                    url=url,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                return FetchResult(ok=False, url=url, reason=str(e) or type(e).__name__)

        body = response.text
        result = FetchResult(
            ok=response.status_code < 400 or response.status_code in (404, 410),
            url=url,
            final_url=str(response.url),
            status=response.status_code,
            headers=dict(response.headers),
            body=body,
            title=parse_title(body),
            reason=None if response.is_success else response.reason_phrase,
        )

        logger.debug(
            "HTTP fetch",
            url=url[:80],
            status=response.status_code,
            content_length=len(body),
            redirect=result.redirect,
        )
        return result

    async def fetch_all(
        self,
        urls: Sequence[str],
        callback: Callable[[FetchResult], Awaitable[Any]],
    ) -> int:
        """Fetch URLs in concurrent batches, awaiting `callback` per response.

        An exception raised by the callback is logged with the URL and does not
        stop the run.

        Args:
            urls: URLs to fetch.
            callback: Async function called with each FetchResult.

        Returns:
            Number of callbacks that completed without error.
        """
        completed = 0

        async def _process(url: str) -> bool:
            result = await self.fetch(url)
            try:
                await callback(result)
            except Exception as e:
                logger.error(
                    "Response callback failed",
                    url=url,
                    error_type=type(e).__name__,
                    error=str(e),
                    exc_info=True,
                )
                return False
            return True

        total = len(urls)
        for start in range(0, total, self.batch_size):
            batch = urls[start : start + self.batch_size]
            batch_start = time.monotonic()

            results = await asyncio.gather(*(_process(url) for url in batch))
            completed += sum(results)

            if self.rate_limit_stats:
                elapsed = time.monotonic() - batch_start
                logger.info(
                    "Fetch batch complete",
                    progress=f"{min(start + len(batch), total)}/{total}",
                    requests_per_second=round(len(batch) / elapsed, 2) if elapsed else None,
                )

        return completed
