"""HTTP page fetching with typed outcomes.

Every fetch ends in a ``FetchResult`` instead of an exception. The outcome
kind drives the retry policy:

- RETRYABLE: timeouts, 429 and 5xx responses; retried with a linear backoff
- FATAL: other 4xx responses, unfollowed 3xx responses, non-HTML bodies and
  connection failures
- OK: an HTML document
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
import logging

import httpx

from ..config import Settings
from ..observability.metrics import PAGES_FETCHED


logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")


class FetchOutcome(str, Enum):
    OK = "ok"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(slots=True)
class FetchResult:
    """Result of fetching one URL, possibly after several attempts."""

    url: str
    outcome: FetchOutcome
    status_code: int | None = None
    html: str = ""
    error: str | None = None
    attempts: int = 1
    rate_limited: bool = False
    final_url: str | None = None  # after redirects

    @property
    def redirected(self) -> bool:
        return self.final_url is not None and self.final_url != self.url

    @property
    def ok(self) -> bool:
        return self.outcome is FetchOutcome.OK


class PageFetcher:
    """Fetches HTML pages through a shared ``httpx.AsyncClient``.

    Use as an async context manager. A client passed in by the caller is not
    closed on exit.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.settings = settings
        self.max_attempts = settings.fetch_max_attempts
        self.backoff_seconds = settings.fetch_retry_backoff_seconds
        self._sleep = sleep
        self._owns_client = client is None
        self.client = client

    async def __aenter__(self) -> PageFetcher:
        if self.client is None:
            self.client = self._create_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._owns_client and self.client is not None:
            await self.client.aclose()
            self.client = None

    def _create_client(self) -> httpx.AsyncClient:
        headers = {
            "User-Agent": self.settings.get_user_agent(),
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "ru,en;q=0.9",
            "Accept-Encoding": "gzip, deflate",
            "Referer": "http://www.google.com",
        }
        timeout = httpx.Timeout(self.settings.http_timeout, connect=min(10.0, float(self.settings.http_timeout)))
        return httpx.AsyncClient(timeout=timeout, headers=headers, follow_redirects=True)

    async def fetch(self, url: str) -> FetchResult:
        """Fetch ``url``, retrying retryable outcomes up to ``fetch_max_attempts`` times."""
        rate_limited = False
        result = FetchResult(url=url, outcome=FetchOutcome.FATAL, error="not fetched")
        for attempt in range(1, self.max_attempts + 1):
            result = await self.fetch_once(url)
            result.attempts = attempt
            rate_limited = rate_limited or result.status_code == 429
            if result.outcome is not FetchOutcome.RETRYABLE or attempt == self.max_attempts:
                break
            delay = self.backoff_seconds * attempt
            logger.warning(f"Retryable fetch failure for {url} ({result.error}), retry {attempt} in {delay:.1f}s")
            await self._sleep(delay)

        result.rate_limited = rate_limited
        PAGES_FETCHED.labels(outcome=result.outcome.value).inc()
        if not result.ok:
            logger.info(f"Giving up on {url} after {result.attempts} attempt(s): {result.error}")
        return result

    async def fetch_once(self, url: str) -> FetchResult:
        """Single request, classified into a ``FetchResult``."""
        if self.client is None:
            raise RuntimeError("PageFetcher must be used as async context manager")

        try:
            response = await self.client.get(url)
        except httpx.TimeoutException as e:
            reason = str(e) or type(e).__name__
            return FetchResult(url=url, outcome=FetchOutcome.RETRYABLE, error=f"timeout: {reason}")
        except httpx.HTTPError as e:
            reason = str(e) or type(e).__name__
            return FetchResult(url=url, outcome=FetchOutcome.FATAL, error=f"connection failed: {reason}")

        status = response.status_code
        final_url = str(response.url)
        if status == 429 or status >= 500:
            return FetchResult(
                url=url, outcome=FetchOutcome.RETRYABLE, status_code=status, error=f"HTTP {status}", final_url=final_url
            )
        if status >= 300:
            return FetchResult(
                url=url, outcome=FetchOutcome.FATAL, status_code=status, error=f"HTTP {status}", final_url=final_url
            )

        content_type = response.headers.get("content-type", "").lower()
        if content_type and not any(kind in content_type for kind in HTML_CONTENT_TYPES):
            return FetchResult(
                url=url,
                outcome=FetchOutcome.FATAL,
                status_code=status,
                error=f"non-HTML content: {content_type.split(';')[0]}",
                final_url=final_url,
            )

        return FetchResult(
            url=url, outcome=FetchOutcome.OK, status_code=status, html=response.text, final_url=final_url
        )
