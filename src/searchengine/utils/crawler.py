"""Breadth-first site crawler with politeness delays and cancellation.

One ``SiteCrawler`` walks one site: it starts at the root, fetches pages
sequentially, hands every successful page to the ``on_page`` callback and
queues the same-site links it finds. Failed pages are recorded and skipped;
they never abort the crawl. The stop flag is checked before every fetch.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
import logging
import random
import time
from urllib.parse import urldefrag, urlparse, urlunparse

from ..config import Settings
from .fetcher import FetchResult, PageFetcher, SleepFunc
from .html import ExtractedPage, TextExtractor


logger = logging.getLogger(__name__)

OnPage = Callable[[str, FetchResult, ExtractedPage], Awaitable[None]]

# Skip non-HTML file extensions
NON_HTML_EXTENSIONS = frozenset(
    {
        ".css",
        ".js",
        ".json",
        ".xml",
        ".txt",
        ".pdf",
        ".zip",
        ".tar",
        ".gz",
        ".rar",
        ".png",
        ".jpg",
        ".jpeg",
        ".gif",
        ".svg",
        ".ico",
        ".webp",
        ".bmp",
        ".mp3",
        ".mp4",
        ".avi",
        ".mov",
        ".wav",
        ".doc",
        ".docx",
        ".xls",
        ".xlsx",
        ".ppt",
        ".pptx",
        ".woff",
        ".woff2",
        ".ttf",
        ".eot",
    }
)


def host_key(url: str) -> str:
    """Lowercased host without a leading ``www.``."""
    host = urlparse(url).netloc.lower()
    return host[4:] if host.startswith("www.") else host


def normalize_url(url: str, *, allow_querystrings: bool = False) -> str | None:
    """Drop the fragment (and the query unless allowed); None for non-http(s) URLs."""
    url, _frag = urldefrag(url.strip())
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    query = parsed.query if allow_querystrings else ""
    return urlunparse((parsed.scheme, parsed.netloc.lower(), parsed.path or "/", parsed.params, query, ""))


def visit_key(url: str) -> str:
    """Identity of a page within a crawl.

    Scheme, ``www.`` and trailing-slash variants of the same page share a key.
    """
    parsed = urlparse(url)
    path = parsed.path.rstrip("/") or "/"
    key = f"{host_key(url)}{path}"
    return f"{key}?{parsed.query}" if parsed.query else key


def site_path(url: str, root_url: str | None = None) -> str:
    """Path of ``url`` relative to the site root, always starting with ``/``.

    Without ``root_url`` the root is the host. A root with a path prefix
    (``https://host/docs``) has that prefix removed from the result.
    """
    parsed = urlparse(url)
    path = parsed.path or "/"
    if not path.startswith("/"):
        path = "/" + path
    if root_url is not None:
        prefix = urlparse(root_url).path.rstrip("/")
        if prefix and (path == prefix or path.startswith(prefix + "/")):
            path = path[len(prefix) :] or "/"
    return f"{path}?{parsed.query}" if parsed.query else path


@dataclass
class HostPolitenessState:
    """Delay state for one host.

    The base delay is drawn uniformly from [min_delay, max_delay]; a penalty
    factor grows on 429 responses and decays after sustained success.
    """

    host: str
    min_delay: float
    max_delay: float
    penalty: float = 1.0
    max_penalty: float = 16.0
    consecutive_429s: int = 0
    consecutive_successes: int = 0
    total_429s: int = 0
    total_requests: int = 0
    last_request_time: float | None = None

    def record_success(self) -> None:
        self.consecutive_429s = 0
        self.consecutive_successes += 1
        self.total_requests += 1
        # Require 10 consecutive successes before reducing
        if self.consecutive_successes >= 10 and self.penalty > 1.0:
            self.penalty = max(1.0, self.penalty * 0.9)
            self.consecutive_successes = 0
            logger.debug(f"[{self.host}] Reduced politeness penalty to {self.penalty:.2f}x")

    def record_429(self) -> None:
        self.consecutive_successes = 0
        self.consecutive_429s += 1
        self.total_429s += 1
        self.total_requests += 1
        multiplier = 2.0 if self.consecutive_429s >= 2 else 1.5
        old_penalty = self.penalty
        self.penalty = min(self.max_penalty, self.penalty * multiplier)
        logger.warning(
            f"[{self.host}] 429 received! Penalty: {old_penalty:.2f}x -> {self.penalty:.2f}x "
            f"(consecutive: {self.consecutive_429s}, total: {self.total_429s})"
        )

    def get_delay(self, rng: random.Random) -> float:
        return rng.uniform(self.min_delay, self.max_delay) * self.penalty


class PolitenessLimiter:
    """Per-host randomized delay between consecutive fetches.

    ``sleep``, ``rng`` and ``clock`` are injectable so tests run without
    real waiting.
    """

    def __init__(
        self,
        min_delay: float,
        max_delay: float,
        *,
        sleep: SleepFunc = asyncio.sleep,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_delay < min_delay:
            raise ValueError("max_delay must be greater than or equal to min_delay")
        self.min_delay = min_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock
        self._host_states: dict[str, HostPolitenessState] = {}

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> PolitenessLimiter:
        return cls(
            settings.politeness_min_delay_ms / 1000.0,
            settings.politeness_max_delay_ms / 1000.0,
            **kwargs,
        )

    def _get_host_state(self, url: str) -> HostPolitenessState:
        host = host_key(url)
        if host not in self._host_states:
            self._host_states[host] = HostPolitenessState(host=host, min_delay=self.min_delay, max_delay=self.max_delay)
        return self._host_states[host]

    def record_success(self, url: str) -> None:
        self._get_host_state(url).record_success()

    def record_429(self, url: str) -> None:
        self._get_host_state(url).record_429()

    def get_delay(self, url: str) -> float:
        return self._get_host_state(url).get_delay(self._rng)

    async def wait(self, url: str) -> float:
        """Sleep until the host's delay since its previous request has passed.

        Returns:
            Seconds slept (0.0 for the first request to a host).
        """
        state = self._get_host_state(url)
        slept = 0.0
        if state.last_request_time is not None:
            delay = state.get_delay(self._rng)
            remaining = delay - (self._clock() - state.last_request_time)
            if remaining > 0:
                logger.debug(f"Politeness: sleeping {remaining:.2f}s before {url}")
                await self._sleep(remaining)
                slept = remaining
        state.last_request_time = self._clock()
        return slept

    def get_stats(self) -> dict:
        return {
            host: {
                "penalty": state.penalty,
                "total_429s": state.total_429s,
                "total_requests": state.total_requests,
            }
            for host, state in self._host_states.items()
        }


@dataclass
class CrawlConfig:
    """Configuration for crawler behavior."""

    max_pages: int | None = None  # None = no limit
    same_host_only: bool = True
    allow_querystrings: bool = False
    progress_interval: int = 10  # Report progress every N pages

    @classmethod
    def from_settings(cls, settings: Settings) -> CrawlConfig:
        return cls(max_pages=settings.max_crawl_pages or None)


@dataclass(slots=True)
class CrawlFailure:
    url: str
    error: str
    status_code: int | None = None


@dataclass
class CrawlReport:
    """What one crawl run did: stored page URLs, failed URLs and whether it was stopped."""

    root_url: str
    pages: list[str] = field(default_factory=list)
    failures: list[CrawlFailure] = field(default_factory=list)
    cancelled: bool = False

    @property
    def page_count(self) -> int:
        return len(self.pages)


class SiteCrawler:
    """BFS crawler for one site.

    Features:
    - Deque-based frontier with a set of visit keys for O(1) dedup
    - Per-host politeness delays
    - Honors URL whitelist/blacklist from settings
    - Cooperative cancellation through ``should_stop``
    """

    def __init__(
        self,
        root_url: str,
        fetcher: PageFetcher,
        *,
        extractor: TextExtractor | None = None,
        on_page: OnPage | None = None,
        should_stop: Callable[[], bool] | None = None,
        limiter: PolitenessLimiter | None = None,
        crawl_config: CrawlConfig | None = None,
        settings: Settings | None = None,
    ):
        self.config = crawl_config or (CrawlConfig.from_settings(settings) if settings else CrawlConfig())
        normalized_root = normalize_url(root_url, allow_querystrings=self.config.allow_querystrings)
        if normalized_root is None:
            raise ValueError(f"Root URL must be an absolute http(s) URL: {root_url!r}")
        self.root_url = normalized_root
        self.root_host = host_key(normalized_root)
        self.fetcher = fetcher
        self.extractor = extractor or TextExtractor()
        self.on_page = on_page
        self.should_stop = should_stop or (lambda: False)
        self.limiter = limiter or (PolitenessLimiter.from_settings(settings) if settings else PolitenessLimiter(0, 0))
        self.settings = settings

        self.visited: set[str] = set()
        self.frontier: deque[str] = deque()

    def _should_process_url(self, url: str) -> bool:
        """Host, extension and prefix filters for a normalized URL."""
        if self.config.same_host_only and host_key(url) != self.root_host:
            logger.debug(f"Skipping off-site URL: {url}")
            return False

        path = urlparse(url).path.lower()
        if any(path.endswith(ext) for ext in NON_HTML_EXTENSIONS):
            logger.debug(f"Skipping non-HTML file extension: {url}")
            return False

        if self.settings:
            return self.settings.should_process_url(url)
        return True

    def _enqueue(self, url: str) -> bool:
        normalized = normalize_url(url, allow_querystrings=self.config.allow_querystrings)
        if not normalized:
            return False
        key = visit_key(normalized)
        if key in self.visited:
            return False
        if not self._should_process_url(normalized):
            return False
        self.visited.add(key)
        self.frontier.append(normalized)
        return True

    def _redirect_target(self, url: str, result: FetchResult, report: CrawlReport) -> str | None:
        """URL a redirected page is stored under, or None when it must be skipped.

        A target outside the crawl scope is recorded as a failure; a target
        already visited under its own key is a duplicate.
        """
        target = normalize_url(result.final_url or url, allow_querystrings=self.config.allow_querystrings)
        if target is None or not self._should_process_url(target):
            logger.warning(f"Redirect from {url} leaves the site: {result.final_url}")
            report.failures.append(
                CrawlFailure(
                    url=url,
                    error=f"redirected outside the site: {result.final_url}",
                    status_code=result.status_code,
                )
            )
            return None
        key = visit_key(target)
        if key == visit_key(url):
            return target
        if key in self.visited:
            logger.debug(f"Redirect from {url} lands on already seen {target}")
            return None
        self.visited.add(key)
        return target

    def _should_stop_crawl(self, report: CrawlReport) -> bool:
        if self.should_stop():
            logger.info(f"Stop requested, ending crawl of {self.root_url}")
            report.cancelled = True
            return True
        if self.config.max_pages and report.page_count >= self.config.max_pages:
            logger.info(f"Reached max_pages limit ({self.config.max_pages})")
            return True
        return False

    async def crawl(self) -> CrawlReport:
        """Execute the BFS crawl from the root URL.

        Exceptions raised by ``on_page`` propagate to the caller; fetch and
        parse failures are recorded in the report.
        """
        report = CrawlReport(root_url=self.root_url)
        self.visited.clear()
        self.frontier.clear()
        # The root is always crawled even when URL prefix filters would reject it
        self.visited.add(visit_key(self.root_url))
        self.frontier.append(self.root_url)

        logger.info(f"Starting BFS crawl of {self.root_url}")
        start_time = time.time()

        while self.frontier:
            if self._should_stop_crawl(report):
                break

            url = self.frontier.popleft()
            await self.limiter.wait(url)
            if self._should_stop_crawl(report):
                break

            result = await self.fetcher.fetch(url)
            if result.rate_limited:
                self.limiter.record_429(url)
            elif result.ok:
                self.limiter.record_success(url)

            if not result.ok:
                logger.warning(f"Failed to fetch {url}: {result.error}")
                report.failures.append(
                    CrawlFailure(url=url, error=result.error or "fetch failed", status_code=result.status_code)
                )
                continue

            if result.redirected:
                target = self._redirect_target(url, result, report)
                if target is None:
                    continue
                url = target

            extracted = await asyncio.to_thread(self.extractor.extract, result.html, url)
            if self.on_page is not None:
                await self.on_page(url, result, extracted)
            report.pages.append(url)

            queued = sum(1 for link in sorted(extracted.links) if self._enqueue(link))
            logger.debug(f"Queued {queued} new links from {url}")

            if report.page_count % self.config.progress_interval == 0:
                logger.info(
                    f"Progress: {report.page_count} pages stored, "
                    f"{len(self.frontier)} in queue, {len(report.failures)} failed"
                )

        elapsed = time.time() - start_time
        logger.info(
            f"Crawl of {self.root_url} complete: {report.page_count} pages, "
            f"{len(report.failures)} failures in {elapsed:.1f}s"
            + (" (cancelled)" if report.cancelled else "")
        )
        return report
