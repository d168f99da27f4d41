"""Site indexing orchestration.

``SiteIndexer`` moves one site through INDEXING -> INDEXED/FAILED: it clears
the site's previous data, crawls it and stores every fetched page with its
lemma counts. ``IndexingService`` is the command surface on top of it: one
asyncio task per site, a registry that keeps at most one run per site, a
semaphore bounding concurrent sites and cooperative stop flags.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
import logging
import threading
from typing import Any

from ..adapters.index_store import AbstractIndexStore
from ..config import Settings, SiteConfig
from ..domain.model import Page, Site, SiteStatus
from ..domain.search import IndexingCommandResult, SiteStatusView
from ..errors import ConfigurationError, IndexingError, StorageContentionError, UnknownSiteError
from ..observability.context import site_context
from ..observability.metrics import ACTIVE_RUNS, INDEXING_RUNS, STORAGE_RETRIES
from ..observability.tracing import create_span
from ..search.analyzers import LemmaExtractor
from ..search.morphology import build_morph_analyzer
from ..utils.crawler import PolitenessLimiter, SiteCrawler, host_key, normalize_url, site_path, visit_key
from ..utils.fetcher import FetchResult, PageFetcher, SleepFunc
from ..utils.html import ExtractedPage, TextExtractor


logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "cancelled by user"
INDEXING_INTERRUPTED = "indexing interrupted"
ALREADY_RUNNING = "already running"
NOT_RUNNING = "indexing not running"
PAGE_OUTSIDE_SITES = "page outside configured sites"
SITE_NOT_CONFIGURED = "site not configured"
NO_SITES_CONFIGURED = "no sites configured"


def same_site_url(left: str, right: str) -> bool:
    """True when two root URLs name the same site (scheme, www and trailing slash ignored)."""
    left_normalized = normalize_url(left)
    right_normalized = normalize_url(right)
    if left_normalized is None or right_normalized is None:
        return False
    return visit_key(left_normalized) == visit_key(right_normalized)


def site_for_page(sites: list[SiteConfig], url: str) -> SiteConfig | None:
    """The configured site whose root contains ``url``."""
    normalized = normalize_url(url, allow_querystrings=True)
    if normalized is None:
        return None
    page_host = host_key(normalized)
    page_path = site_path(normalized)
    for site in sites:
        root = normalize_url(site.url)
        if root is None or host_key(root) != page_host:
            continue
        root_path = site_path(root).rstrip("/")
        if not root_path or page_path == root_path or page_path.startswith(root_path + "/"):
            return site
    return None


class SiteIndexer:
    """Indexes one site at a time; safe to share between concurrent runs."""

    def __init__(
        self,
        store: AbstractIndexStore,
        settings: Settings,
        lemma_extractor: LemmaExtractor,
        *,
        fetcher_factory: Callable[[], PageFetcher] | None = None,
        limiter_factory: Callable[[], PolitenessLimiter] | None = None,
        text_extractor: TextExtractor | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.store = store
        self.settings = settings
        self.lemma_extractor = lemma_extractor
        self.text_extractor = text_extractor or TextExtractor()
        self._fetcher_factory = fetcher_factory or (lambda: PageFetcher(settings, sleep=sleep))
        self._limiter_factory = limiter_factory or (lambda: PolitenessLimiter.from_settings(settings, sleep=sleep))
        self._sleep = sleep

    async def _with_storage_retry(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run a store call in a worker thread, retrying storage contention.

        Raises:
            IndexingError: contention persisted for every attempt
        """
        max_attempts = self.settings.storage_max_attempts
        backoff = self.settings.storage_retry_backoff_seconds
        attempt = 1
        while True:
            try:
                return await asyncio.to_thread(func, *args)
            except StorageContentionError as exc:
                if attempt >= max_attempts:
                    raise IndexingError(f"storage contention after {max_attempts} attempts: {exc}") from exc
                STORAGE_RETRIES.inc()
                logger.warning(f"Storage busy ({exc}), retry {attempt} of {max_attempts - 1} in {backoff:.1f}s")
                await self._sleep(backoff)
                attempt += 1

    async def begin(self, site_config: SiteConfig) -> Site:
        """Enter INDEXING and drop the site's previous pages, lemmas and postings.

        Callers hold the site's run registry slot, so a stored INDEXING status
        belongs to a run that no longer exists; it is closed as interrupted
        before the new run starts.

        Raises:
            IndexingError: the site could not be prepared; once the site row
                exists it has been moved to FAILED with the reason
        """
        site, created = await self._with_storage_retry(self.store.get_or_create_site, site_config.url, site_config.name)
        try:
            if not created:
                site.name = site_config.name
                if site.status is SiteStatus.INDEXING:
                    logger.warning(f"Site {site.url} was left {SiteStatus.INDEXING.value} by an earlier run")
                    site.mark_failed(INDEXING_INTERRUPTED)
                site.begin_indexing()
                await self._with_storage_retry(self.store.update_site_status, site)
            await self._with_storage_retry(self.store.clear_site_data, site.id)
        except IndexingError as exc:
            await self._finish(site, str(exc))
            raise
        except Exception as exc:
            logger.error(f"Unexpected error while preparing {site.url}: {exc}", exc_info=True)
            await self._finish(site, f"unexpected error: {exc}")
            raise IndexingError(f"unexpected error: {exc}") from exc
        logger.info(f"Site {site.url} entered {SiteStatus.INDEXING.value}")
        return site

    async def _finish(self, site: Site, error: str | None) -> None:
        if error is None:
            site.mark_indexed()
            logger.info(f"Site {site.url} indexed")
        else:
            site.mark_failed(error)
            logger.warning(f"Site {site.url} failed: {error}")
        try:
            await self._with_storage_retry(self.store.update_site_status, site)
        except IndexingError as exc:
            # Left in INDEXING; the next run or startup recovery closes it
            logger.error(f"Could not persist final status of {site.url}: {exc}")
        INDEXING_RUNS.labels(status=site.status.value).inc()

    async def _store_page(self, site: Site, url: str, result: FetchResult, extracted: ExtractedPage) -> Page:
        lemma_counts = await asyncio.to_thread(self.lemma_extractor.lemma_counts, extracted.text)
        page = await self._with_storage_retry(
            self.store.index_page,
            site.id,
            site_path(url, site.url),
            result.status_code or 200,
            extracted.title,
            extracted.text,
            lemma_counts,
        )
        logger.debug(f"Stored {page.path} with {len(lemma_counts)} lemmas")
        return page

    async def index(self, site: Site, should_stop: Callable[[], bool]) -> Site:
        """Crawl a site that is already INDEXING and record the final status.

        Never raises for crawl, fetch or storage failures: they end the run in
        FAILED with ``last_error`` set.
        """
        with site_context(site.url), create_span("indexing.site", attributes={"site.url": site.url}):
            ACTIVE_RUNS.inc()
            try:
                async with self._fetcher_factory() as fetcher:

                    async def on_page(url: str, result: FetchResult, extracted: ExtractedPage) -> None:
                        await self._store_page(site, url, result, extracted)

                    crawler = SiteCrawler(
                        site.url,
                        fetcher,
                        extractor=self.text_extractor,
                        on_page=on_page,
                        should_stop=should_stop,
                        limiter=self._limiter_factory(),
                        settings=self.settings,
                    )
                    report = await crawler.crawl()
            except asyncio.CancelledError:
                await asyncio.shield(self._finish(site, CANCELLED_BY_USER))
                raise
            except IndexingError as exc:
                await self._finish(site, str(exc))
            except Exception as exc:
                logger.error(f"Unexpected error while indexing {site.url}: {exc}", exc_info=True)
                await self._finish(site, f"unexpected error: {exc}")
            else:
                if report.cancelled or should_stop():
                    await self._finish(site, CANCELLED_BY_USER)
                elif report.page_count == 0:
                    reason = report.failures[0].error if report.failures else "no pages found"
                    await self._finish(site, f"root page unavailable: {reason}")
                else:
                    await self._finish(site, None)
            finally:
                ACTIVE_RUNS.dec()
        return site

    async def run(self, site_config: SiteConfig, should_stop: Callable[[], bool] | None = None) -> Site:
        """Full run: ``begin`` followed by ``index``."""
        site = await self.begin(site_config)
        return await self.index(site, should_stop or (lambda: False))

    async def index_single_page(self, site_config: SiteConfig, url: str) -> Page:
        """Fetch and (re)index one page of a configured site.

        An existing site keeps its status; a site seen for the first time is
        created and finishes INDEXED or FAILED with this page.

        Raises:
            IndexingError: the page could not be fetched or stored
        """
        with site_context(site_config.url), create_span("indexing.page", attributes={"page.url": url}):
            site, created = await self._with_storage_retry(
                self.store.get_or_create_site, site_config.url, site_config.name
            )
            try:
                async with self._fetcher_factory() as fetcher:
                    result = await fetcher.fetch(url)
                if not result.ok:
                    raise IndexingError(f"page unavailable: {result.error}")
                final_url = result.final_url or url
                if site_for_page([site_config], final_url) is None:
                    raise IndexingError(f"page redirected outside the site: {final_url}")
                extracted = await asyncio.to_thread(self.text_extractor.extract, result.html, final_url)
                page = await self._store_page(site, final_url, result, extracted)
            except IndexingError as exc:
                if created:
                    await self._finish(site, str(exc))
                raise
            if created:
                await self._finish(site, None)
            logger.info(f"Re-indexed page {page.path} of {site.url}")
            return page


@dataclass
class IndexingRun:
    """Registry entry for one in-flight run."""

    site_url: str
    stop_event: threading.Event = field(default_factory=threading.Event)
    task: asyncio.Task | None = None


class IndexingService:
    """Command surface for indexing: start, stop, single page, status."""

    def __init__(
        self,
        settings: Settings,
        store: AbstractIndexStore,
        *,
        lemma_extractor: LemmaExtractor | None = None,
        fetcher_factory: Callable[[], PageFetcher] | None = None,
        limiter_factory: Callable[[], PolitenessLimiter] | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.settings = settings
        self.store = store
        self.lemma_extractor = lemma_extractor or LemmaExtractor(
            build_morph_analyzer(settings.morph_analyzer, settings.morph_dictionary_path),
            min_length=settings.min_word_length,
        )
        self.indexer = SiteIndexer(
            store,
            settings,
            self.lemma_extractor,
            fetcher_factory=fetcher_factory,
            limiter_factory=limiter_factory,
            sleep=sleep,
        )
        self._runs: dict[str, IndexingRun] = {}
        self._runs_lock = threading.Lock()
        self._semaphore = asyncio.Semaphore(settings.max_concurrent_sites)

    def is_indexing(self) -> bool:
        with self._runs_lock:
            return bool(self._runs)

    def running_sites(self) -> list[str]:
        with self._runs_lock:
            return sorted(self._runs)

    def _load_sites(self) -> list[SiteConfig]:
        try:
            return self.settings.get_sites()
        except (OSError, ValueError) as exc:
            raise ConfigurationError(f"configuration error: {exc}") from exc

    async def start_indexing(self, site_url: str | None = None) -> IndexingCommandResult:
        """Start a run for one configured site, or for all of them.

        The all-sites command is rejected while any run is in progress; a
        single-site command only while that site is running.
        """
        try:
            sites = self._load_sites()
        except IndexingError as exc:
            logger.error(str(exc))
            return IndexingCommandResult.rejected(str(exc))
        if not sites:
            return IndexingCommandResult.rejected(NO_SITES_CONFIGURED)

        if site_url is not None:
            targets = [site for site in sites if same_site_url(site.url, site_url)]
            if not targets:
                return IndexingCommandResult.rejected(SITE_NOT_CONFIGURED)
        else:
            targets = sites

        runs: list[tuple[SiteConfig, IndexingRun]] = []
        with self._runs_lock:
            if site_url is None and self._runs:
                return IndexingCommandResult.rejected(ALREADY_RUNNING)
            if any(site.url in self._runs for site in targets):
                return IndexingCommandResult.rejected(ALREADY_RUNNING)
            for site in targets:
                run = IndexingRun(site_url=site.url)
                self._runs[site.url] = run
                runs.append((site, run))

        for site, run in runs:
            run.task = asyncio.create_task(self._run_site(site, run), name=f"index:{site.url}")
        logger.info(f"Started indexing of {len(runs)} site(s)")
        return IndexingCommandResult.accepted([site.url for site, _run in runs])

    async def _run_site(self, site_config: SiteConfig, run: IndexingRun) -> None:
        try:
            with site_context(site_config.url):
                site = await self.indexer.begin(site_config)
                async with self._semaphore:
                    await self.indexer.index(site, run.stop_event.is_set)
        except IndexingError as exc:
            logger.error(f"Could not start indexing of {site_config.url}: {exc}")
        except Exception as exc:
            logger.error(f"Indexing task for {site_config.url} crashed: {exc}", exc_info=True)
        finally:
            with self._runs_lock:
                if self._runs.get(site_config.url) is run:
                    del self._runs[site_config.url]

    def request_stop(self, site_url: str | None = None) -> list[str]:
        """Set the stop flag of matching runs; safe to call from any thread or a signal handler."""
        with self._runs_lock:
            if site_url is None:
                targets = list(self._runs.values())
            else:
                targets = [run for url, run in self._runs.items() if same_site_url(url, site_url)]
            for run in targets:
                run.stop_event.set()
        return [run.site_url for run in targets]

    async def stop_indexing(self, site_url: str | None = None) -> IndexingCommandResult:
        """Ask one run (or every run) to stop after its in-flight fetch."""
        stopped = self.request_stop(site_url)
        if not stopped:
            return IndexingCommandResult.rejected(NOT_RUNNING)
        logger.info(f"Stop requested for {len(stopped)} site(s)")
        return IndexingCommandResult.accepted(stopped)

    async def index_page(self, url: str) -> IndexingCommandResult:
        """Re-index a single page of a configured site, replacing its old postings."""
        try:
            sites = self._load_sites()
        except IndexingError as exc:
            return IndexingCommandResult.rejected(str(exc))
        site_config = site_for_page(sites, url)
        if site_config is None:
            return IndexingCommandResult.rejected(PAGE_OUTSIDE_SITES)

        run = IndexingRun(site_url=site_config.url)
        with self._runs_lock:
            if site_config.url in self._runs:
                return IndexingCommandResult.rejected(ALREADY_RUNNING)
            self._runs[site_config.url] = run
        try:
            await self.indexer.index_single_page(site_config, url)
        except IndexingError as exc:
            return IndexingCommandResult.rejected(str(exc))
        finally:
            with self._runs_lock:
                if self._runs.get(site_config.url) is run:
                    del self._runs[site_config.url]
        return IndexingCommandResult.accepted([site_config.url])

    async def get_site_status(self, site_url: str) -> SiteStatusView:
        """Current lifecycle state of a site.

        Raises:
            UnknownSiteError: no site with that URL has ever been indexed
        """
        site = await asyncio.to_thread(self.store.find_site_by_url, site_url)
        if site is None:
            raise UnknownSiteError(f"unknown site: {site_url}")
        return SiteStatusView(
            url=site.url,
            name=site.name,
            status=site.status,
            status_time=site.status_time,
            last_error=site.last_error,
        )

    async def wait_for_idle(self) -> None:
        """Wait until every run started so far has finished."""
        while True:
            with self._runs_lock:
                tasks = [run.task for run in self._runs.values() if run.task is not None and not run.task.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def recover_interrupted_runs(self) -> list[str]:
        """Move sites left INDEXING by a previous process to FAILED."""
        recovered: list[str] = []
        for site in await asyncio.to_thread(self.store.list_sites):
            if site.status is not SiteStatus.INDEXING:
                continue
            with self._runs_lock:
                if site.url in self._runs:
                    continue
            site.mark_failed(INDEXING_INTERRUPTED)
            await asyncio.to_thread(self.store.update_site_status, site)
            recovered.append(site.url)
            logger.warning(f"Site {site.url} was left {SiteStatus.INDEXING.value}; marked failed")
        return recovered

    async def shutdown(self) -> None:
        """Stop every run and wait for the tasks to finish."""
        await self.stop_indexing()
        await self.wait_for_idle()
