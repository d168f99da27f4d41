"""Search service orchestration layer.

Turns a query into lemmas, collects candidate pages from the index store,
ranks them and renders highlighted snippets for the requested slice.
"""

from __future__ import annotations

import asyncio
import logging

from ..adapters.index_store import AbstractIndexStore
from ..config import Settings
from ..domain.model import Page, Site, SiteStatus
from ..domain.search import SearchResponse, SearchResult
from ..errors import EmptyQueryError, InvalidRequestError, SearchRequestError, SiteNotIndexedError
from ..observability.metrics import SEARCH_LATENCY, SEARCH_REQUESTS, track_latency
from ..observability.tracing import create_span
from ..search.analyzers import LemmaExtractor
from ..search.morphology import build_morph_analyzer
from ..search.ranking import paginate, rank_pages, score_pages
from ..search.snippet import build_snippet


logger = logging.getLogger(__name__)

UNTITLED = "untitled"


class SearchEngine:
    """High-level search API over the index store.

    Queries are lemmatized with the same extractor rules used while indexing,
    so a query word matches every inflected form stored for its lemma.
    """

    def __init__(
        self,
        store: AbstractIndexStore,
        settings: Settings,
        *,
        lemma_extractor: LemmaExtractor | None = None,
    ):
        self.store = store
        self.settings = settings
        self.lemma_extractor = lemma_extractor or LemmaExtractor(
            build_morph_analyzer(settings.morph_analyzer, settings.morph_dictionary_path),
            min_length=settings.min_word_length,
        )

    def _resolve_limit(self, offset: int, limit: int | None) -> int:
        if offset < 0:
            raise InvalidRequestError("offset must not be negative")
        if limit is None:
            limit = self.settings.search_default_limit
        if limit <= 0:
            raise InvalidRequestError("limit must be positive")
        return min(limit, self.settings.search_max_limit)

    async def search(
        self,
        query: str,
        site: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> SearchResponse:
        """Execute a ranked keyword search.

        Args:
            query: Free-text query; every word is reduced to its lemma.
            site: Optional root URL restricting results to one indexed site.
            offset: Number of ranked results to skip.
            limit: Page size; defaults to ``search_default_limit`` and is
                clamped to ``search_max_limit``.

        Returns:
            SearchResponse with the total match count and the requested slice.

        Raises:
            EmptyQueryError: no word of the query survives lemmatization
            SiteNotIndexedError: ``site`` does not name an INDEXED site
            InvalidRequestError: negative offset or non-positive limit
        """
        try:
            with track_latency(SEARCH_LATENCY), create_span("search.query", attributes={"search.site": site or ""}):
                response = await self._search(query, site, offset, limit)
        except SearchRequestError as exc:
            SEARCH_REQUESTS.labels(status="rejected").inc()
            logger.info(f"Search rejected: {exc}")
            raise
        except Exception:
            SEARCH_REQUESTS.labels(status="error").inc()
            raise
        SEARCH_REQUESTS.labels(status="ok").inc()
        return response

    async def _search(self, query: str, site_url: str | None, offset: int, limit: int | None) -> SearchResponse:
        lemmas = self.lemma_extractor.lemmas(query or "")
        if not lemmas:
            raise EmptyQueryError()
        limit = self._resolve_limit(offset, limit)

        site_filter: Site | None = None
        if site_url is not None:
            site_filter = await asyncio.to_thread(self.store.find_site_by_url, site_url)
            if site_filter is None or site_filter.status is not SiteStatus.INDEXED:
                raise SiteNotIndexedError(site_url)

        postings = await asyncio.to_thread(
            self.store.find_postings,
            lemmas,
            site_id=site_filter.id if site_filter else None,
            statuses=(SiteStatus.INDEXED,),
        )
        ranked = rank_pages(score_pages(postings, set(lemmas)))
        page_slice = paginate(ranked, offset, limit)
        logger.debug(f"Query {query!r}: {len(lemmas)} lemmas, {len(ranked)} matching pages")
        if not page_slice:
            return SearchResponse(count=len(ranked), results=[])

        pages = await asyncio.to_thread(self.store.get_pages, [entry.page_id for entry in page_slice])
        sites = {known.id: known for known in await asyncio.to_thread(self.store.list_sites)}
        results = [
            self._to_result(pages[entry.page_id], sites[pages[entry.page_id].site_id], lemmas, entry.relevance)
            for entry in page_slice
            if entry.page_id in pages
        ]
        return SearchResponse(count=len(ranked), results=results)

    def _to_result(self, page: Page, site: Site, lemmas: list[str], relevance: float) -> SearchResult:
        snippet = build_snippet(
            page.content,
            lemmas,
            self.lemma_extractor,
            max_chars=self.settings.snippet_length,
        )
        return SearchResult(
            site=site.url,
            site_name=site.name,
            uri=page.path,
            title=page.title or UNTITLED,
            snippet=snippet,
            relevance=relevance,
        )
