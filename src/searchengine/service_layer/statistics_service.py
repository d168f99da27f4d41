"""Index statistics: totals plus per-site figures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from ..adapters.index_store import AbstractIndexStore
from ..domain.model import SiteStatus
from ..domain.search import SiteStatistics, StatisticsReport, TotalStatistics


class StatisticsService:
    """Index totals and per-site figures.

    ``indexing`` is true while the given callback reports a live run in this
    process or any stored site is still INDEXING.
    """

    def __init__(self, store: AbstractIndexStore, is_indexing: Callable[[], bool] | None = None):
        self.store = store
        self._is_indexing = is_indexing or (lambda: False)

    def _collect(self) -> StatisticsReport:
        detailed = [
            SiteStatistics(
                url=site.url,
                name=site.name,
                status=site.status,
                status_time=site.status_time,
                error=site.last_error,
                pages=self.store.count_pages(site.id),
                lemmas=self.store.count_lemmas(site.id),
            )
            for site in self.store.list_sites()
        ]
        total = TotalStatistics(
            sites=len(detailed),
            pages=sum(entry.pages for entry in detailed),
            lemmas=sum(entry.lemmas for entry in detailed),
            indexing=self._is_indexing() or any(entry.status is SiteStatus.INDEXING for entry in detailed),
        )
        return StatisticsReport(total=total, detailed=detailed)

    async def get_statistics(self) -> StatisticsReport:
        return await asyncio.to_thread(self._collect)
