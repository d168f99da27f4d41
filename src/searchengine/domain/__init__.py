"""Domain layer - entities and value objects with no infrastructure dependencies."""

from searchengine.domain.model import Lemma, Page, Posting, Site, SiteStatus
from searchengine.domain.search import (
    IndexingCommandResult,
    SearchResponse,
    SearchResult,
    SiteStatistics,
    SiteStatusView,
    StatisticsReport,
    TotalStatistics,
)


__all__ = [
    "IndexingCommandResult",
    "Lemma",
    "Page",
    "Posting",
    "SearchResponse",
    "SearchResult",
    "Site",
    "SiteStatistics",
    "SiteStatus",
    "SiteStatusView",
    "StatisticsReport",
    "TotalStatistics",
]
