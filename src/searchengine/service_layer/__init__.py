"""Service layer - indexing commands, search and statistics."""

from .indexing_service import IndexingService, SiteIndexer
from .search_service import SearchEngine
from .statistics_service import StatisticsService


__all__ = [
    "IndexingService",
    "SearchEngine",
    "SiteIndexer",
    "StatisticsService",
]
