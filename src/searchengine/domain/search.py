"""Value objects returned to the (external) API layer.

Following the same conventions as the rest of the domain:
- Value Objects are immutable (frozen=True)
- No infrastructure dependencies
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from searchengine.domain.model import SiteStatus


class SearchResult(BaseModel):
    """A single ranked page."""

    model_config = ConfigDict(frozen=True)

    site: str
    site_name: str
    uri: str
    title: str
    snippet: str
    relevance: float = Field(ge=0.0, le=1.0)


class SearchResponse(BaseModel):
    """One page of results plus the size of the whole ranked set."""

    model_config = ConfigDict(frozen=True)

    count: int
    results: list[SearchResult] = Field(default_factory=list)


class IndexingCommandResult(BaseModel):
    """Outcome of start/stop/index-page commands.

    ``result`` is False when the command was rejected; ``error`` then carries
    the reason (``already running``, ``not running`` ...).
    """

    model_config = ConfigDict(frozen=True)

    result: bool
    error: str | None = None
    sites: list[str] = Field(default_factory=list)

    @classmethod
    def accepted(cls, sites: list[str] | None = None) -> "IndexingCommandResult":
        return cls(result=True, sites=sites or [])

    @classmethod
    def rejected(cls, error: str) -> "IndexingCommandResult":
        return cls(result=False, error=error)


class SiteStatusView(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    name: str
    status: SiteStatus
    status_time: datetime
    last_error: str | None = None


class SiteStatistics(BaseModel):
    """Per-site figures for the statistics report."""

    model_config = ConfigDict(frozen=True)

    url: str
    name: str
    status: SiteStatus
    status_time: datetime
    error: str | None = None
    pages: int = 0
    lemmas: int = 0


class TotalStatistics(BaseModel):
    model_config = ConfigDict(frozen=True)

    sites: int = 0
    pages: int = 0
    lemmas: int = 0
    indexing: bool = False


class StatisticsReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: TotalStatistics
    detailed: list[SiteStatistics] = Field(default_factory=list)
