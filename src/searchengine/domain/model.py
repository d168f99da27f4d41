"""Domain model - entities of the search index.

Relations are explicit foreign-key ids (``site_id``, ``page_id``,
``lemma_id``) resolved through the index store, never object references.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from searchengine.errors import InvalidStatusTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SiteStatus(str, Enum):
    """Lifecycle of a site's index."""

    INDEXING = "INDEXING"
    INDEXED = "INDEXED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in {SiteStatus.INDEXED, SiteStatus.FAILED}


_ALLOWED_TRANSITIONS: dict[SiteStatus, frozenset[SiteStatus]] = {
    SiteStatus.INDEXING: frozenset({SiteStatus.INDEXED, SiteStatus.FAILED}),
    SiteStatus.INDEXED: frozenset({SiteStatus.INDEXING}),
    SiteStatus.FAILED: frozenset({SiteStatus.INDEXING}),
}


@dataclass(slots=True)
class Site:
    """Aggregate root for one crawled site.

    The status only moves INDEXING -> INDEXED/FAILED; a new run re-enters
    INDEXING from either terminal state. ``status_time`` is refreshed on
    every transition.
    """

    id: int
    url: str
    name: str
    status: SiteStatus = SiteStatus.FAILED
    status_time: datetime = field(default_factory=utcnow)
    last_error: str | None = None

    def _transition(self, new_status: SiteStatus, now: datetime | None) -> None:
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStatusTransitionError(
                f"Site {self.url}: cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        self.status_time = now or utcnow()

    def begin_indexing(self, now: datetime | None = None) -> None:
        self._transition(SiteStatus.INDEXING, now)
        self.last_error = None

    def mark_indexed(self, now: datetime | None = None) -> None:
        self._transition(SiteStatus.INDEXED, now)
        self.last_error = None

    def mark_failed(self, error: str, now: datetime | None = None) -> None:
        self._transition(SiteStatus.FAILED, now)
        self.last_error = error


@dataclass(slots=True)
class Page:
    """A successfully fetched page; unique per (site_id, path)."""

    id: int
    site_id: int
    path: str
    code: int
    title: str
    content: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class Lemma:
    """Site-scoped dictionary entry with its running occurrence count."""

    id: int
    site_id: int
    lemma: str
    frequency: int


@dataclass(slots=True, frozen=True)
class Posting:
    """(page, lemma, rank) triple; rank is the lemma's occurrence count on the page."""

    page_id: int
    lemma_id: int
    lemma: str
    rank: float
