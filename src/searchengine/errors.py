"""Exception hierarchy shared by the indexing and search layers.

Request errors are raised synchronously to callers and never mutate state.
``StorageContentionError`` is the only transient error: callers retry it with
a bounded budget before escalating to ``IndexingError``.
"""

from __future__ import annotations


class SearchEngineError(Exception):
    """Base error for the search engine."""


class SearchRequestError(SearchEngineError):
    """Invalid request from a caller (validation error)."""


class EmptyQueryError(SearchRequestError):
    """The query contains no searchable words."""

    def __init__(self, message: str = "empty query") -> None:
        super().__init__(message)


class SiteNotIndexedError(SearchRequestError):
    """The site filter does not name an indexed site."""

    def __init__(self, site_url: str, message: str = "site not indexed") -> None:
        super().__init__(message)
        self.site_url = site_url


class InvalidRequestError(SearchRequestError):
    """Malformed pagination values, URLs and similar."""


class UnknownSiteError(SearchRequestError):
    """The URL does not belong to any configured site."""


class StorageContentionError(SearchEngineError):
    """The database was locked or busy; the write may succeed if retried."""


class IndexingError(SearchEngineError):
    """Non-retryable failure of a site indexing run."""


class ConfigurationError(IndexingError):
    """Missing or invalid seed configuration."""


class InvalidStatusTransitionError(SearchEngineError):
    """Raised when a site status change is not allowed by the state machine."""
