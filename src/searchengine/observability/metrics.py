"""Prometheus metrics for crawling, indexing and search."""

from __future__ import annotations

from contextlib import contextmanager
import time
from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge, Histogram, generate_latest


if TYPE_CHECKING:
    from collections.abc import Generator


PAGES_FETCHED = Counter(
    "searchengine_pages_fetched_total",
    "Page fetches by final outcome",
    ["outcome"],
)

INDEXING_RUNS = Counter(
    "searchengine_indexing_runs_total",
    "Finished site indexing runs by resulting status",
    ["status"],
)

ACTIVE_RUNS = Gauge(
    "searchengine_active_indexing_runs",
    "Site indexing runs currently in progress",
)

STORAGE_RETRIES = Counter(
    "searchengine_storage_retries_total",
    "Retries caused by storage contention",
)

SEARCH_REQUESTS = Counter(
    "searchengine_search_requests_total",
    "Search requests by status",
    ["status"],
)

SEARCH_LATENCY = Histogram(
    "searchengine_search_latency_seconds",
    "Search query latency",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)


@contextmanager
def track_latency(histogram: Histogram) -> Generator[None, None, None]:
    """Context manager to track operation latency."""
    start = time.perf_counter()
    try:
        yield
    finally:
        histogram.observe(time.perf_counter() - start)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest()
