"""Observability module: structured logging, Prometheus metrics and tracing."""

from searchengine.observability.context import get_trace_context, set_trace_context, site_context, trace_context
from searchengine.observability.logging import JsonFormatter, configure_logging
from searchengine.observability.metrics import (
    ACTIVE_RUNS,
    INDEXING_RUNS,
    PAGES_FETCHED,
    SEARCH_LATENCY,
    SEARCH_REQUESTS,
    STORAGE_RETRIES,
    get_metrics,
    track_latency,
)
from searchengine.observability.tracing import create_span, get_tracer, init_tracing


__all__ = [
    "ACTIVE_RUNS",
    "INDEXING_RUNS",
    "PAGES_FETCHED",
    "SEARCH_LATENCY",
    "SEARCH_REQUESTS",
    "STORAGE_RETRIES",
    "JsonFormatter",
    "configure_logging",
    "create_span",
    "get_metrics",
    "get_trace_context",
    "get_tracer",
    "init_tracing",
    "set_trace_context",
    "site_context",
    "trace_context",
    "track_latency",
]
