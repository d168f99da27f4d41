"""Unit tests for observability module."""

import json
import logging

from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
from prometheus_client import REGISTRY
import pytest

from searchengine.errors import EmptyQueryError
from searchengine.observability import (
    JsonFormatter,
    configure_logging,
    create_span,
    get_metrics,
    get_trace_context,
    init_tracing,
    set_trace_context,
    site_context,
    tracing as tracing_module,
)
from searchengine.service_layer.search_service import SearchEngine


def _record(msg="test message", level=logging.INFO, name="searchengine.utils.crawler"):
    return logging.LogRecord(name=name, level=level, pathname="test.py", lineno=1, msg=msg, args=(), exc_info=None)


@pytest.fixture
def span_exporter():
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    previous = tracing_module._tracer_holder["tracer"]
    tracing_module._tracer_holder["tracer"] = provider.get_tracer("test")
    yield exporter
    tracing_module._tracer_holder["tracer"] = previous


@pytest.mark.unit
class TestJsonFormatter:
    """Tests for structured JSON logging."""

    def test_format_includes_trace_context_and_component(self):
        set_trace_context("ab" * 16, "cd" * 8)

        data = json.loads(JsonFormatter().format(_record()))

        assert data["message"] == "test message"
        assert data["level"] == "INFO"
        assert data["trace_id"] == "ab" * 16
        assert data["span_id"] == "cd" * 8
        assert data["component"] == "crawler"
        assert "site" not in data

    def test_site_context_tags_records(self):
        with site_context("https://example.test"):
            inside = json.loads(JsonFormatter().format(_record()))
        outside = json.loads(JsonFormatter().format(_record()))

        assert inside["site"] == "https://example.test"
        assert "site" not in outside

    def test_format_truncates_and_redacts(self):
        record = _record(msg="x" * 5000)
        record.api_key = "secret"
        record.page_count = 3

        data = json.loads(JsonFormatter().format(record))

        assert data["message"].endswith("...")
        assert data["api_key"] == "[REDACTED]"
        assert data["page_count"] == 3

    def test_json_default_handles_set_and_bytes(self):
        formatter = JsonFormatter()

        assert formatter._json_default({3, 1, 2}) == [1, 2, 3]
        assert formatter._json_default(b"ok") == "ok"


@pytest.mark.unit
class TestConfigureLogging:
    def test_installs_single_json_handler(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            configure_logging("debug", json_output=True, logger_levels={"searchengine.utils": "warning"})
            configure_logging("debug", json_output=True)

            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JsonFormatter)
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
            logging.getLogger("searchengine.utils").setLevel(logging.NOTSET)

    def test_plain_text_output(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            configure_logging("warning", json_output=False)

            assert root.level == logging.WARNING
            assert not isinstance(root.handlers[0].formatter, JsonFormatter)
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)


@pytest.mark.unit
class TestTracing:
    def test_init_tracing_applies_resource_attributes(self):
        provider = init_tracing("test-service", resource_attributes={"service.version": "2.0.0"})

        assert provider.resource.attributes["service.name"] == "test-service"
        assert provider.resource.attributes["service.version"] == "2.0.0"

    def test_create_span_records_attributes_and_span_id(self, span_exporter):
        with create_span("indexing.site", attributes={"site.url": "https://example.test"}) as span:
            span_id = format(span.get_span_context().span_id, "016x")
            assert get_trace_context()["span_id"] == span_id

        (finished,) = span_exporter.get_finished_spans()
        assert finished.name == "indexing.site"
        assert finished.attributes["site.url"] == "https://example.test"

    def test_create_span_marks_errors(self, span_exporter):
        with pytest.raises(RuntimeError), create_span("search.query"):
            raise RuntimeError("boom")

        (finished,) = span_exporter.get_finished_spans()
        assert finished.status.status_code is StatusCode.ERROR


@pytest.mark.unit
class TestMetrics:
    @pytest.mark.asyncio
    async def test_rejected_search_is_counted(self, store, make_settings, lemma_extractor):
        engine = SearchEngine(store, make_settings(), lemma_extractor=lemma_extractor)
        before = REGISTRY.get_sample_value("searchengine_search_requests_total", {"status": "rejected"}) or 0.0

        with pytest.raises(EmptyQueryError):
            await engine.search("")

        after = REGISTRY.get_sample_value("searchengine_search_requests_total", {"status": "rejected"})
        assert after == before + 1

    def test_exposition_lists_counters(self):
        output = get_metrics().decode("utf-8")

        assert "searchengine_pages_fetched" in output
        assert "searchengine_active_indexing_runs" in output
