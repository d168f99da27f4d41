"""Shared test fixtures and configuration."""

from collections.abc import Callable, Iterator, Mapping
import os
from pathlib import Path

import httpx
import pytest


# Complete test environment that overrides ALL possible config values
TEST_ENV = {
    "SITES": "[]",
    "DATABASE_PATH": "searchengine-test.db",
    # HTTP/Request settings
    "HTTP_TIMEOUT": "5",
    "USER_AGENT": "searchengine-tests/1.0",
    "FETCH_MAX_ATTEMPTS": "3",
    "FETCH_RETRY_BACKOFF_SECONDS": "0",
    # Politeness: no real waiting in tests
    "POLITENESS_MIN_DELAY_MS": "0",
    "POLITENESS_MAX_DELAY_MS": "0",
    # Crawler settings
    "MAX_CRAWL_PAGES": "0",
    "MAX_CONCURRENT_SITES": "4",
    # Storage
    "STORAGE_MAX_ATTEMPTS": "3",
    "STORAGE_RETRY_BACKOFF_SECONDS": "0",
    # Text analysis and search
    "MIN_WORD_LENGTH": "3",
    "MORPH_ANALYZER": "surface",
    "SEARCH_DEFAULT_LIMIT": "20",
    "SEARCH_MAX_LIMIT": "100",
    "SNIPPET_LENGTH": "200",
    "LOG_LEVEL": "info",
    "LOG_JSON": "false",
    # URL filtering
    "URL_WHITELIST_PREFIXES": "",
    "URL_BLACKLIST_PREFIXES": "",
    # Proxy settings - ensure they're cleared for tests
    "http_proxy": "",
    "https_proxy": "",
    "all_proxy": "",
    "no_proxy": "",
}

UNSET_ENV = ("SITES_FILE", "MORPH_DICTIONARY_PATH")

# Set environment variables immediately when conftest.py is loaded
for key, value in TEST_ENV.items():
    os.environ[key] = value
for key in UNSET_ENV:
    os.environ.pop(key, None)

from searchengine.adapters.index_store import SQLiteIndexStore
from searchengine.config import Settings
from searchengine.search.analyzers import LemmaExtractor
from searchengine.search.morphology import DictionaryMorphAnalyzer
from searchengine.utils.fetcher import PageFetcher


# word -> (lemma, grammemes); enough Russian and English for the scenarios
MORPH_ENTRIES = {
    "кот": ("кот", ["NOUN"]),
    "кота": ("кот", ["NOUN"]),
    "коты": ("кот", ["NOUN"]),
    "коту": ("кот", ["NOUN"]),
    "котом": ("кот", ["NOUN"]),
    "сидит": ("сидеть", ["VERB"]),
    "сидел": ("сидеть", ["VERB"]),
    "сидеть": ("сидеть", ["VERB"]),
    "спит": ("спать", ["VERB"]),
    "спал": ("спать", ["VERB"]),
    "окне": ("окно", ["NOUN"]),
    "окно": ("окно", ["NOUN"]),
    "собака": ("собака", ["NOUN"]),
    "собаки": ("собака", ["NOUN"]),
    "лает": ("лаять", ["VERB"]),
    "под": ("под", ["PREP"]),
    "над": ("над", ["PREP"]),
    "или": ("или", ["CONJ"]),
    "уже": ("уже", ["PRCL"]),
    "cats": ("cat", ["NOUN"]),
    "cat": ("cat", ["NOUN"]),
    "the": ("the", ["PRCL"]),
    "and": ("and", ["CONJ"]),
}


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Clean environment variables before each test and set test defaults."""
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    for key in UNSET_ENV:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def morph() -> DictionaryMorphAnalyzer:
    return DictionaryMorphAnalyzer(MORPH_ENTRIES, fallback_to_surface=True)


@pytest.fixture
def lemma_extractor(morph) -> LemmaExtractor:
    return LemmaExtractor(morph)


@pytest.fixture
def store(tmp_path: Path) -> Iterator[SQLiteIndexStore]:
    index_store = SQLiteIndexStore(tmp_path / "index.db")
    yield index_store
    index_store.close()


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Settings factory; keyword arguments override the test environment."""

    def _make(**overrides) -> Settings:
        overrides.setdefault("database_path", tmp_path / "index.db")
        return Settings(**overrides)

    return _make


def html_page(title: str, body: str, links: tuple[str, ...] = ()) -> str:
    anchors = "".join(f'<a href="{href}">link</a>' for href in links)
    return f"<html><head><title>{title}</title></head><body><p>{body}</p>{anchors}</body></html>"


class FakeWeb:
    """Canned web for ``httpx.MockTransport``.

    ``pages`` maps absolute URLs to an HTML string, an HTTP status code, an
    ``httpx.Response`` or an exception class to raise (``httpx.ReadTimeout``).
    Unknown URLs answer 404.
    """

    def __init__(self, pages: Mapping[str, object]):
        self.pages = dict(pages)
        self.requests: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        entry = self.pages.get(url)
        if entry is None:
            return httpx.Response(404, html="<p>not found</p>")
        if isinstance(entry, type) and issubclass(entry, Exception):
            raise entry("simulated failure", request=request)
        if isinstance(entry, httpx.Response):
            return entry
        if isinstance(entry, int):
            return httpx.Response(entry, html="<p>error</p>")
        return httpx.Response(200, html=str(entry))

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler), follow_redirects=True)

    def fetcher_factory(self, settings: Settings) -> Callable[[], PageFetcher]:
        return lambda: PageFetcher(settings, client=self.client())

    def count(self, url: str) -> int:
        return self.requests.count(url)


@pytest.fixture
def fake_web() -> Callable[[Mapping[str, object]], FakeWeb]:
    return FakeWeb


@pytest.fixture
def example_site_pages() -> dict[str, object]:
    """Root linking to /a, /b and /c; /c always times out."""
    return {
        "https://example.test/": html_page("Главная", "Главная страница", ("/a", "/b", "/c")),
        "https://example.test/a": html_page("Страница А", "кот сидит"),
        "https://example.test/b": html_page("Страница Б", "кот спит"),
        "https://example.test/c": httpx.ReadTimeout,
    }
