"""Unit tests for the indexing service: site lifecycle, commands and recovery."""

from pathlib import Path

from conftest import FakeWeb, html_page
import httpx
import pytest

from searchengine.adapters.index_store import SQLiteIndexStore
from searchengine.domain.model import SiteStatus
from searchengine.errors import StorageContentionError, UnknownSiteError
from searchengine.service_layer.indexing_service import (
    ALREADY_RUNNING,
    CANCELLED_BY_USER,
    INDEXING_INTERRUPTED,
    NO_SITES_CONFIGURED,
    NOT_RUNNING,
    PAGE_OUTSIDE_SITES,
    SITE_NOT_CONFIGURED,
    IndexingService,
    same_site_url,
    site_for_page,
)
from searchengine.service_layer.search_service import SearchEngine


pytestmark = pytest.mark.unit

EXAMPLE = {"url": "https://example.test", "name": "Example"}
OTHER = {"url": "https://other.test", "name": "Other"}


class FlakyStore(SQLiteIndexStore):
    """Store whose page writes report contention a fixed number of times."""

    def __init__(self, db_path: Path, failures: int):
        super().__init__(db_path)
        self.failures = failures
        self.calls = 0

    def index_page(self, *args, **kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise StorageContentionError("database is locked")
        return super().index_page(*args, **kwargs)


class ClearLockedStore(SQLiteIndexStore):
    """Store that can never clear a site's previous data."""

    def clear_site_data(self, site_id):
        raise StorageContentionError("database is locked")


@pytest.fixture
def settings(make_settings):
    return make_settings(sites=[EXAMPLE])


def _service(settings, store, web, lemma_extractor):
    return IndexingService(
        settings,
        store,
        lemma_extractor=lemma_extractor,
        fetcher_factory=web.fetcher_factory(settings),
    )


async def _index(service, site_url=None):
    result = await service.start_indexing(site_url)
    assert result.result, result.error
    await service.wait_for_idle()
    return result


class TestIndexingScenarios:
    @pytest.mark.asyncio
    async def test_indexed_site_is_searchable(self, settings, store, lemma_extractor, example_site_pages):
        web = FakeWeb(example_site_pages)
        service = _service(settings, store, web, lemma_extractor)
        engine = SearchEngine(store, settings, lemma_extractor=lemma_extractor)

        await _index(service)

        both = await engine.search("кот")
        assert both.count == 2
        assert [result.uri for result in both.results] == ["/a", "/b"]
        assert [result.relevance for result in both.results] == [1.0, 1.0]

        only_a = await engine.search("сидит")
        assert [result.uri for result in only_a.results] == ["/a"]

    @pytest.mark.asyncio
    async def test_timed_out_page_is_skipped_and_site_still_indexed(
        self, settings, store, lemma_extractor, example_site_pages
    ):
        web = FakeWeb(example_site_pages)
        service = _service(settings, store, web, lemma_extractor)

        await _index(service)

        status = await service.get_site_status("https://example.test")
        assert status.status is SiteStatus.INDEXED
        assert status.last_error is None
        site = store.find_site_by_url("https://example.test")
        assert store.find_page(site.id, "/a") is not None
        assert store.find_page(site.id, "/b") is not None
        assert store.find_page(site.id, "/c") is None
        assert web.count("https://example.test/c") == settings.fetch_max_attempts

    @pytest.mark.asyncio
    async def test_reindexing_replaces_previous_data(self, settings, store, lemma_extractor, example_site_pages):
        web = FakeWeb(example_site_pages)
        service = _service(settings, store, web, lemma_extractor)

        await _index(service)
        web.pages["https://example.test/b"] = html_page("Страница Б", "собака лает")
        await _index(service)

        site = store.find_site_by_url("https://example.test")
        assert store.count_pages(site.id) == 3
        assert store.get_lemma(site.id, "кот").frequency == 1
        assert store.get_lemma(site.id, "собака").frequency == 1


class TestRunRegistry:
    @pytest.mark.asyncio
    async def test_second_start_is_rejected_while_running(self, settings, store, lemma_extractor, example_site_pages):
        service = _service(settings, store, FakeWeb(example_site_pages), lemma_extractor)

        first = await service.start_indexing()
        second = await service.start_indexing()
        single = await service.start_indexing("https://example.test/")

        assert first.result is True
        assert first.sites == ["https://example.test"]
        assert second.result is False
        assert second.error == ALREADY_RUNNING
        assert single.error == ALREADY_RUNNING
        assert service.is_indexing()

        await service.wait_for_idle()
        assert not service.is_indexing()
        assert (await service.start_indexing()).result is True
        await service.wait_for_idle()

    @pytest.mark.asyncio
    async def test_stop_marks_site_cancelled(self, settings, store, lemma_extractor, example_site_pages):
        web = FakeWeb(example_site_pages)
        service = _service(settings, store, web, lemma_extractor)

        await service.start_indexing()
        stop = await service.stop_indexing()
        await service.wait_for_idle()

        assert stop.result is True
        assert stop.sites == ["https://example.test"]
        status = await service.get_site_status("https://example.test")
        assert status.status is SiteStatus.FAILED
        assert status.last_error == CANCELLED_BY_USER
        assert web.requests == []

    @pytest.mark.asyncio
    async def test_stop_without_run_is_rejected(self, settings, store, lemma_extractor):
        service = _service(settings, store, FakeWeb({}), lemma_extractor)

        result = await service.stop_indexing()

        assert result.result is False
        assert result.error == NOT_RUNNING

    @pytest.mark.asyncio
    async def test_stopping_one_site_leaves_the_other_running(self, make_settings, store, lemma_extractor):
        settings = make_settings(sites=[EXAMPLE, OTHER])
        web = FakeWeb(
            {
                "https://example.test/": html_page("E", "кот сидит"),
                "https://other.test/": html_page("O", "кот спит"),
            }
        )
        service = _service(settings, store, web, lemma_extractor)

        await service.start_indexing()
        assert sorted(service.running_sites()) == ["https://example.test", "https://other.test"]
        await service.stop_indexing("https://other.test/")
        await service.wait_for_idle()

        assert (await service.get_site_status("https://example.test")).status is SiteStatus.INDEXED
        other = await service.get_site_status("https://other.test")
        assert other.status is SiteStatus.FAILED
        assert other.last_error == CANCELLED_BY_USER

    @pytest.mark.asyncio
    async def test_unknown_site_and_empty_configuration_are_rejected(self, make_settings, store, lemma_extractor):
        configured = _service(make_settings(sites=[EXAMPLE]), store, FakeWeb({}), lemma_extractor)
        empty = _service(make_settings(), store, FakeWeb({}), lemma_extractor)

        assert (await configured.start_indexing("https://nowhere.test")).error == SITE_NOT_CONFIGURED
        assert (await empty.start_indexing()).error == NO_SITES_CONFIGURED

    @pytest.mark.asyncio
    async def test_broken_sites_file_is_rejected(self, make_settings, store, lemma_extractor, tmp_path):
        sites_file = tmp_path / "sites.json"
        sites_file.write_text("{not json", encoding="utf-8")
        service = _service(make_settings(sites_file=sites_file), store, FakeWeb({}), lemma_extractor)

        result = await service.start_indexing()

        assert result.result is False
        assert result.error.startswith("configuration error")


class TestSiteIsolation:
    @pytest.mark.asyncio
    async def test_concurrent_sites_do_not_share_data(self, make_settings, store, lemma_extractor):
        settings = make_settings(sites=[EXAMPLE, OTHER], max_concurrent_sites=2)
        web = FakeWeb(
            {
                "https://example.test/": html_page("E", "кот сидит на окне"),
                "https://other.test/": html_page("O", "кот кот спит", ("/more",)),
                "https://other.test/more": html_page("O2", "собака лает"),
            }
        )
        service = _service(settings, store, web, lemma_extractor)
        engine = SearchEngine(store, settings, lemma_extractor=lemma_extractor)

        await _index(service)

        example = store.find_site_by_url("https://example.test")
        other = store.find_site_by_url("https://other.test")
        assert store.get_lemma(example.id, "кот").frequency == 1
        assert store.get_lemma(other.id, "кот").frequency == 2
        assert store.get_lemma(example.id, "собака") is None

        scoped = await engine.search("кот", site="https://other.test")
        assert [(result.site, result.uri) for result in scoped.results] == [("https://other.test", "/")]

        everywhere = await engine.search("кот")
        assert everywhere.count == 2
        assert everywhere.results[0].site == "https://other.test"
        assert everywhere.results[1].relevance == pytest.approx(0.5)


class TestFailures:
    @pytest.mark.asyncio
    async def test_unavailable_root_fails_site(self, settings, store, lemma_extractor):
        service = _service(settings, store, FakeWeb({"https://example.test/": 404}), lemma_extractor)

        await _index(service)

        status = await service.get_site_status("https://example.test")
        assert status.status is SiteStatus.FAILED
        assert status.last_error == "root page unavailable: HTTP 404"

    @pytest.mark.asyncio
    async def test_storage_contention_is_retried(self, settings, tmp_path, lemma_extractor, example_site_pages):
        store = FlakyStore(tmp_path / "flaky.db", failures=2)
        try:
            service = _service(settings, store, FakeWeb(example_site_pages), lemma_extractor)

            await _index(service)

            assert (await service.get_site_status("https://example.test")).status is SiteStatus.INDEXED
            assert store.count_pages() == 3
        finally:
            store.close()

    @pytest.mark.asyncio
    async def test_persistent_contention_fails_site(self, settings, tmp_path, lemma_extractor, example_site_pages):
        store = FlakyStore(tmp_path / "locked.db", failures=100)
        try:
            service = _service(settings, store, FakeWeb(example_site_pages), lemma_extractor)

            await _index(service)

            status = await service.get_site_status("https://example.test")
            assert status.status is SiteStatus.FAILED
            assert status.last_error.startswith("storage contention after 3 attempts")
            assert store.calls == settings.storage_max_attempts
        finally:
            store.close()

    @pytest.mark.asyncio
    async def test_site_left_indexing_is_indexed_again(self, settings, store, lemma_extractor, example_site_pages):
        store.get_or_create_site("https://example.test", "Example")
        web = FakeWeb(example_site_pages)
        service = _service(settings, store, web, lemma_extractor)

        await _index(service)

        status = await service.get_site_status("https://example.test")
        assert status.status is SiteStatus.INDEXED
        assert status.last_error is None
        assert web.count("https://example.test/") == 1
        assert store.count_pages() == 3

    @pytest.mark.asyncio
    async def test_contention_while_preparing_fails_site(self, settings, tmp_path, lemma_extractor):
        store = ClearLockedStore(tmp_path / "clear-locked.db")
        try:
            web = FakeWeb({"https://example.test/": html_page("Root", "корень")})
            service = _service(settings, store, web, lemma_extractor)

            await _index(service)
            first = await service.get_site_status("https://example.test")
            await _index(service)
            second = await service.get_site_status("https://example.test")

            for status in (first, second):
                assert status.status is SiteStatus.FAILED
                assert status.last_error.startswith("storage contention after 3 attempts")
            assert web.requests == []
            assert not service.is_indexing()
        finally:
            store.close()

    @pytest.mark.asyncio
    async def test_interrupted_runs_are_recovered(self, settings, store, lemma_extractor):
        store.get_or_create_site("https://example.test", "Example")
        done, _created = store.get_or_create_site("https://other.test", "Other")
        done.mark_indexed()
        store.update_site_status(done)
        service = _service(settings, store, FakeWeb({}), lemma_extractor)

        recovered = await service.recover_interrupted_runs()

        assert recovered == ["https://example.test"]
        status = await service.get_site_status("https://example.test")
        assert status.status is SiteStatus.FAILED
        assert status.last_error == INDEXING_INTERRUPTED
        assert (await service.get_site_status("https://other.test")).status is SiteStatus.INDEXED

    @pytest.mark.asyncio
    async def test_unknown_site_status_raises(self, settings, store, lemma_extractor):
        service = _service(settings, store, FakeWeb({}), lemma_extractor)

        with pytest.raises(UnknownSiteError):
            await service.get_site_status("https://never.test")


class TestSinglePage:
    @pytest.mark.asyncio
    async def test_index_page_replaces_postings(self, settings, store, lemma_extractor, example_site_pages):
        web = FakeWeb(example_site_pages)
        service = _service(settings, store, web, lemma_extractor)
        engine = SearchEngine(store, settings, lemma_extractor=lemma_extractor)
        await _index(service)

        web.pages["https://example.test/a"] = html_page("Страница А", "собака лает")
        result = await service.index_page("https://example.test/a")

        assert result.result is True
        assert (await engine.search("кот")).count == 1
        assert [r.uri for r in (await engine.search("собака")).results] == ["/a"]
        assert (await service.get_site_status("https://example.test")).status is SiteStatus.INDEXED

    @pytest.mark.asyncio
    async def test_index_page_of_new_site_creates_it(self, settings, store, lemma_extractor, example_site_pages):
        service = _service(settings, store, FakeWeb(example_site_pages), lemma_extractor)

        result = await service.index_page("https://example.test/b")

        assert result.result is True
        assert (await service.get_site_status("https://example.test")).status is SiteStatus.INDEXED
        assert store.count_pages() == 1

    @pytest.mark.asyncio
    async def test_index_page_outside_configured_sites(self, settings, store, lemma_extractor):
        service = _service(settings, store, FakeWeb({}), lemma_extractor)

        result = await service.index_page("https://elsewhere.test/a")

        assert result.result is False
        assert result.error == PAGE_OUTSIDE_SITES

    @pytest.mark.asyncio
    async def test_index_page_redirected_off_site_is_rejected(self, settings, store, lemma_extractor):
        web = FakeWeb(
            {
                "https://example.test/go": httpx.Response(302, headers={"Location": "https://evil.test/landing"}),
                "https://evil.test/landing": html_page("Evil", "кот"),
            }
        )
        service = _service(settings, store, web, lemma_extractor)

        result = await service.index_page("https://example.test/go")

        assert result.result is False
        assert result.error == "page redirected outside the site: https://evil.test/landing"
        assert store.count_pages() == 0

    @pytest.mark.asyncio
    async def test_index_page_fetch_failure_is_reported(self, settings, store, lemma_extractor, example_site_pages):
        web = FakeWeb(example_site_pages)
        service = _service(settings, store, web, lemma_extractor)
        await _index(service)

        result = await service.index_page("https://example.test/gone")

        assert result.result is False
        assert result.error == "page unavailable: HTTP 404"
        assert (await service.get_site_status("https://example.test")).status is SiteStatus.INDEXED


def test_site_url_matching(make_settings):
    sites = make_settings(sites=[EXAMPLE, {"url": "https://docs.test/guide", "name": "Guide"}]).get_sites()

    assert same_site_url("https://example.test/", "http://www.example.test")
    assert not same_site_url("https://example.test", "https://other.test")
    assert site_for_page(sites, "https://www.example.test/a/b").url == "https://example.test"
    assert site_for_page(sites, "https://docs.test/guide/intro").url == "https://docs.test/guide"
    assert site_for_page(sites, "https://docs.test/guidebook") is None
    assert site_for_page(sites, "mailto:x@example.test") is None


@pytest.mark.asyncio
async def test_site_with_path_prefix_stores_relative_paths(make_settings, store, lemma_extractor):
    settings = make_settings(sites=[{"url": "https://docs.test/guide", "name": "Guide"}])
    web = FakeWeb(
        {
            "https://docs.test/guide": html_page("Guide", "оглавление", ("/guide/intro",)),
            "https://docs.test/guide/intro": html_page("Intro", "кот сидит"),
        }
    )
    service = _service(settings, store, web, lemma_extractor)
    engine = SearchEngine(store, settings, lemma_extractor=lemma_extractor)

    await _index(service)

    site = store.find_site_by_url("https://docs.test/guide")
    assert [page.path for page in store.list_pages(site.id)] == ["/", "/intro"]
    (result,) = (await engine.search("кот")).results
    assert result.site + result.uri == "https://docs.test/guide/intro"
