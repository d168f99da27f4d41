"""Operator CLI: index configured sites, re-index a page, search, inspect status.

Configuration comes from the environment / ``.env`` (see ``Settings``);
``--database`` overrides ``DATABASE_PATH``.
"""

# ruff: noqa: T201  # CLI intentionally prints operator feedback

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
import logging
from pathlib import Path
import signal
import sys
import textwrap

import orjson
from pydantic import BaseModel, ValidationError

from searchengine.adapters.index_store import SQLiteIndexStore
from searchengine.config import Settings
from searchengine.domain.model import SiteStatus
from searchengine.errors import SearchRequestError
from searchengine.observability.logging import configure_logging
from searchengine.observability.metrics import get_metrics
from searchengine.observability.tracing import init_tracing
from searchengine.service_layer.indexing_service import IndexingService
from searchengine.service_layer.search_service import SearchEngine
from searchengine.service_layer.statistics_service import StatisticsService


logger = logging.getLogger(__name__)


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="searchengine",
        description="Crawl, index and search configured sites",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent(
            """
            Examples:
              searchengine index
              searchengine index --site https://example.org
              searchengine index-page https://example.org/news/42
              searchengine search "search query" --limit 10
              searchengine status https://example.org
              searchengine stats --json
            """
        ).strip(),
    )
    parser.add_argument("--database", type=Path, help="SQLite database file (default: DATABASE_PATH)")
    parser.add_argument("--log-level", help="Log level override (default: LOG_LEVEL)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    index = subparsers.add_parser("index", help="Crawl and index configured sites until done")
    index.add_argument("--site", help="Root URL of one configured site (default: all sites)")
    index.add_argument("--metrics", action="store_true", help="Print Prometheus metrics after the run")

    index_page = subparsers.add_parser("index-page", help="Re-index one page of a configured site")
    index_page.add_argument("url")

    search = subparsers.add_parser("search", help="Run a ranked search query")
    search.add_argument("query")
    search.add_argument("--site", help="Restrict results to one indexed site")
    search.add_argument("--offset", type=int, default=0)
    search.add_argument("--limit", type=int, default=None)
    search.add_argument("--json", action="store_true", help="Print the raw JSON response")

    status = subparsers.add_parser("status", help="Show the indexing status of a site")
    status.add_argument("site")

    stats = subparsers.add_parser("stats", help="Show index statistics")
    stats.add_argument("--json", action="store_true", help="Print the raw JSON report")
    return parser


def _print_json(model: BaseModel) -> None:
    print(orjson.dumps(model.model_dump(mode="json"), option=orjson.OPT_INDENT_2).decode("utf-8"))


def _install_stop_signals(service: IndexingService) -> None:
    loop = asyncio.get_running_loop()

    def _handler() -> None:  # pragma: no cover - signal glue
        stopped = service.request_stop()
        logger.info(f"Interrupt received, stopping {len(stopped)} run(s)")

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handler)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - unsupported platform
            logger.debug(f"Signal {sig.name} is not supported in this context")


async def _run_index(
    service: IndexingService,
    store: SQLiteIndexStore,
    site: str | None,
    *,
    show_metrics: bool = False,
) -> int:
    recovered = await service.recover_interrupted_runs()
    for url in recovered:
        print(f"Recovered interrupted run: {url}")

    result = await service.start_indexing(site)
    if not result.result:
        print(f"Indexing rejected: {result.error}", file=sys.stderr)
        return 1

    print("=== Search Engine Indexing ===")
    print(f"Sites: {', '.join(result.sites)}")
    _install_stop_signals(service)
    await service.wait_for_idle()

    exit_code = 0
    report = await StatisticsService(store, service.is_indexing).get_statistics()
    for entry in report.detailed:
        if entry.url not in result.sites:
            continue
        suffix = f"  {entry.error}" if entry.error else ""
        print(f"- {entry.url:<40} {entry.status.value:<8} pages={entry.pages}{suffix}")
        if entry.status is not SiteStatus.INDEXED:
            exit_code = 1
    if show_metrics:
        print(get_metrics().decode("utf-8"))
    return exit_code


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    store = SQLiteIndexStore(settings.database_path)
    try:
        if args.command in {"index", "index-page"}:
            service = IndexingService(settings, store)
            if args.command == "index":
                return await _run_index(service, store, args.site, show_metrics=args.metrics)
            result = await service.index_page(args.url)
            if not result.result:
                print(f"Page indexing rejected: {result.error}", file=sys.stderr)
                return 1
            print(f"Indexed {args.url}")
            return 0

        if args.command == "search":
            engine = SearchEngine(store, settings)
            try:
                response = await engine.search(args.query, site=args.site, offset=args.offset, limit=args.limit)
            except SearchRequestError as exc:
                print(f"Search error: {exc}", file=sys.stderr)
                return 1
            if args.json:
                _print_json(response)
                return 0
            print(f"{response.count} result(s)")
            for item in response.results:
                print(f"[{item.relevance:.3f}] {item.site}{item.uri}  {item.title}")
                print(f"    {item.snippet}")
            return 0

        if args.command == "status":
            service = IndexingService(settings, store)
            try:
                view = await service.get_site_status(args.site)
            except SearchRequestError as exc:
                print(str(exc), file=sys.stderr)
                return 1
            _print_json(view)
            return 0

        report = await StatisticsService(store).get_statistics()
        if args.json:
            _print_json(report)
            return 0
        total = report.total
        print(f"Sites: {total.sites}  Pages: {total.pages}  Lemmas: {total.lemmas}")
        for entry in report.detailed:
            error = f"  {entry.error}" if entry.error else ""
            print(f"- {entry.url:<40} {entry.status.value:<8} pages={entry.pages} lemmas={entry.lemmas}{error}")
        return 0
    finally:
        store.close()


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_argument_parser()
    args = parser.parse_args(argv)

    try:
        settings = Settings()
    except ValidationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 1
    if args.database is not None:
        settings = settings.model_copy(update={"database_path": args.database})

    configure_logging(args.log_level or settings.log_level, settings.log_json, stream=sys.stderr)
    init_tracing()
    return asyncio.run(_run(args, settings))


if __name__ == "__main__":
    sys.exit(main())
