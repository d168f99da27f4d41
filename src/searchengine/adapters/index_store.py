"""Index store: durable Site/Page/Lemma/Index tables with upsert semantics.

SQLite backend following the same practices as the rest of the storage code:
- WAL mode with NORMAL synchronous
- One transaction per page, so a page's postings land atomically
- Unique keys (site_id, path), (site_id, lemma) and (page_id, lemma_id)

Lemma and posting rows are merge structures written with
``INSERT ... ON CONFLICT DO UPDATE``: a concurrent writer that created the row
first turns the insert into an update, never into an error for the caller.
"Database is locked" errors become ``StorageContentionError`` so the caller's
retry policy can decide what to do.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
import logging
from pathlib import Path
import sqlite3
import threading

from searchengine.adapters.sqlite_pragmas import apply_write_pragmas
from searchengine.domain.model import Lemma, Page, Posting, Site, SiteStatus, utcnow
from searchengine.errors import StorageContentionError


logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sites (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    status_time TEXT NOT NULL,
    last_error TEXT
);
CREATE TABLE IF NOT EXISTS pages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    site_id INTEGER NOT NULL REFERENCES sites(id) ON DELETE CASCADE,
    path TEXT NOT NULL,
    code INTEGER NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    content TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    UNIQUE (site_id, path)
);
CREATE TABLE IF NOT EXISTS lemmas (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    site_id INTEGER NOT NULL REFERENCES sites(id) ON DELETE CASCADE,
    lemma TEXT NOT NULL,
    frequency INTEGER NOT NULL DEFAULT 0,
    UNIQUE (site_id, lemma)
);
CREATE TABLE IF NOT EXISTS postings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    page_id INTEGER NOT NULL REFERENCES pages(id) ON DELETE CASCADE,
    lemma_id INTEGER NOT NULL REFERENCES lemmas(id) ON DELETE CASCADE,
    lemma TEXT NOT NULL,
    rank REAL NOT NULL,
    UNIQUE (page_id, lemma_id)
);
CREATE INDEX IF NOT EXISTS idx_postings_lemma ON postings (lemma);
CREATE INDEX IF NOT EXISTS idx_postings_lemma_id ON postings (lemma_id);
"""

_CONTENTION_MARKERS = ("locked", "busy")


def _is_contention(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _CONTENTION_MARKERS)


def _site_from_row(row: sqlite3.Row) -> Site:
    return Site(
        id=row["id"],
        url=row["url"],
        name=row["name"],
        status=SiteStatus(row["status"]),
        status_time=datetime.fromisoformat(row["status_time"]),
        last_error=row["last_error"],
    )


def _page_from_row(row: sqlite3.Row) -> Page:
    return Page(
        id=row["id"],
        site_id=row["site_id"],
        path=row["path"],
        code=row["code"],
        title=row["title"],
        content=row["content"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _posting_from_row(row: sqlite3.Row) -> Posting:
    return Posting(page_id=row["page_id"], lemma_id=row["lemma_id"], lemma=row["lemma"], rank=float(row["rank"]))


class AbstractIndexStore(ABC):
    """Repository operations the indexing and search layers rely on."""

    @abstractmethod
    def get_or_create_site(self, url: str, name: str) -> tuple[Site, bool]:
        raise NotImplementedError

    @abstractmethod
    def find_site_by_url(self, url: str) -> Site | None:
        raise NotImplementedError

    @abstractmethod
    def list_sites(self) -> list[Site]:
        raise NotImplementedError

    @abstractmethod
    def update_site_status(self, site: Site) -> None:
        raise NotImplementedError

    @abstractmethod
    def clear_site_data(self, site_id: int) -> None:
        raise NotImplementedError

    @abstractmethod
    def upsert_lemma(self, site_id: int, lemma: str, delta: int = 1) -> int:
        raise NotImplementedError

    @abstractmethod
    def upsert_posting(
        self, page_id: int, lemma_id: int, lemma: str, rank_delta: float, *, replace: bool = False
    ) -> int:
        raise NotImplementedError

    @abstractmethod
    def index_page(
        self, site_id: int, path: str, code: int, title: str, content: str, lemma_counts: Mapping[str, int]
    ) -> Page:
        raise NotImplementedError

    @abstractmethod
    def get_pages(self, page_ids: Iterable[int]) -> dict[int, Page]:
        raise NotImplementedError

    @abstractmethod
    def find_postings(
        self,
        lemmas: Iterable[str],
        *,
        site_id: int | None = None,
        statuses: Iterable[SiteStatus] | None = (SiteStatus.INDEXED,),
    ) -> list[Posting]:
        raise NotImplementedError

    @abstractmethod
    def count_pages(self, site_id: int | None = None) -> int:
        raise NotImplementedError

    @abstractmethod
    def count_lemmas(self, site_id: int | None = None) -> int:
        raise NotImplementedError


class SQLiteIndexStore(AbstractIndexStore):
    """Thread-safe SQLite implementation.

    A single connection is shared by every caller and serialized with a lock;
    writers run inside ``BEGIN IMMEDIATE`` transactions.
    """

    def __init__(self, db_path: Path | str, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        apply_write_pragmas(self._conn, busy_timeout_ms=busy_timeout_ms)
        self._conn.executescript(_SCHEMA)
        logger.info(f"Opened index store at {db_path}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                if _is_contention(exc):
                    raise StorageContentionError(f"Could not start transaction: {exc}") from exc
                raise
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except sqlite3.OperationalError as exc:
                self._conn.execute("ROLLBACK")
                if _is_contention(exc):
                    raise StorageContentionError(str(exc)) from exc
                raise
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.OperationalError as exc:
                if _is_contention(exc):
                    raise StorageContentionError(str(exc)) from exc
                raise

    # -- sites -----------------------------------------------------------

    def get_or_create_site(self, url: str, name: str) -> tuple[Site, bool]:
        """Return the site for ``url``, creating it in INDEXING state when missing.

        The boolean is True when the row was created by this call.
        """
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM sites WHERE url = ?", (url,)).fetchone()
            if row is not None:
                return _site_from_row(row), False
            now = utcnow()
            cursor = conn.execute(
                "INSERT INTO sites (url, name, status, status_time, last_error) VALUES (?, ?, ?, ?, NULL)",
                (url, name, SiteStatus.INDEXING.value, now.isoformat()),
            )
            return Site(id=cursor.lastrowid, url=url, name=name, status=SiteStatus.INDEXING, status_time=now), True

    def get_site(self, site_id: int) -> Site | None:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM sites WHERE id = ?", (site_id,)).fetchone()
        return _site_from_row(row) if row is not None else None

    def find_site_by_url(self, url: str) -> Site | None:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM sites WHERE url = ?", (url.rstrip("/"),)).fetchone()
        return _site_from_row(row) if row is not None else None

    def list_sites(self) -> list[Site]:
        with self._reader() as conn:
            rows = conn.execute("SELECT * FROM sites ORDER BY id").fetchall()
        return [_site_from_row(row) for row in rows]

    def update_site_status(self, site: Site) -> None:
        """Persist name, status, status_time and last_error of ``site``."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE sites SET name = ?, status = ?, status_time = ?, last_error = ? WHERE id = ?",
                (site.name, site.status.value, site.status_time.isoformat(), site.last_error, site.id),
            )

    def clear_site_data(self, site_id: int) -> None:
        """Delete every page, lemma and posting of a site; the site row stays."""
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM postings WHERE page_id IN (SELECT id FROM pages WHERE site_id = ?)",
                (site_id,),
            )
            conn.execute("DELETE FROM pages WHERE site_id = ?", (site_id,))
            conn.execute("DELETE FROM lemmas WHERE site_id = ?", (site_id,))
        logger.debug(f"Cleared index data of site {site_id}")

    # -- upserts ---------------------------------------------------------

    def _upsert_lemma(self, conn: sqlite3.Connection, site_id: int, lemma: str, delta: int) -> int:
        conn.execute(
            "INSERT INTO lemmas (site_id, lemma, frequency) VALUES (?, ?, ?) "
            "ON CONFLICT (site_id, lemma) DO UPDATE SET frequency = frequency + excluded.frequency",
            (site_id, lemma, delta),
        )
        # lastrowid is unreliable after the UPDATE branch
        row = conn.execute("SELECT id FROM lemmas WHERE site_id = ? AND lemma = ?", (site_id, lemma)).fetchone()
        return row["id"]

    def _upsert_posting(
        self,
        conn: sqlite3.Connection,
        page_id: int,
        lemma_id: int,
        lemma: str,
        rank_delta: float,
        replace: bool,
    ) -> int:
        new_rank = "excluded.rank" if replace else "rank + excluded.rank"
        conn.execute(
            "INSERT INTO postings (page_id, lemma_id, lemma, rank) VALUES (?, ?, ?, ?) "
            f"ON CONFLICT (page_id, lemma_id) DO UPDATE SET rank = {new_rank}",
            (page_id, lemma_id, lemma, rank_delta),
        )
        row = conn.execute(
            "SELECT id FROM postings WHERE page_id = ? AND lemma_id = ?", (page_id, lemma_id)
        ).fetchone()
        return row["id"]

    def upsert_lemma(self, site_id: int, lemma: str, delta: int = 1) -> int:
        """Add ``delta`` to the lemma's frequency, creating the row when missing.

        Returns:
            The lemma id.
        """
        with self._transaction() as conn:
            return self._upsert_lemma(conn, site_id, lemma, delta)

    def upsert_posting(
        self, page_id: int, lemma_id: int, lemma: str, rank_delta: float, *, replace: bool = False
    ) -> int:
        """Accumulate (or with ``replace`` overwrite) the rank of a posting.

        Raises:
            ValueError: page and lemma belong to different sites
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT p.site_id AS page_site, l.site_id AS lemma_site "
                "FROM pages p, lemmas l WHERE p.id = ? AND l.id = ?",
                (page_id, lemma_id),
            ).fetchone()
            if row is None:
                raise ValueError(f"Unknown page {page_id} or lemma {lemma_id}")
            if row["page_site"] != row["lemma_site"]:
                raise ValueError(f"Lemma {lemma_id} and page {page_id} belong to different sites")
            return self._upsert_posting(conn, page_id, lemma_id, lemma, rank_delta, replace)

    def _delete_page(self, conn: sqlite3.Connection, site_id: int, path: str) -> None:
        row = conn.execute("SELECT id FROM pages WHERE site_id = ? AND path = ?", (site_id, path)).fetchone()
        if row is None:
            return
        page_id = row["id"]
        # Take the page's occurrences back out of the site-wide frequencies
        conn.execute(
            "UPDATE lemmas SET frequency = frequency - ("
            "  SELECT CAST(po.rank AS INTEGER) FROM postings po WHERE po.lemma_id = lemmas.id AND po.page_id = ?"
            ") WHERE id IN (SELECT lemma_id FROM postings WHERE page_id = ?)",
            (page_id, page_id),
        )
        conn.execute("DELETE FROM postings WHERE page_id = ?", (page_id,))
        conn.execute("DELETE FROM pages WHERE id = ?", (page_id,))

    def index_page(
        self, site_id: int, path: str, code: int, title: str, content: str, lemma_counts: Mapping[str, int]
    ) -> Page:
        """Store a page and its postings in one transaction.

        A previous version of the page is replaced: its postings are removed
        and its occurrence counts subtracted from the lemma frequencies before
        the new counts are added, so indexing identical content twice leaves
        frequencies and ranks unchanged.
        """
        created_at = utcnow()
        with self._transaction() as conn:
            self._delete_page(conn, site_id, path)
            cursor = conn.execute(
                "INSERT INTO pages (site_id, path, code, title, content, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (site_id, path, code, title, content, created_at.isoformat()),
            )
            page_id = cursor.lastrowid
            for lemma, count in sorted(lemma_counts.items()):
                lemma_id = self._upsert_lemma(conn, site_id, lemma, count)
                self._upsert_posting(conn, page_id, lemma_id, lemma, float(count), replace=True)
        logger.debug(f"Indexed page {path} of site {site_id} with {len(lemma_counts)} lemmas")
        return Page(
            id=page_id,
            site_id=site_id,
            path=path,
            code=code,
            title=title,
            content=content,
            created_at=created_at,
        )

    # -- reads -----------------------------------------------------------

    def find_page(self, site_id: int, path: str) -> Page | None:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM pages WHERE site_id = ? AND path = ?", (site_id, path)).fetchone()
        return _page_from_row(row) if row is not None else None

    def get_pages(self, page_ids: Iterable[int]) -> dict[int, Page]:
        ids = list(dict.fromkeys(page_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self._reader() as conn:
            rows = conn.execute(f"SELECT * FROM pages WHERE id IN ({placeholders})", ids).fetchall()
        return {row["id"]: _page_from_row(row) for row in rows}

    def list_pages(self, site_id: int) -> list[Page]:
        with self._reader() as conn:
            rows = conn.execute("SELECT * FROM pages WHERE site_id = ? ORDER BY id", (site_id,)).fetchall()
        return [_page_from_row(row) for row in rows]

    def get_lemma(self, site_id: int, lemma: str) -> Lemma | None:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM lemmas WHERE site_id = ? AND lemma = ?", (site_id, lemma)).fetchone()
        if row is None:
            return None
        return Lemma(id=row["id"], site_id=row["site_id"], lemma=row["lemma"], frequency=row["frequency"])

    def get_page_postings(self, page_id: int) -> list[Posting]:
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT page_id, lemma_id, lemma, rank FROM postings WHERE page_id = ? ORDER BY lemma", (page_id,)
            ).fetchall()
        return [_posting_from_row(row) for row in rows]

    def find_postings(
        self,
        lemmas: Iterable[str],
        *,
        site_id: int | None = None,
        statuses: Iterable[SiteStatus] | None = (SiteStatus.INDEXED,),
    ) -> list[Posting]:
        """Postings for any of ``lemmas``, optionally scoped to one site and to site statuses."""
        lemma_list = list(dict.fromkeys(lemmas))
        if not lemma_list:
            return []
        clauses = [f"po.lemma IN ({', '.join('?' for _ in lemma_list)})"]
        params: list[object] = list(lemma_list)
        if site_id is not None:
            clauses.append("l.site_id = ?")
            params.append(site_id)
        if statuses is not None:
            status_values = [status.value for status in statuses]
            clauses.append(f"s.status IN ({', '.join('?' for _ in status_values)})")
            params.extend(status_values)
        query = (
            "SELECT po.page_id, po.lemma_id, po.lemma, po.rank FROM postings po "
            "JOIN lemmas l ON l.id = po.lemma_id "
            "JOIN sites s ON s.id = l.site_id "
            f"WHERE {' AND '.join(clauses)} ORDER BY po.page_id, po.lemma"
        )
        with self._reader() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_posting_from_row(row) for row in rows]

    def count_pages(self, site_id: int | None = None) -> int:
        with self._reader() as conn:
            if site_id is None:
                row = conn.execute("SELECT COUNT(*) FROM pages").fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM pages WHERE site_id = ?", (site_id,)).fetchone()
        return int(row[0])

    def count_lemmas(self, site_id: int | None = None) -> int:
        """Lemmas that still occur somewhere (frequency above zero)."""
        with self._reader() as conn:
            if site_id is None:
                row = conn.execute("SELECT COUNT(*) FROM lemmas WHERE frequency > 0").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM lemmas WHERE site_id = ? AND frequency > 0", (site_id,)
                ).fetchone()
        return int(row[0])
