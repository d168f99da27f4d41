"""Shared SQLite PRAGMA helpers for consistent performance tuning."""

from __future__ import annotations

import sqlite3


def apply_write_pragmas(
    conn: sqlite3.Connection,
    *,
    busy_timeout_ms: int = 5000,
    cache_size_kb: int = -65536,
    mmap_size_bytes: int = 134217728,
    temp_store: str = "MEMORY",
    foreign_keys: bool = True,
) -> None:
    """Apply PRAGMAs for a connection that both reads and writes the index."""
    conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute(f"PRAGMA cache_size = {cache_size_kb}")
    conn.execute(f"PRAGMA mmap_size = {mmap_size_bytes}")
    conn.execute(f"PRAGMA temp_store = {temp_store}")
    conn.execute(f"PRAGMA foreign_keys = {'ON' if foreign_keys else 'OFF'}")
