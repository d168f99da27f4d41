"""Adapters layer - index storage behind a repository interface."""

from .index_store import AbstractIndexStore, SQLiteIndexStore


__all__ = [
    "AbstractIndexStore",
    "SQLiteIndexStore",
]
