"""Centralized configuration for searchengine using Pydantic Settings."""

import json
from pathlib import Path
import random
from typing import Literal
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SiteConfig(BaseModel):
    """A seed site: root URL plus display name."""

    url: str = Field(min_length=1, description="Root URL of the site (http or https)")
    name: str = Field(default="", description="Human readable site name")

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        value = value.strip()
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Site URL must be an absolute http(s) URL, got {value!r}")
        return value.rstrip("/")

    @model_validator(mode="after")
    def _default_name(self) -> "SiteConfig":
        if not self.name.strip():
            self.name = urlparse(self.url).netloc
        return self


class Settings(BaseSettings):
    """Strictly typed configuration loaded from environment variables.

    All environment variables are validated at startup with proper types.
    Sites can be supplied inline (``SITES`` as a JSON list) or through a JSON
    file referenced by ``SITES_FILE``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        validate_default=True,
        extra="ignore",  # Ignore extra env vars not defined in model
    )

    # Seed sites
    sites: list[SiteConfig] = Field(default_factory=list, description="Sites to index")
    sites_file: Path | None = Field(default=None, description="JSON file with a list of {url, name} objects")

    # Storage
    database_path: Path = Field(default=Path("searchengine.db"), description="SQLite database file")

    # HTTP/Request settings
    http_timeout: int = Field(default=30, ge=1, description="HTTP request timeout in seconds")
    user_agent: str = Field(default="", description="User-Agent header; random browser UA when empty")
    fetch_max_attempts: int = Field(default=3, ge=1, description="Attempts per page for retryable failures")
    fetch_retry_backoff_seconds: float = Field(default=2.0, ge=0, description="Pause between fetch attempts")

    # Politeness
    politeness_min_delay_ms: int = Field(default=500, ge=0, description="Minimum pause between fetches")
    politeness_max_delay_ms: int = Field(default=1500, ge=0, description="Maximum pause between fetches")

    # Crawler settings
    max_crawl_pages: int = Field(default=0, ge=0, description="Maximum pages per site run (0 = unlimited)")
    max_concurrent_sites: int = Field(default=4, ge=1, description="Sites indexed at the same time")

    # Storage contention retries
    storage_max_attempts: int = Field(default=3, ge=1, description="Attempts for locked storage writes")
    storage_retry_backoff_seconds: float = Field(default=2.0, ge=0, description="Pause between storage attempts")

    # Text analysis
    min_word_length: int = Field(default=3, ge=1, description="Shortest token kept by the lemma extractor")
    morph_analyzer: Literal["pymorphy", "dictionary", "surface"] = Field(
        default="pymorphy", description="Lemmatizer: pymorphy3, a word list file, or surface forms"
    )
    morph_dictionary_path: Path | None = Field(
        default=None,
        description="Tab-separated word/lemma/grammemes dictionary used by MORPH_ANALYZER=dictionary",
    )

    # Search
    search_default_limit: int = Field(default=20, ge=1, description="Results per page when no limit is given")
    search_max_limit: int = Field(default=100, ge=1, description="Upper bound for the limit of one request")
    snippet_length: int = Field(default=200, ge=20, description="Snippet length before the ellipsis")

    # Logging
    log_level: str = Field(default="info", description="Logging level")
    log_json: bool = Field(default=True, description="Emit structured JSON logs")

    # URL filtering
    url_whitelist_prefixes: str = Field(default="", description="Comma-separated URL prefixes to include")
    url_blacklist_prefixes: str = Field(default="", description="Comma-separated URL prefixes to exclude")

    # Class constant for user agents
    USER_AGENTS: list[str] = [
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/140.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/140.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:143.0) Gecko/20100101 Firefox/143.0",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/18.6 Safari/605.1.15",
    ]

    @model_validator(mode="after")
    def _check_consistency(self) -> "Settings":
        if self.politeness_max_delay_ms < self.politeness_min_delay_ms:
            raise ValueError("POLITENESS_MAX_DELAY_MS must be greater than or equal to POLITENESS_MIN_DELAY_MS")
        if self.morph_analyzer == "dictionary" and self.morph_dictionary_path is None:
            raise ValueError("MORPH_DICTIONARY_PATH is required when MORPH_ANALYZER=dictionary")
        return self

    def get_user_agent(self) -> str:
        """Configured User-Agent, or a random one from the pool."""
        if self.user_agent:
            return self.user_agent
        return random.choice(self.USER_AGENTS)

    def get_sites(self) -> list[SiteConfig]:
        """Return the seed sites, inline ones first, then those from ``sites_file``.

        Duplicate root URLs are dropped (first wins). The file is re-read on
        every call so a new indexing run picks up edits.
        """
        sites: list[SiteConfig] = list(self.sites)
        if self.sites_file is not None:
            raw = json.loads(self.sites_file.read_text(encoding="utf-8"))
            entries = raw.get("sites", []) if isinstance(raw, dict) else raw
            sites.extend(SiteConfig.model_validate(entry) for entry in entries)

        unique: dict[str, SiteConfig] = {}
        for site in sites:
            unique.setdefault(site.url, site)
        return list(unique.values())

    def get_url_whitelist_prefixes(self) -> list[str]:
        """Get list of URL prefixes to whitelist (only include these)."""
        if not self.url_whitelist_prefixes:
            return []
        return [prefix.strip() for prefix in self.url_whitelist_prefixes.split(",") if prefix.strip()]

    def get_url_blacklist_prefixes(self) -> list[str]:
        """Get list of URL prefixes to blacklist (exclude these)."""
        if not self.url_blacklist_prefixes:
            return []
        return [prefix.strip() for prefix in self.url_blacklist_prefixes.split(",") if prefix.strip()]

    def should_process_url(self, url: str) -> bool:
        """Check if a URL should be processed based on whitelist/blacklist.

        Logic:
            1. If whitelist is defined, URL must match at least one whitelist prefix
            2. If blacklist is defined, URL must not match any blacklist prefix
            3. If neither defined, all URLs are allowed
        """
        if not url:
            return False

        whitelist = self.get_url_whitelist_prefixes()
        if whitelist and not any(url.startswith(prefix) for prefix in whitelist):
            return False

        blacklist = self.get_url_blacklist_prefixes()
        if blacklist and any(url.startswith(prefix) for prefix in blacklist):
            return False

        return True
