"""Structured JSON logging with trace correlation."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from pathlib import Path
import sys
from typing import Any, TextIO

import orjson

from searchengine.observability.context import get_trace_context


class JsonFormatter(logging.Formatter):
    """JSON formatter carrying trace ids and the site being processed."""

    REDACT_KEYS = frozenset({"password", "token", "api_key", "secret", "authorization"})
    MAX_MESSAGE_LEN = 2000

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_trace_context()
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": self._truncate(record.getMessage()),
            "logger": record.name,
            "trace_id": ctx.get("trace_id", ""),
            "span_id": ctx.get("span_id", ""),
        }

        # Add component from logger name
        if "." in record.name:
            log_entry["component"] = record.name.split(".")[-1]

        if site := ctx.get("site"):
            log_entry["site"] = site

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Add extra fields (redacted)
        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_KEYS and not key.startswith("_"):
                log_entry[key] = self._redact(key, value)

        return orjson.dumps(log_entry, default=self._json_default).decode("utf-8")

    def _truncate(self, msg: str) -> str:
        if len(msg) > self.MAX_MESSAGE_LEN:
            return msg[: self.MAX_MESSAGE_LEN] + "..."
        return msg

    def _redact(self, key: str, value: Any) -> Any:
        if key.lower() in self.REDACT_KEYS:
            return "[REDACTED]"
        if isinstance(value, str) and len(value) > 500:
            return value[:500] + "..."
        return value

    def _json_default(self, value: Any) -> Any:
        if isinstance(value, set):
            try:
                return sorted(value)
            except TypeError:
                return list(value)
        if isinstance(value, Path):
            return str(value)
        if isinstance(value, (bytes, bytearray)):
            return value.decode("utf-8", errors="replace")
        if isinstance(value, Exception):
            return str(value)
        return repr(value)


_STANDARD_RECORD_KEYS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "asctime"}


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    *,
    logger_levels: dict[str, str] | None = None,
    stream: TextIO | None = None,
) -> None:
    """Configure root logger with structured JSON output and per-logger overrides.

    Args:
        level: Root log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Emit structured JSON logs when True
        logger_levels: Per-logger level overrides (logger name -> level string)
        stream: Output stream (default: stdout)
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))

    root.addHandler(handler)

    # Reduce noise from third-party libraries by default
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    for logger_name, logger_level in (logger_levels or {}).items():
        resolved = getattr(logging, logger_level.upper(), logging.INFO)
        logging.getLogger(logger_name).setLevel(resolved)
