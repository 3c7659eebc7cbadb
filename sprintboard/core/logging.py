"""Logging setup with structured `extra` fields and an optional JSON formatter."""

from __future__ import annotations

import json
import logging
import sys
import time
from datetime import UTC, datetime
from typing import Any

from sprintboard.core.config import settings

TRACE_LEVEL = 5
logging.addLevelName(TRACE_LEVEL, "TRACE")

_ROOT_LOGGER_NAME = "sprintboard"
# Attributes present on every LogRecord; anything else came from `extra=`.
_RESERVED_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}

_configured = False


def _record_extra(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_RECORD_ATTRS and not key.startswith("_")
    }


def _stringify(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


class TextFormatter(logging.Formatter):
    """Human-readable formatter that appends structured context as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extra = _record_extra(record)
        if not extra:
            return base
        context = " ".join(f"{key}={_stringify(value)}" for key, value in sorted(extra.items()))
        return f"{base} {context}"


class JsonFormatter(logging.Formatter):
    """Single-line JSON formatter for log shipping."""

    def __init__(self, *, use_utc: bool) -> None:
        super().__init__()
        self._use_utc = use_utc

    def format(self, record: logging.LogRecord) -> str:
        tz = UTC if self._use_utc else None
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=tz).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        payload.update({key: _stringify(value) for key, value in _record_extra(record).items()})
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True)


def _level_from_settings() -> int:
    raw = settings.log_level.strip().upper()
    if raw == "TRACE":
        return TRACE_LEVEL
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.INFO


def configure_logging() -> None:
    """Install the process-wide handler once, honoring level/format settings."""
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format.strip().lower() == "json":
        handler.setFormatter(JsonFormatter(use_utc=settings.log_use_utc))
    else:
        formatter = TextFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        if settings.log_use_utc:
            formatter.converter = time.gmtime
        handler.setFormatter(formatter)

    root = logging.getLogger(_ROOT_LOGGER_NAME)
    root.handlers = [handler]
    root.setLevel(_level_from_settings())
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger namespaced under the application root logger."""
    if name == _ROOT_LOGGER_NAME or name.startswith(f"{_ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{_ROOT_LOGGER_NAME}.{name}")
