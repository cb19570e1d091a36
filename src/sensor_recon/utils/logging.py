"""
JSON logs on stdout, one object per line.

Event names go in the message, details in `extra=`:

    log.info("reconcile_applied", extra={"installation_id": iid, "variance_pct": 4.0})

The current trace id (see utils/trace.py) is attached to every record. Keys that
look like credentials are masked, nested values included.
"""
from __future__ import annotations

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

_TRACE_ID: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)

_MASK = "***"
_SECRET_MARKERS = ("api_key", "secret", "password", "token", "authorization")

# attributes every LogRecord has; anything else came from `extra=`
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "uvicorn.access")


def set_correlation_id(value: Optional[str]) -> None:
    _TRACE_ID.set(value)


def get_correlation_id() -> Optional[str]:
    return _TRACE_ID.get()


def _is_secret(key: Any) -> bool:
    k = str(key).lower().replace("-", "_")
    return any(m in k for m in _SECRET_MARKERS)


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _MASK if _is_secret(k) else _scrub(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_scrub(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        out: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        trace_id = getattr(record, "trace_id", None) or get_correlation_id()
        if trace_id:
            out["trace_id"] = trace_id
        for key, value in vars(record).items():
            if key in _RECORD_ATTRS or key == "trace_id" or key.startswith("_"):
                continue
            out[key] = _MASK if _is_secret(key) else _scrub(value)
        if record.exc_info and record.exc_info[0] is not None:
            out["exc_type"] = record.exc_info[0].__name__
            out["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(out, ensure_ascii=False, default=str)


def _env_level() -> int:
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_root(level: Optional[int] = None) -> None:
    """Install one JSON stdout handler on the root logger. Safe to call repeatedly."""
    root = logging.getLogger()
    level = _env_level() if level is None else level
    root.setLevel(level)

    handler = next(
        (h for h in root.handlers if isinstance(h, logging.StreamHandler) and isinstance(h.formatter, JsonFormatter)),
        None,
    )
    if handler is None:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        root.addHandler(handler)
    handler.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


if os.getenv("AUTO_CONFIGURE_LOGGING", "true").lower() == "true":
    configure_root()


__all__ = ["JsonFormatter", "configure_root", "get_correlation_id", "get_logger", "set_correlation_id"]
