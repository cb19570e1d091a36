from __future__ import annotations

import time
from datetime import UTC, datetime

__all__ = [
    "iso_utc",
    "now_ms",
    "parse_ts",
    "utc_now",
]

_MS = 1000


def now_ms() -> int:
    """UTC epoch time in milliseconds."""
    return int(time.time() * _MS)


def utc_now() -> datetime:
    """Current UTC datetime (tz-aware)."""
    return datetime.now(tz=UTC)


def iso_utc(dt: datetime | None = None) -> str:
    """ISO-8601 string in UTC for `dt` (or now)."""
    if dt is None:
        dt = utc_now()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat()


def parse_ts(value: object) -> datetime | None:
    """Parse a stored timestamp (ISO string, epoch ms or datetime). Naive values are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value) / _MS, tz=UTC)
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=UTC)
