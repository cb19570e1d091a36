from __future__ import annotations

import os
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

_REGISTRY = CollectorRegistry()
_COUNTERS: dict[tuple[str, tuple[str, ...]], Counter] = {}
_HISTS: dict[tuple[str, tuple[str, ...]], Histogram] = {}

# metrics can be switched off entirely (e.g. in unit tests)
_DISABLED = os.environ.get("METRICS_DISABLED", "0") == "1"


def reset_registry() -> None:
    """Fresh registry for tests."""
    global _REGISTRY, _COUNTERS, _HISTS
    _REGISTRY = CollectorRegistry()
    _COUNTERS = {}
    _HISTS = {}


def _sanitize_name(name: str) -> str:
    """Prometheus naming: dots/dashes -> underscores."""
    return name.replace(".", "_").replace("-", "_")


def _buckets_s() -> tuple[float, ...]:
    env = os.environ.get("METRICS_BUCKETS_MS", "5,10,25,50,100,250,500,1000,2500,5000")
    try:
        vals = [float(x.strip()) for x in env.split(",") if x.strip()]
    except ValueError:
        vals = [5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000]
    return tuple(v / 1000.0 for v in vals)


def _counter(name: str, labs: dict[str, str]) -> Any:
    key = (name, tuple(sorted(labs)))
    if key not in _COUNTERS:
        _COUNTERS[key] = Counter(name, name, list(key[1]), registry=_REGISTRY)
    c = _COUNTERS[key]
    return c.labels(**labs) if labs else c


def _hist(name: str, labs: dict[str, str]) -> Any:
    key = (name, tuple(sorted(labs)))
    if key not in _HISTS:
        _HISTS[key] = Histogram(name, name, list(key[1]), buckets=_buckets_s(), registry=_REGISTRY)
    h = _HISTS[key]
    return h.labels(**labs) if labs else h


# -------------------- public API --------------------


def inc(name: str, **labels: Any) -> None:
    """Counter +1"""
    if _DISABLED:
        return
    _counter(_sanitize_name(name), {k: str(v) for k, v in labels.items()}).inc()


def observe(name: str, value_ms: float, labels: dict[str, Any] | None = None) -> None:
    """Observe a latency in milliseconds (stored as seconds)."""
    if _DISABLED:
        return
    h = _hist(_sanitize_name(name), {k: str(v) for k, v in (labels or {}).items()})
    h.observe(float(value_ms) / 1000.0)


def export_text() -> str:
    """Body for /metrics."""
    if _DISABLED:
        return ""
    return generate_latest(_REGISTRY).decode("utf-8")


@asynccontextmanager
async def atimer(name: str, **labels: Any) -> AsyncIterator[None]:
    """
    Async timing block:
        async with atimer("telemetry_fetch_ms"):
            await client.fetch(device_id)
    """
    t0 = time.perf_counter()
    try:
        yield
    finally:
        observe(name, (time.perf_counter() - t0) * 1000.0, labels)


__all__ = ["atimer", "export_text", "inc", "observe", "reset_registry"]
