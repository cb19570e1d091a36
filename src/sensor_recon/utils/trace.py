"""
Trace ID management for correlation of one reconciliation / edit across log lines.
"""
from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Optional

from sensor_recon.utils.logging import get_correlation_id, set_correlation_id


def generate_trace_id(prefix: str = "") -> str:
    """
    Generate new unique trace ID.

    Examples:
        generate_trace_id() -> "a1b2c3d4e5f6..."
        generate_trace_id("recon_") -> "recon_a1b2c3d4e5f6..."
    """
    uid = uuid.uuid4().hex
    return f"{prefix}{uid}" if prefix else uid


@contextmanager
def trace_context(trace_id: Optional[str] = None, prefix: str = "") -> Iterator[str]:
    """
    Set a trace id for the duration of the block and restore the previous one after.

    Usage:
        with trace_context(prefix="recon_") as tid:
            log.info("reconcile_started", extra={"installation_id": iid})
    """
    previous = get_correlation_id()
    tid = trace_id or previous or generate_trace_id(prefix)
    set_correlation_id(tid)
    try:
        yield tid
    finally:
        set_correlation_id(previous)


__all__ = ["generate_trace_id", "trace_context"]
