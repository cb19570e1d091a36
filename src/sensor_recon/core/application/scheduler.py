"""
Staleness scheduler: decides which installations are due for another
reconciliation pass and runs them as independent asyncio tasks.

Due = not verified (and still open to automatic reconciliation)
      AND (no server data OR variance > 5%)
      AND serverRefreshedAt unset or older than the window.

Two windows are used: a short one for the installer's own pending submissions
and a long one for verifier dashboards. The working set follows the store's
change feed; each candidate is re-read right before its pass. At most one
attempt per installation id runs at a time (process-local SingleFlight shared
with manual triggers).
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sensor_recon.core.application.reconciliation.engine import ReconciliationEngine
from sensor_recon.core.domain.models import Installation, InstallationStatus
from sensor_recon.core.domain.variance import PRE_VERIFY_BELOW_PCT, variance_pct
from sensor_recon.core.infrastructure.settings import Settings
from sensor_recon.core.infrastructure.storage.document_store import ChangeStream, matches
from sensor_recon.utils.logging import get_logger
from sensor_recon.utils.metrics import inc, observe
from sensor_recon.utils.time import utc_now
from sensor_recon.utils.trace import generate_trace_id

_log = get_logger("recon.scheduler")


# ============= DUE RULE =============

def needs_attention(installation: Installation) -> bool:
    """No server data yet, or a reading off by more than the pre-verify threshold."""
    if not installation.has_server_data:
        return True
    if installation.sensor_reading <= 0:
        return False
    v = variance_pct(installation.sensor_reading, installation.latest_dis_cm)
    return v is not None and v > PRE_VERIFY_BELOW_PCT


def is_due(installation: Installation, now: datetime, window_sec: float) -> bool:
    if installation.status is InstallationStatus.VERIFIED or not installation.accepts_reconciliation:
        return False
    if not needs_attention(installation):
        return False
    refreshed = installation.server_refreshed_at
    return refreshed is None or (now - refreshed).total_seconds() > window_sec


def select_due(installations: Iterable[Installation], now: datetime, window_sec: float) -> list[Installation]:
    return [i for i in installations if is_due(i, now, window_sec)]


# ============= WINDOWS =============

@dataclass(frozen=True)
class StalenessWindow:
    name: str
    window_sec: float
    poll_sec: float
    scope: dict[str, Any] = field(default_factory=dict)

    def accepts(self, doc: dict[str, Any]) -> bool:
        return doc.get("status") != InstallationStatus.VERIFIED.value and matches(doc, self.scope)


def installer_window(settings: Settings, installer_id: str) -> StalenessWindow:
    """Short window over one installer's own pending submissions."""
    return StalenessWindow(
        name="installer",
        window_sec=settings.intervals.INSTALLER_STALENESS,
        poll_sec=settings.intervals.INSTALLER_POLL,
        scope={"installedBy": installer_id, "status": InstallationStatus.PENDING.value},
    )


def verifier_window(settings: Settings, team_id: str | None = None) -> StalenessWindow:
    """Long window for verifier dashboards, optionally scoped to a team."""
    return StalenessWindow(
        name="verifier",
        window_sec=settings.intervals.VERIFIER_STALENESS,
        poll_sec=settings.intervals.VERIFIER_POLL,
        scope={"teamId": team_id} if team_id else {},
    )


# ============= SCHEDULER =============

class StalenessScheduler:
    def __init__(
        self,
        engine: ReconciliationEngine,
        window: StalenessWindow,
        *,
        max_concurrency: int = 8,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.window = window
        self._clock = clock
        self._sem = asyncio.Semaphore(max(1, int(max_concurrency)))
        self._working: dict[str, Installation] = {}
        self._stream: ChangeStream | None = None
        self._feed_task: asyncio.Task[None] | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._attempts: set[asyncio.Task[str]] = set()
        self._stop = asyncio.Event()
        self._active = True

    # -------- state --------

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def active(self) -> bool:
        return self._active

    def set_active(self, active: bool) -> None:
        """Pause / resume ticks (hidden or backgrounded session) without stopping."""
        if active != self._active:
            _log.info("scheduler_active_changed", extra={"window": self.window.name, "active": active})
        self._active = bool(active)

    def working_set(self) -> list[Installation]:
        return list(self._working.values())

    # -------- working set --------

    async def refresh(self) -> int:
        """Load the working set from the store (used when not following the feed)."""
        docs = await self.engine.storage.installations.list(self.window.accepts)
        self._working = {i.id: i for i in docs}
        return len(self._working)

    def _apply_change(self, kind: str, doc_id: str, data: dict[str, Any]) -> None:
        if kind == "removed":
            self._working.pop(doc_id, None)
        else:
            self._working[doc_id] = Installation.from_document(data)

    async def _follow(self, stream: ChangeStream) -> None:
        async for change in stream:
            try:
                self._apply_change(change.kind, change.doc_id, change.data)
            except Exception:
                # a malformed document is dropped; the feed keeps running
                self._working.pop(change.doc_id, None)
                inc("scheduler_feed_errors_total", window=self.window.name)
                _log.exception(
                    "scheduler_feed_change_failed",
                    extra={"window": self.window.name, "installation_id": change.doc_id, "kind": change.kind},
                )

    # -------- ticks --------

    async def _attempt(self, installation_id: str) -> str:
        async with self._sem:
            try:
                started, outcome = await self.engine.try_trigger(installation_id)
            except Exception as exc:
                # one bad record must not stop the others
                inc("scheduler_attempts_total", window=self.window.name, result="error")
                _log.error(
                    "scheduler_attempt_failed",
                    extra={"installation_id": installation_id, "error": str(exc)},
                    exc_info=True,
                )
                return "error"
        if not started:
            inc("scheduler_attempts_total", window=self.window.name, result="in_flight")
            return "in_flight"
        result = outcome.result.value if outcome is not None else "unknown"
        inc("scheduler_attempts_total", window=self.window.name, result=result)
        return result

    async def run_once(self, *, wait: bool = True) -> dict[str, Any]:
        """Start one attempt per due installation. With `wait`, gather their results."""
        loop = asyncio.get_running_loop()
        t0 = loop.time()
        if self._feed_task is None:
            await self.refresh()

        now = self._clock()
        due = select_due(self._working.values(), now, self.window.window_sec)
        tasks: list[asyncio.Task[str]] = []
        for installation in due:
            t = asyncio.create_task(self._attempt(installation.id), name=f"recon-{installation.id}")
            self._attempts.add(t)
            t.add_done_callback(self._attempts.discard)
            tasks.append(t)

        report: dict[str, Any] = {"window": self.window.name, "due": len(due), "started": len(tasks)}
        if wait and tasks:
            results = await asyncio.gather(*tasks)
            counts: dict[str, int] = {}
            for r in results:
                counts[r] = counts.get(r, 0) + 1
            report["results"] = counts

        observe("scheduler_tick_ms", (loop.time() - t0) * 1000.0, {"window": self.window.name})
        _log.debug("scheduler_tick", extra=report)
        return report

    async def _loop(self) -> None:
        while not self._stop.is_set():
            if self._active:
                trace_id = generate_trace_id("sched_")
                try:
                    await self.run_once(wait=False)
                except Exception as exc:
                    _log.error(
                        "scheduler_tick_failed",
                        extra={"window": self.window.name, "trace_id": trace_id, "error": str(exc)},
                        exc_info=True,
                    )
            with suppress(TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=self.window.poll_sec)

    # -------- lifetime --------

    async def start(self) -> None:
        if self.running:
            return
        self._stop = asyncio.Event()
        self._stream = await self.engine.storage.installations.subscribe(self.window.accepts)
        self._working = {}
        self._feed_task = asyncio.create_task(self._follow(self._stream), name=f"sched-{self.window.name}-feed")
        # let the initial snapshot land before the first tick
        await asyncio.sleep(0)
        self._loop_task = asyncio.create_task(self._loop(), name=f"sched-{self.window.name}")
        _log.info(
            "scheduler_started",
            extra={"window": self.window.name, "window_sec": self.window.window_sec, "poll_sec": self.window.poll_sec},
        )

    async def stop(self) -> None:
        """Stop ticking; attempts already started run to completion."""
        self._stop.set()
        if self._stream is not None:
            self._stream.close()
        for task in (self._loop_task, self._feed_task):
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._loop_task, self._feed_task) if t is not None), return_exceptions=True
        )
        if self._attempts:
            await asyncio.gather(*list(self._attempts), return_exceptions=True)
        self._loop_task = None
        self._feed_task = None
        self._stream = None
        _log.info("scheduler_stopped", extra={"window": self.window.name})


__all__ = [
    "StalenessScheduler",
    "StalenessWindow",
    "installer_window",
    "is_due",
    "needs_attention",
    "select_due",
    "verifier_window",
]
