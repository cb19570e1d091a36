from __future__ import annotations

import asyncio
import random
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from sensor_recon.utils.logging import get_logger
from sensor_recon.utils.metrics import inc
from sensor_recon.utils.time import now_ms

_log = get_logger("events.bus")

Handler = Callable[["Event"], Awaitable[None]]


@dataclass(frozen=True)
class Event:
    """
    Portable event.
    topic   - channel name (e.g. 'documents.installations')
    payload - JSON-compatible dict
    key     - optional entity key (document id)
    ts_ms   - publish time
    """

    topic: str
    payload: dict[str, Any]
    key: str | None = None
    ts_ms: int = 0


class Subscription:
    """
    Pull-style view over bus events: `async for evt in sub: ...`.

    Events matching the topic pattern and predicate are buffered in a bounded
    queue; when the consumer falls behind the oldest buffered event is dropped.
    """

    def __init__(
        self,
        bus: AsyncEventBus,
        pattern: str,
        predicate: Callable[[Event], bool] | None,
        queue_size: int,
    ) -> None:
        self._bus = bus
        self._pattern = pattern
        self._predicate = predicate
        self._queue: asyncio.Queue[Event | None] = asyncio.Queue(maxsize=max(1, queue_size))
        self._closed = False

    async def _handle(self, evt: Event) -> None:
        if self._closed:
            return
        if self._predicate is not None and not self._predicate(evt):
            return
        if self._queue.full():
            self._queue.get_nowait()
            inc("bus_subscription_dropped_total", pattern=self._pattern)
        self._queue.put_nowait(evt)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Event:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        evt = await self._queue.get()
        if evt is None:
            raise StopAsyncIteration
        return evt

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus._remove_handler(self._pattern, self._handle)
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.close()


class AsyncEventBus:
    """
    Lightweight in-process async event bus.

    API:
      - subscribe(topic, handler) / on(topic, handler) - exact topic
      - subscribe_wildcard("documents.*", handler) - prefix match
      - subscribe_dlq(handler) - events that failed delivery after retries
      - stream(pattern, predicate=None) - Subscription usable with `async for`
      - publish(topic, payload, key=None) - delivery with retries and backoff

    At-most-once, in-process only.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        backoff_base_ms: int = 50,
        backoff_factor: float = 2.0,
        topic_concurrency: int = 32,
    ) -> None:
        self.max_attempts = int(max_attempts)
        self.backoff_base_ms = int(backoff_base_ms)
        self.backoff_factor = float(backoff_factor)
        self._subs: defaultdict[str, list[Handler]] = defaultdict(list)
        self._wildcard: list[tuple[str, Handler]] = []
        self._dlq: list[Handler] = []
        self._sem = asyncio.Semaphore(max(1, int(topic_concurrency)))
        self._started = False

    # -------------------------
    # Subscriptions
    # -------------------------
    def subscribe(self, topic: str, handler: Handler) -> None:
        self._subs[topic].append(handler)
        _log.debug("bus_subscribed", extra={"topic": topic, "handler": getattr(handler, "__name__", "handler")})

    def on(self, topic: str, handler: Handler) -> None:
        self.subscribe(topic, handler)

    def subscribe_wildcard(self, pattern: str, handler: Handler) -> None:
        """'documents.*' -> every topic starting with 'documents.'."""
        self._wildcard.append((pattern.rstrip("*"), handler))
        _log.debug("bus_subscribed_wildcard", extra={"pattern": pattern})

    def subscribe_dlq(self, handler: Handler) -> None:
        self._dlq.append(handler)

    def stream(
        self,
        pattern: str,
        *,
        predicate: Callable[[Event], bool] | None = None,
        queue_size: int = 1024,
    ) -> Subscription:
        sub = Subscription(self, pattern, predicate, queue_size)
        if pattern.endswith("*"):
            self.subscribe_wildcard(pattern, sub._handle)
        else:
            self.subscribe(pattern, sub._handle)
        return sub

    def _remove_handler(self, pattern: str, handler: Handler) -> None:
        if pattern.endswith("*"):
            pref = pattern.rstrip("*")
            self._wildcard = [(p, h) for (p, h) in self._wildcard if not (p == pref and h == handler)]
        else:
            self._subs[pattern] = [h for h in self._subs.get(pattern, []) if h != handler]

    # -------------------------
    # Lifecycle
    # -------------------------
    async def start(self) -> None:
        self._started = True
        _log.info("bus_started")

    async def close(self) -> None:
        self._started = False
        _log.info("bus_closed")

    # -------------------------
    # Publishing
    # -------------------------
    async def publish(self, topic: str, payload: dict[str, Any], *, key: str | None = None) -> dict[str, Any]:
        """
        Deliver to local subscribers. A failing handler gets N retries with
        jittered exponential backoff, then the event goes to the DLQ.
        """
        evt = Event(topic=topic, payload=payload, key=key, ts_ms=now_ms())

        handlers = list(self._subs.get(topic, []))
        if self._wildcard:
            handlers.extend(h for (pref, h) in self._wildcard if topic.startswith(pref))

        if not handlers:
            return {"ok": True, "delivered": 0, "topic": topic}

        async def _guarded(h: Handler) -> bool:
            async with self._sem:
                return await self._deliver_with_retry(h, evt)

        results = await asyncio.gather(*[_guarded(h) for h in handlers], return_exceptions=True)
        delivered = 0
        for res, h in zip(results, handlers):
            if isinstance(res, BaseException):
                _log.error(
                    "bus_handler_crashed",
                    extra={"topic": topic, "handler": getattr(h, "__name__", "handler")},
                    exc_info=res,
                )
                await self._emit_to_dlq(evt, failed_handler=getattr(h, "__name__", "handler"))
            elif res:
                delivered += 1

        inc("bus_publish_total", topic=topic)
        _log.debug("bus_published", extra={"topic": topic, "delivered": delivered, "key": key})
        return {"ok": True, "delivered": delivered, "topic": topic}

    # -------------------------
    # Internals
    # -------------------------
    async def _emit_to_dlq(self, evt: Event, *, failed_handler: str) -> None:
        if not self._dlq:
            return
        dlq_evt = Event(
            topic="__dlq__",
            payload={"original_topic": evt.topic, "failed_handler": failed_handler, **evt.payload},
            key=evt.key,
            ts_ms=now_ms(),
        )
        for d in self._dlq:
            try:
                await d(dlq_evt)
            except Exception:
                _log.debug("bus_dlq_handler_failed", extra={"original_topic": evt.topic}, exc_info=True)

    async def _deliver_with_retry(self, handler: Handler, evt: Event) -> bool:
        attempt = 1
        delay_ms = self.backoff_base_ms
        name = getattr(handler, "__name__", "handler")

        while True:
            try:
                await handler(evt)
                return True
            except Exception:
                if attempt >= self.max_attempts:
                    _log.error(
                        "bus_handler_failed",
                        extra={"topic": evt.topic, "handler": name, "attempt": attempt},
                        exc_info=True,
                    )
                    await self._emit_to_dlq(evt, failed_handler=name)
                    inc("bus_handler_failed_total", topic=evt.topic)
                    return False

                jitter = delay_ms * 0.25
                await asyncio.sleep(max(0.001, (delay_ms + random.uniform(-jitter, jitter)) / 1000.0))
                attempt += 1
                delay_ms = int(delay_ms * self.backoff_factor)

    def attach_logger_dlq(self) -> None:
        """Default DLQ logger when nothing else is subscribed."""

        async def _log_dlq(e: Event) -> None:
            _log.error("bus_dlq", extra={"topic": e.payload.get("original_topic"), "payload": e.payload})

        if not self._dlq:
            self.subscribe_dlq(_log_dlq)


__all__ = ["AsyncEventBus", "Event", "Subscription"]
