from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

T = TypeVar("T")

__all__ = ["SingleFlight"]


def _consume(fut: asyncio.Future[Any]) -> None:
    # mark the exception as retrieved when nobody joined the call
    if not fut.cancelled():
        fut.exception()


class SingleFlight:
    """
    At most one in-flight call per key, process-local (not a distributed lock).

      - do(key, fn): start fn, or join the call already running for key
      - try_do(key, fn): start fn, or refuse (returns (False, None)) if key is busy

    The key is released when the call finishes, successfully or not.
    """

    def __init__(self) -> None:
        self._calls: dict[str, asyncio.Future[Any]] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._calls

    def keys(self) -> frozenset[str]:
        return frozenset(self._calls)

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        fut = self._calls.get(key)
        if fut is not None:
            return await asyncio.shield(fut)
        return await self._run(key, fn)

    async def try_do(self, key: str, fn: Callable[[], Awaitable[T]]) -> tuple[bool, T | None]:
        if key in self._calls:
            return False, None
        return True, await self._run(key, fn)

    async def _run(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        fut.add_done_callback(_consume)
        self._calls[key] = fut
        try:
            result = await fn()
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except BaseException as exc:
            fut.set_exception(exc)
            raise
        else:
            fut.set_result(result)
            return result
        finally:
            self._calls.pop(key, None)
