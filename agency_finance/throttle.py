"""Coalesce bursts of fetch calls into a single effective call."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_WINDOW_MS = 1000


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class ThrottleGate:
    """Let at most one fetch through per rolling window.

    A call that arrives inside the window is delayed until the window closes.
    A further call during that delay replaces the pending one (last call wins)
    and every caller of the burst receives the outcome of the call that
    actually ran.
    """

    def __init__(self, window_ms: float = DEFAULT_WINDOW_MS, clock: Optional[Callable[[], float]] = None) -> None:
        self.window_ms = window_ms
        self._clock = clock or _monotonic_ms
        self._last_executed: Optional[float] = None
        self._pending: Optional[asyncio.TimerHandle] = None
        self._waiters: list[asyncio.Future] = []

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    async def execute(self, fetch_fn: Callable[[], Awaitable[T]], force_refresh: bool = False) -> T:
        now = self._clock()
        elapsed = None if self._last_executed is None else now - self._last_executed

        if elapsed is not None and elapsed < self.window_ms and not force_refresh:
            logger.debug("Throttling fetch request, %.0fms since last fetch", elapsed)
            loop = asyncio.get_running_loop()
            if self._pending is not None:
                self._pending.cancel()
            waiter = loop.create_future()
            self._waiters.append(waiter)
            delay = (self.window_ms - elapsed) / 1000
            self._pending = loop.call_later(delay, self._fire, fetch_fn)
            return await waiter

        self._last_executed = now
        return await fetch_fn()

    def cancel(self) -> None:
        """Drop the pending call, if any, and cancel everyone waiting on it."""

        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            waiter.cancel()

    def _fire(self, fetch_fn: Callable[[], Awaitable[T]]) -> None:
        self._pending = None
        self._last_executed = self._clock()
        waiters, self._waiters = self._waiters, []
        logger.debug("Executing throttled fetch for %d coalesced call(s)", len(waiters))
        task = asyncio.ensure_future(fetch_fn())
        task.add_done_callback(lambda done: _settle(done, waiters))


def _settle(task: asyncio.Future, waiters: list[asyncio.Future]) -> None:
    cancelled = task.cancelled()
    error = None if cancelled else task.exception()
    for waiter in waiters:
        if waiter.done():
            continue
        if cancelled:
            waiter.cancel()
        elif error is not None:
            waiter.set_exception(error)
        else:
            waiter.set_result(task.result())


__all__ = ["ThrottleGate", "DEFAULT_WINDOW_MS"]
