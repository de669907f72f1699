"""Shared limiter that keeps refreshes from piling up against external APIs."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Optional

from .models import CircuitBreakerState, RefreshCheck

logger = logging.getLogger(__name__)

DEFAULT_MAX_REFRESHES = 3
DEFAULT_MIN_REFRESH_INTERVAL_MS = 10_000
MAX_CONSECUTIVE_ERRORS = 3


def _epoch_ms() -> float:
    return time.time() * 1000


class CircuitBreaker:
    """Decide whether a refresh may start.

    One instance is built at application start-up and handed to every refresh
    entry point.  The circuit opens after ``max_consecutive_errors`` failed
    refreshes in a row; only a forced refresh, a success or :meth:`reset`
    gets past it.  The state is guarded by a lock because FastAPI may run
    handlers on worker threads.
    """

    def __init__(
        self,
        max_refreshes: int = DEFAULT_MAX_REFRESHES,
        min_refresh_interval: float = DEFAULT_MIN_REFRESH_INTERVAL_MS,
        clock: Optional[Callable[[], float]] = None,
        max_consecutive_errors: int = MAX_CONSECUTIVE_ERRORS,
    ) -> None:
        self._clock = clock or _epoch_ms
        self._lock = threading.Lock()
        self._state = CircuitBreakerState(
            max_refreshes=max_refreshes,
            min_refresh_interval=min_refresh_interval,
            max_consecutive_errors=max_consecutive_errors,
        )

    def can_refresh(self, force_refresh: bool = False) -> RefreshCheck:
        with self._lock:
            return self._check(force_refresh)

    def start_refresh(self, force_refresh: bool = False) -> bool:
        with self._lock:
            check = self._check(force_refresh)
            if not check.allowed:
                logger.info("Refresh prevented: %s", check.reason)
                return False
            self._state.is_refreshing = True
            self._state.refresh_count += 1
            self._state.last_refresh_time = self._clock()
            logger.debug("Refresh %d started (forced=%s)", self._state.refresh_count, force_refresh)
            return True

    def end_refresh(self, error: Optional[BaseException] = None) -> None:
        # The refresh count is only cleared by reset().
        with self._lock:
            self._state.is_refreshing = False
            if error is not None:
                self._state.last_error = error
                self._state.consecutive_error_count += 1
                logger.error(
                    "Circuit breaker recorded error (%d): %s",
                    self._state.consecutive_error_count,
                    error,
                )
            else:
                self._state.consecutive_error_count = 0
                self._state.last_error = None

    def cancel_refresh(self) -> None:
        """Release the in-progress flag without recording an outcome."""

        with self._lock:
            self._state.is_refreshing = False

    def reset(self) -> None:
        logger.info("Resetting circuit breaker")
        with self._lock:
            self._state.is_refreshing = False
            self._state.refresh_count = 0
            self._state.last_refresh_time = 0
            self._state.consecutive_error_count = 0
            self._state.last_error = None

    def state(self) -> CircuitBreakerState:
        with self._lock:
            return replace(self._state)

    def _check(self, force_refresh: bool) -> RefreshCheck:
        state = self._state
        if state.is_refreshing:
            return RefreshCheck(False, "Refresh already in progress")
        if force_refresh:
            return RefreshCheck(True)
        if state.is_open:
            return RefreshCheck(
                False, f"Circuit breaker open after {state.consecutive_error_count} consecutive errors"
            )
        if state.refresh_count >= state.max_refreshes:
            return RefreshCheck(False, f"Maximum refresh limit ({state.max_refreshes}) reached")
        if state.last_refresh_time > 0:
            elapsed = self._clock() - state.last_refresh_time
            if elapsed < state.min_refresh_interval:
                return RefreshCheck(False, f"Too soon for another refresh ({round(elapsed / 1000)}s ago)")
        return RefreshCheck(True)


__all__ = ["CircuitBreaker", "DEFAULT_MAX_REFRESHES", "DEFAULT_MIN_REFRESH_INTERVAL_MS", "MAX_CONSECUTIVE_ERRORS"]
