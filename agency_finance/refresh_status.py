"""Per-session refresh bookkeeping with a safety timeout."""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Callable, Optional

from .notifications import Notifier

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
RECOVERY_ERROR_THRESHOLD = 3


class RefreshState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RefreshStatusTracker:
    """Track whether a refresh is running and how many have failed in a row.

    Every :meth:`start_refresh` opens a new generation.  When the safety
    timeout fires the generation is retired, so a late :meth:`end_refresh`
    from the hung operation is ignored instead of clobbering newer state.
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        notifier: Optional[Notifier] = None,
        on_timeout: Optional[Callable[[], None]] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._notifier = notifier
        self._on_timeout = on_timeout
        self._state = RefreshState.IDLE
        self._last_error: Optional[BaseException] = None
        self._error_count = 0
        self._generation = 0
        self._timeout: Optional[asyncio.TimerHandle] = None

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------
    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def is_refreshing(self) -> bool:
        return self._state is RefreshState.RUNNING

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._last_error

    @property
    def error_count(self) -> int:
        return self._error_count

    @property
    def has_errors(self) -> bool:
        return self._error_count > 0

    @property
    def needs_recovery(self) -> bool:
        return self._error_count >= RECOVERY_ERROR_THRESHOLD

    @property
    def generation(self) -> int:
        return self._generation

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def start_refresh(self) -> bool:
        if self.is_refreshing:
            logger.info("Refresh already in progress, skipping request")
            return False

        self._cancel_timeout()
        self._generation += 1
        self._state = RefreshState.RUNNING
        loop = asyncio.get_running_loop()
        self._timeout = loop.call_later(self.timeout_seconds, self._expire, self._generation)
        return True

    def end_refresh(self, error: Optional[BaseException] = None, generation: Optional[int] = None) -> None:
        if generation is not None and not self.is_current(generation):
            logger.debug("Ignoring end of stale refresh generation %d", generation)
            return

        self._cancel_timeout()
        if error is not None:
            self._state = RefreshState.FAILED
            self._last_error = error
            self._error_count += 1
        else:
            self._state = RefreshState.SUCCEEDED
            self._error_count = 0

    def abandon_refresh(self, generation: Optional[int] = None) -> None:
        """Finish a refresh whose result was thrown away.

        The error history is left untouched since nothing was published.
        """

        if generation is not None and not self.is_current(generation):
            return
        self._cancel_timeout()
        self._state = RefreshState.IDLE

    def reset_refresh_state(self) -> None:
        logger.info("Resetting refresh state")
        self._clear()
        self._notify(
            "Estado de actualización restablecido",
            "Se ha restablecido el estado de actualización de datos",
        )

    def emergency_recovery(self) -> bool:
        logger.warning("Emergency recovery, forcing reset of refresh state")
        self._clear()
        self._notify(
            "Recuperación de emergencia completada",
            "Se han restablecido todos los estados de actualización",
        )
        return True

    def close(self) -> None:
        self._cancel_timeout()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _expire(self, generation: int) -> None:
        self._timeout = None
        if not self.is_current(generation) or not self.is_refreshing:
            return
        logger.warning("Refresh timed out after %ss, resetting state", self.timeout_seconds)
        self._generation += 1
        self._state = RefreshState.IDLE
        if self._on_timeout is not None:
            self._on_timeout()

    def _clear(self) -> None:
        self._cancel_timeout()
        if self.is_refreshing:
            self._generation += 1
        self._state = RefreshState.IDLE
        self._last_error = None
        self._error_count = 0

    def _cancel_timeout(self) -> None:
        if self._timeout is not None:
            self._timeout.cancel()
            self._timeout = None

    def _notify(self, title: str, description: str) -> None:
        if self._notifier is not None:
            self._notifier.notify(title, description)


__all__ = ["RefreshState", "RefreshStatusTracker", "DEFAULT_TIMEOUT_SECONDS", "RECOVERY_ERROR_THRESHOLD"]
