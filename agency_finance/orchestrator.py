"""Sequencing of a financial data refresh.

The orchestrator owns no I/O.  It decides whether a refresh may run, walks the
collaborators in order (Stripe income, starting balance, main fetch), feeds the
result through the aggregator and publishes it, while the circuit breaker,
throttle gate and refresh tracker keep refreshes from overlapping.
"""
from __future__ import annotations

import enum
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .aggregator import summarize_transactions
from .circuit_breaker import CircuitBreaker
from .errors import CacheClearError, EmptyFetchError, FetchFailedError, RefreshError, StaleResultError
from .models import DateRange, FetchedFinancialData, FinancialData, StripeIncomeData
from .notifications import DEFAULT, DESTRUCTIVE, Notifier
from .refresh_status import RefreshStatusTracker
from .throttle import ThrottleGate

logger = logging.getLogger(__name__)

T = TypeVar("T")

StripeIncomeLoader = Callable[[DateRange, Callable[[str], bool]], Awaitable[StripeIncomeData]]
BalanceLoader = Callable[[DateRange], Awaitable[Optional[float]]]
FinancialFetcher = Callable[
    [DateRange, StripeIncomeData, Optional[float], bool], Awaitable[Optional[FetchedFinancialData]]
]
CacheClearer = Callable[[DateRange], Awaitable[bool]]


class RefreshStage(str, enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    FETCHING_STRIPE = "fetching_stripe"
    FETCHING_SUMMARY = "fetching_summary"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RefreshOrchestrator:
    """Run at most one refresh of the dashboard data at a time."""

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        tracker: RefreshStatusTracker,
        throttle: ThrottleGate,
        load_stripe_income: StripeIncomeLoader,
        load_starting_balance: BalanceLoader,
        fetch_financial_data: FinancialFetcher,
        clear_cache: CacheClearer,
        notifier: Optional[Notifier] = None,
        date_range: Optional[DateRange] = None,
        on_success: Optional[Callable[[DateRange, FinancialData], None]] = None,
    ) -> None:
        self._circuit_breaker = circuit_breaker
        self._tracker = tracker
        self._throttle = throttle
        self._load_stripe_income = load_stripe_income
        self._load_starting_balance = load_starting_balance
        self._fetch_financial_data = fetch_financial_data
        self._clear_cache = clear_cache
        self._notifier = notifier
        self._on_success = on_success

        self._date_range = date_range or DateRange.default()
        self._stage = RefreshStage.IDLE
        self._financial_data: Optional[FinancialData] = None
        self._stripe_income = StripeIncomeData()
        self._stripe_override: Optional[float] = None
        self._starting_balance: Optional[float] = None
        self._data_initialized = False

    # ------------------------------------------------------------------
    # Published state
    # ------------------------------------------------------------------
    @property
    def date_range(self) -> DateRange:
        return self._date_range

    @property
    def stage(self) -> RefreshStage:
        return self._stage

    @property
    def financial_data(self) -> Optional[FinancialData]:
        return self._financial_data

    @property
    def stripe_income(self) -> StripeIncomeData:
        return self._stripe_income

    @property
    def stripe_override(self) -> Optional[float]:
        return self._stripe_override

    @property
    def starting_balance(self) -> Optional[float]:
        return self._starting_balance

    @property
    def data_initialized(self) -> bool:
        return self._data_initialized

    @property
    def is_refreshing(self) -> bool:
        return self._tracker.is_refreshing

    def update_date_range(self, date_range: DateRange) -> None:
        if date_range != self._date_range:
            logger.info(
                "Date range changed to %s..%s",
                date_range.start_date.isoformat(),
                date_range.end_date.isoformat(),
            )
        self._date_range = date_range

    def status(self) -> dict[str, object]:
        breaker = self._circuit_breaker.state()
        last_error = self._tracker.last_error
        return {
            "stage": self._stage.value,
            "state": self._tracker.state.value,
            "is_refreshing": self._tracker.is_refreshing,
            "error_count": self._tracker.error_count,
            "has_errors": self._tracker.has_errors,
            "needs_recovery": self._tracker.needs_recovery,
            "last_error": str(last_error) if last_error is not None else None,
            "data_initialized": self._data_initialized,
            "throttle_pending": self._throttle.has_pending,
            "date_range": {
                "start_date": self._date_range.start_date.isoformat(),
                "end_date": self._date_range.end_date.isoformat(),
            },
            "circuit_breaker": {
                "is_refreshing": breaker.is_refreshing,
                "is_open": breaker.is_open,
                "consecutive_error_count": breaker.consecutive_error_count,
                "refresh_count": breaker.refresh_count,
                "max_refreshes": breaker.max_refreshes,
                "last_refresh_time": breaker.last_refresh_time,
                "min_refresh_interval": breaker.min_refresh_interval,
            },
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    async def with_refresh_protection(
        self,
        operation: Callable[[], Awaitable[T]],
        force_refresh: bool = False,
    ) -> Optional[T]:
        """Run ``operation`` unless another refresh is running or limits apply.

        Returns ``None`` when the refresh was skipped.  A forced refresh skips
        the rate limits but never runs next to another refresh.  Errors raised
        by ``operation`` are recorded and re-raised.
        """

        if not force_refresh and self._tracker.is_refreshing:
            logger.info("Refresh already in progress, skipping request")
            return None
        if not self._circuit_breaker.start_refresh(force_refresh):
            return None
        if not self._tracker.start_refresh():
            self._circuit_breaker.cancel_refresh()
            return None

        generation = self._tracker.generation
        try:
            result = await operation()
        except StaleResultError:
            # Nothing was published, so neither success nor failure is recorded.
            if self._tracker.is_current(generation):
                self._tracker.abandon_refresh(generation)
                self._circuit_breaker.cancel_refresh()
            if not self._tracker.is_refreshing:
                self._stage = RefreshStage.IDLE
            return None
        except BaseException as exc:
            # A timed-out generation was already released by the tracker.
            if self._tracker.is_current(generation):
                self._tracker.end_refresh(exc, generation=generation)
                if isinstance(exc, Exception):
                    self._circuit_breaker.end_refresh(exc)
                else:
                    self._circuit_breaker.cancel_refresh()
            raise

        if self._tracker.is_current(generation):
            self._tracker.end_refresh(None, generation=generation)
            self._circuit_breaker.end_refresh()
        return result

    async def refresh(self, date_range: Optional[DateRange] = None, force_refresh: bool = False) -> Optional[FinancialData]:
        """Refresh the data for ``date_range`` (the current range by default).

        Returns the new :class:`FinancialData`, or ``None`` when the refresh
        was skipped, superseded, or the fetch came back empty.
        """

        if date_range is not None:
            self.update_date_range(date_range)
        target = self._date_range

        generation: Optional[int] = None

        async def operation() -> Optional[FinancialData]:
            nonlocal generation
            generation = self._tracker.generation
            self._stage = RefreshStage.STARTING
            self._notify("Actualizando datos", "Obteniendo datos financieros...")
            return await self._throttle.execute(
                lambda: self._run_sequence(target, force_refresh, generation),
                force_refresh,
            )

        try:
            return await self.with_refresh_protection(operation, force_refresh)
        except Exception as exc:
            if generation is not None and not self._tracker.is_current(generation):
                logger.info("Ignoring failure of a superseded refresh: %s", exc)
                return None
            self._stage = RefreshStage.FAILED
            if isinstance(exc, EmptyFetchError):
                self._notify("Error al obtener datos", str(exc), DESTRUCTIVE)
                return None
            if isinstance(exc, FetchFailedError):
                logger.error("Error refreshing financial data: %s", exc)
            else:
                logger.exception("Error refreshing financial data")
            self._notify("Error al obtener datos", str(exc) or "Error desconocido al obtener datos", DESTRUCTIVE)
            raise

    async def force_manual_refresh(self, date_range: Optional[DateRange] = None) -> Optional[FinancialData]:
        logger.info("Manual refresh requested, resetting circuit breaker")
        self._circuit_breaker.reset()
        return await self.refresh(date_range, force_refresh=True)

    async def clear_cache_and_refresh(self, date_range: Optional[DateRange] = None) -> Optional[FinancialData]:
        """Clear the cached transactions, then run a forced refresh.

        If the cache cannot be cleared the main fetch is never called and
        :class:`CacheClearError` is raised.
        """

        if date_range is not None:
            self.update_date_range(date_range)
        target = self._date_range
        if self._tracker.is_refreshing:
            logger.info("Refresh already in progress, not clearing cache")
            return None

        self._notify("Limpiando caché", "Eliminando datos en caché y obteniendo datos frescos...")
        try:
            cleared = await self._clear_cache(target)
        except Exception as exc:
            logger.exception("Error clearing cache")
            message = str(exc) or "Error desconocido al limpiar caché"
            self._notify("Error", message, DESTRUCTIVE)
            raise CacheClearError(message) from exc

        if not cleared:
            logger.error("Failed to clear cache for %s", target.month_year)
            self._notify("Error", "No se pudo limpiar el caché", DESTRUCTIVE)
            raise CacheClearError("No se pudo limpiar el caché")

        return await self.refresh(target, force_refresh=True)

    def reset_refresh_state(self) -> None:
        was_refreshing = self._tracker.is_refreshing
        self._tracker.reset_refresh_state()
        if was_refreshing:
            self._circuit_breaker.cancel_refresh()
        self._stage = RefreshStage.IDLE

    def emergency_recovery(self) -> bool:
        self._tracker.emergency_recovery()
        self._circuit_breaker.reset()
        self._stage = RefreshStage.IDLE
        return True

    def close(self) -> None:
        self._throttle.cancel()
        self._tracker.close()

    # ------------------------------------------------------------------
    # Sequence
    # ------------------------------------------------------------------
    async def _run_sequence(self, date_range: DateRange, force_refresh: bool, generation: int) -> FinancialData:
        self._stage = RefreshStage.FETCHING_STRIPE
        stripe_income = await self._collect(
            self._load_stripe_income(date_range, date_range.contains), date_range, generation
        )
        starting_balance = await self._collect(self._load_starting_balance(date_range), date_range, generation)
        self._ensure_current(date_range, generation)

        self._stripe_income = stripe_income
        self._stripe_override = stripe_income.override if stripe_income.is_overridden else None
        self._starting_balance = starting_balance

        self._stage = RefreshStage.FETCHING_SUMMARY
        fetched = await self._collect(
            self._fetch_financial_data(date_range, stripe_income, starting_balance, force_refresh),
            date_range,
            generation,
        )
        self._ensure_current(date_range, generation)
        if not fetched:
            raise EmptyFetchError(
                f"No se obtuvieron datos financieros para {date_range.start_date.isoformat()}"
                f" - {date_range.end_date.isoformat()}"
            )

        data = summarize_transactions(
            fetched.transactions,
            starting_balance=starting_balance or 0.0,
            collaborator_expenses=fetched.collaborator_expenses,
        )
        self._financial_data = data
        self._data_initialized = True
        self._stage = RefreshStage.SUCCEEDED
        if self._on_success is not None:
            self._on_success(date_range, data)

        summary = data.summary
        self._notify(
            "Datos financieros actualizados",
            f"Ingresos: ${summary.total_income:.2f}, Gastos: ${summary.total_expense:.2f}",
        )
        return data

    async def _collect(self, call: Awaitable[T], date_range: DateRange, generation: int) -> T:
        """Await one collaborator call, reporting anything it raises as a failed fetch."""

        try:
            return await call
        except Exception as exc:
            self._ensure_current(date_range, generation)
            if isinstance(exc, RefreshError):
                raise
            raise FetchFailedError(str(exc) or exc.__class__.__name__) from exc

    def _is_current(self, date_range: DateRange, generation: int) -> bool:
        return self._tracker.is_current(generation) and date_range == self._date_range

    def _ensure_current(self, date_range: DateRange, generation: int) -> None:
        if not self._is_current(date_range, generation):
            logger.info("Discarding stale refresh result for %s", date_range.month_year)
            raise StaleResultError(f"Refresh for {date_range.month_year} was superseded")

    def _notify(self, title: str, description: str, variant: str = DEFAULT) -> None:
        if self._notifier is not None:
            self._notifier.notify(title, description, variant)


__all__ = ["RefreshOrchestrator", "RefreshStage"]
