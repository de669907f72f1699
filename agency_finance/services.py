"""High-level application services orchestrating the agency_finance backend."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Optional

from .circuit_breaker import CircuitBreaker
from .config import AppConfig
from .database import SQLiteRepository
from .finance_client import FinanceDataClient
from .models import DateRange, FinancialData, MonthlyBalance
from .notifications import NotificationCenter
from .orchestrator import RefreshOrchestrator
from .refresh_status import RefreshStatusTracker
from .stripe_income import StripeIncomeService
from .throttle import ThrottleGate

logger = logging.getLogger(__name__)


class FinanceDashboardService:
    """Coordinates refreshes, persistence and the data served to the dashboard."""

    def __init__(
        self,
        config: AppConfig,
        repository: SQLiteRepository,
        client: FinanceDataClient,
        circuit_breaker: CircuitBreaker,
        notifications: Optional[NotificationCenter] = None,
    ) -> None:
        self._config = config
        self._repository = repository
        self._client = client
        self._circuit_breaker = circuit_breaker
        self.notifications = notifications or NotificationCenter()
        self._stripe_income = StripeIncomeService(repository)

        tracker = RefreshStatusTracker(
            timeout_seconds=config.refresh_timeout_seconds,
            notifier=self.notifications,
            on_timeout=self._on_refresh_timeout,
        )
        self.orchestrator = RefreshOrchestrator(
            circuit_breaker=circuit_breaker,
            tracker=tracker,
            throttle=ThrottleGate(config.throttle_window_ms),
            load_stripe_income=self._stripe_income.load_stripe_income_data,
            load_starting_balance=self.load_starting_balance,
            fetch_financial_data=client.fetch_financial_data,
            clear_cache=client.clear_cache,
            notifier=self.notifications,
            on_success=self._save_snapshot,
        )

    def close(self) -> None:
        self.orchestrator.close()

    # ------------------------------------------------------------------
    # Refresh entry points
    # ------------------------------------------------------------------
    async def refresh(self, date_range: Optional[DateRange] = None) -> Optional[FinancialData]:
        """Actualizar button: rate limited."""

        return await self.orchestrator.refresh(date_range)

    async def force_refresh(self, date_range: Optional[DateRange] = None) -> Optional[FinancialData]:
        """Forzar actualización button: bypasses the rate limits."""

        return await self.orchestrator.force_manual_refresh(date_range)

    async def clear_cache_and_refresh(self, date_range: Optional[DateRange] = None) -> Optional[FinancialData]:
        """Limpiar caché button: clears the cached transactions, then forces a refresh."""

        return await self.orchestrator.clear_cache_and_refresh(date_range)

    def reset_refresh_state(self) -> dict[str, object]:
        self.orchestrator.reset_refresh_state()
        return self.orchestrator.status()

    def emergency_recovery(self) -> dict[str, object]:
        self.orchestrator.emergency_recovery()
        return self.orchestrator.status()

    def refresh_status(self) -> dict[str, object]:
        return self.orchestrator.status()

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------
    def current_financial_data(self) -> dict[str, object]:
        orchestrator = self.orchestrator
        date_range = orchestrator.date_range
        payload: dict[str, object] = {
            "date_range": {
                "start_date": date_range.start_date.isoformat(),
                "end_date": date_range.end_date.isoformat(),
            },
            "data_initialized": orchestrator.data_initialized,
            "stripe_income": asdict(orchestrator.stripe_income),
            "stripe_override": orchestrator.stripe_override,
            "starting_balance": orchestrator.starting_balance,
        }
        data = orchestrator.financial_data
        if data is not None:
            payload.update(financial_data_to_dict(data))
        else:
            snapshot = self._repository.latest_summary_snapshot(date_range)
            payload["summary"] = asdict(snapshot) if snapshot is not None else None
            payload["from_snapshot"] = snapshot is not None
        return payload

    async def load_starting_balance(self, date_range: DateRange) -> Optional[float]:
        balance = await asyncio.to_thread(self._repository.get_monthly_balance, date_range.month_year)
        if balance is None:
            logger.info("No starting balance stored for %s", date_range.month_year)
            return None
        return balance.balance

    # ------------------------------------------------------------------
    # Monthly balances
    # ------------------------------------------------------------------
    def get_monthly_balance(self, month_year: str) -> Optional[MonthlyBalance]:
        return self._repository.get_monthly_balance(month_year)

    def save_monthly_balance(self, month_year: str, **values: object) -> MonthlyBalance:
        balance = self._repository.save_monthly_balance(month_year, **values)
        logger.info("Saved monthly balance for %s", month_year)
        return balance

    def _on_refresh_timeout(self) -> None:
        self._circuit_breaker.end_refresh(TimeoutError("Refresh timed out"))

    def _save_snapshot(self, date_range: DateRange, data: FinancialData) -> None:
        self._repository.save_summary_snapshot(date_range, data.summary)


def financial_data_to_dict(data: FinancialData) -> dict[str, object]:
    return {
        "summary": asdict(data.summary),
        "transactions": [asdict(tx) for tx in data.transactions],
        "income_by_source": [asdict(item) for item in data.income_by_source],
        "expense_by_category": [asdict(item) for item in data.expense_by_category],
        "daily_data": [asdict(item) for item in data.daily_data],
        "monthly_data": [asdict(item) for item in data.monthly_data],
    }


__all__ = ["FinanceDashboardService", "financial_data_to_dict"]
