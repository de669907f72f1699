"""Stripe income for a period: manual override first, cached transactions second."""
from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Callable, Optional

from .database import SQLiteRepository
from .models import INCOME, STRIPE, DateRange, StripeIncomeData

logger = logging.getLogger(__name__)


class StripeIncomeService:
    """Resolve the Stripe income figure shown on the dashboard."""

    def __init__(self, repository: SQLiteRepository) -> None:
        self._repository = repository

    async def load_stripe_income_data(
        self,
        date_range: DateRange,
        is_date_in_range: Optional[Callable[[str], bool]] = None,
    ) -> StripeIncomeData:
        """Return the override stored for the month, or the cached Stripe total.

        Storage failures are logged and reported as zero income so a broken
        cache never blocks the main refresh.  The SQLite reads run in a worker
        thread.
        """

        return await asyncio.to_thread(self._load_sync, date_range, is_date_in_range or date_range.contains)

    def _load_sync(self, date_range: DateRange, in_range: Callable[[str], bool]) -> StripeIncomeData:
        try:
            balance = self._repository.get_monthly_balance(date_range.month_year)
            if balance is not None and balance.stripe_override is not None:
                override = float(balance.stripe_override)
                logger.info("Using Stripe override value %.2f for %s", override, date_range.month_year)
                return StripeIncomeData(amount=override, is_overridden=True, override=override)

            transactions = self._repository.list_cached_transactions(source=STRIPE, type_=INCOME)
        except sqlite3.Error:
            logger.exception("Error loading Stripe income for %s", date_range.month_year)
            return StripeIncomeData()

        total = sum(tx.amount for tx in transactions if in_range(tx.date))
        logger.info("Calculated Stripe income from cached transactions: %.2f", total)
        return StripeIncomeData(amount=total)


__all__ = ["StripeIncomeService"]
