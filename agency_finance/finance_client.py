"""Client for the finance edge functions that proxy Zoho Books and Stripe."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import requests

from .aggregator import validate_financial_value
from .config import AppConfig
from .database import SQLiteRepository
from .models import CategorySummary, DateRange, FetchedFinancialData, StripeIncomeData, Transaction

logger = logging.getLogger(__name__)


class FinanceDataClient:
    """Fetch period transactions from the ``zoho-transactions`` edge function."""

    def __init__(self, config: AppConfig, repository: SQLiteRepository, session: Optional[requests.Session] = None) -> None:
        self._config = config
        self._repository = repository
        self._session = session or requests.Session()

    # ------------------------------------------------------------------
    # Main financial data fetch
    # ------------------------------------------------------------------
    async def fetch_financial_data(
        self,
        date_range: DateRange,
        stripe_income: StripeIncomeData,
        starting_balance: Optional[float] = None,
        force_refresh: bool = False,
    ) -> Optional[FetchedFinancialData]:
        """Return the period's transactions, or ``None`` when nothing usable came back.

        The blocking HTTP call runs in a worker thread so the event loop stays
        free for other requests.  HTTP errors propagate to the caller.
        """

        return await asyncio.to_thread(
            self._fetch_sync, date_range, stripe_income, starting_balance, force_refresh
        )

    def _fetch_sync(
        self,
        date_range: DateRange,
        stripe_income: StripeIncomeData,
        starting_balance: Optional[float],
        force_refresh: bool,
    ) -> Optional[FetchedFinancialData]:
        if not self._config.zoho_transactions_url:
            logger.warning("ZOHO_TRANSACTIONS_URL is not configured; skipping fetch")
            return None

        body = {
            **date_range.as_params(),
            "startingBalance": starting_balance,
            "forceRefresh": force_refresh,
        }
        if stripe_income.is_overridden:
            body["stripeOverride"] = stripe_income.override

        headers = {"Content-Type": "application/json"}
        if self._config.supabase_anon_key:
            headers["Authorization"] = f"Bearer {self._config.supabase_anon_key}"
            headers["apikey"] = self._config.supabase_anon_key

        logger.info(
            "Fetching financial data %s..%s (force=%s)",
            date_range.start_date.isoformat(),
            date_range.end_date.isoformat(),
            force_refresh,
        )
        response = self._session.post(
            self._config.zoho_transactions_url,
            json=body,
            headers=headers,
            timeout=self._config.http_timeout_seconds,
        )
        response.raise_for_status()
        payload = response.json()

        result = parse_financial_payload(payload)
        if result is None:
            logger.warning("Finance edge function returned no transactions list")
            return None

        stored = self._repository.replace_cached_transactions(date_range, result.transactions)
        logger.info("Cached %d transactions for %s", stored, date_range.month_year)
        return result

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------
    async def clear_cache(self, date_range: DateRange) -> bool:
        deleted = await asyncio.to_thread(self._repository.delete_cached_transactions, date_range)
        logger.info("Cleared %d cached transactions for %s", deleted, date_range.month_year)
        return True


def parse_financial_payload(payload: object) -> Optional[FetchedFinancialData]:
    """Normalise the different shapes the edge function has returned over time.

    Accepted shapes are ``{"cached_transactions": [...]}``, ``{"data": [...]}``
    and a bare list.  Collaborator expenses are read from ``colaboradores``.
    """

    raw: dict[str, object] = {}
    rows = None
    if isinstance(payload, list):
        rows = payload
    elif isinstance(payload, dict):
        raw = payload
        if isinstance(payload.get("cached_transactions"), list):
            rows = payload["cached_transactions"]
        elif isinstance(payload.get("data"), list):
            rows = payload["data"]
    if rows is None:
        return None

    transactions = [Transaction.from_row(row) for row in rows if isinstance(row, dict)]
    collaborators = [
        CategorySummary(
            category=str(item.get("category") or item.get("vendor_name") or item.get("name") or ""),
            amount=validate_financial_value(item.get("amount") or item.get("total")),
            percentage=validate_financial_value(item.get("percentage")),
        )
        for item in raw.get("colaboradores") or []
        if isinstance(item, dict)
    ]
    return FetchedFinancialData(transactions=transactions, collaborator_expenses=collaborators, raw_response=raw)


__all__ = ["FinanceDataClient", "parse_financial_payload"]
