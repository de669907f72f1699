"""Domain models used by the agency_finance backend.

The classes defined here are intentionally lightweight data containers that do
not know anything about persistence or transport concerns.  Keeping the domain
model pure makes the refresh coordination and the aggregation logic easy to
test without a database or a network connection.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Mapping, Optional

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta


INCOME = "income"
EXPENSE = "expense"
ZOHO = "Zoho"
STRIPE = "Stripe"


@dataclass(frozen=True, slots=True)
class DateRange:
    """Inclusive period the dashboard is looking at.

    A range is always replaced as a whole.  Both bounds are plain dates; the
    month of :attr:`start_date` identifies the persisted monthly balance.
    """

    start_date: date
    end_date: date

    def __post_init__(self) -> None:
        if self.start_date > self.end_date:
            raise ValueError(
                f"start_date {self.start_date.isoformat()} is after end_date {self.end_date.isoformat()}"
            )

    @classmethod
    def default(cls, today: Optional[date] = None) -> "DateRange":
        """Return the range from the previous month's start to the current month's end."""

        today = today or date.today()
        current_month_start = today.replace(day=1)
        start = current_month_start - relativedelta(months=1)
        end = current_month_start + relativedelta(months=1, days=-1)
        return cls(start, end)

    @classmethod
    def current_month(cls, today: Optional[date] = None) -> "DateRange":
        today = today or date.today()
        start = today.replace(day=1)
        return cls(start, start + relativedelta(months=1, days=-1))

    @property
    def month_year(self) -> str:
        return self.start_date.strftime("%Y-%m")

    def contains(self, value: date | datetime | str) -> bool:
        """Return ``True`` when ``value`` falls inside the range (bounds included).

        Strings are parsed with :mod:`dateutil`, so both ``2024-05-03`` and full
        ISO timestamps are accepted.  Unparsable values are never in range.
        """

        if isinstance(value, str):
            try:
                value = date_parser.isoparse(value)
            except ValueError:
                return False
        if isinstance(value, datetime):
            value = value.date()
        return self.start_date <= value <= self.end_date

    def as_params(self) -> dict[str, str]:
        return {
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class Transaction:
    """A single Zoho or Stripe movement.

    ``amount`` is always a positive magnitude; the direction lives in
    :attr:`type`.
    """

    id: str
    date: str
    amount: float
    description: str = ""
    category: Optional[str] = None
    source: str = ZOHO
    type: str = EXPENSE

    @property
    def is_income(self) -> bool:
        return self.type == INCOME

    @property
    def is_expense(self) -> bool:
        return self.type == EXPENSE

    @classmethod
    def from_row(cls, row: Mapping[str, object]) -> "Transaction":
        """Normalise a row coming from the edge function or the local cache."""

        from .aggregator import validate_financial_value

        return cls(
            id=str(row.get("id") or row.get("external_id") or ""),
            date=str(row.get("date") or ""),
            amount=abs(validate_financial_value(row.get("amount"))),
            description=str(row.get("description") or ""),
            category=row.get("category") or None,
            source=STRIPE if row.get("source") == STRIPE else ZOHO,
            type=INCOME if row.get("type") == INCOME else EXPENSE,
        )


@dataclass(slots=True)
class CategorySummary:
    category: str
    amount: float = 0.0
    percentage: float = 0.0
    count: int = 0


@dataclass(slots=True)
class PeriodTotals:
    """Income and expense booked on one day or in one month.

    ``period`` is the sort key (``yyyy-MM-dd`` or ``yyyy-MM``) and ``label``
    the text shown on the chart axis.
    """

    period: str
    label: str
    income: float = 0.0
    expense: float = 0.0
    profit: float = 0.0


@dataclass(slots=True)
class FinancialSummary:
    """Totals derived from one period's transactions.

    ``other_expense`` is always ``total_expense - collaborator_expense`` and
    ``profit`` is always ``starting_balance + total_income - total_expense``.
    """

    total_income: float = 0.0
    total_expense: float = 0.0
    collaborator_expense: float = 0.0
    other_expense: float = 0.0
    profit: float = 0.0
    profit_margin: float = 0.0
    starting_balance: float = 0.0
    net_profit: float = 0.0
    transaction_count: int = 0
    income_count: int = 0
    expense_count: int = 0
    avg_transaction_size: float = 0.0


@dataclass(slots=True)
class FinancialData:
    summary: FinancialSummary
    transactions: list[Transaction] = field(default_factory=list)
    income_by_source: list[CategorySummary] = field(default_factory=list)
    expense_by_category: list[CategorySummary] = field(default_factory=list)
    daily_data: list[PeriodTotals] = field(default_factory=list)
    monthly_data: list[PeriodTotals] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class StripeIncomeData:
    amount: float = 0.0
    is_overridden: bool = False
    override: Optional[float] = None


@dataclass(frozen=True, slots=True)
class FetchedFinancialData:
    """Payload returned by a successful main financial-data fetch."""

    transactions: list[Transaction]
    collaborator_expenses: list[CategorySummary] = field(default_factory=list)
    raw_response: dict[str, object] = field(default_factory=dict)


@dataclass(slots=True)
class MonthlyBalance:
    """Manually entered parameters for one month, keyed by ``yyyy-MM``."""

    month_year: str
    balance: float = 0.0
    opex_amount: Optional[float] = None
    tax_reserve_percentage: Optional[float] = None
    profit_percentage: Optional[float] = None
    itbm_amount: Optional[float] = None
    include_zoho_fifty_percent: Optional[bool] = None
    stripe_override: Optional[float] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(slots=True)
class CircuitBreakerState:
    """Snapshot of the shared refresh limiter.  Times are epoch milliseconds."""

    is_refreshing: bool = False
    last_refresh_time: float = 0.0
    refresh_count: int = 0
    max_refreshes: int = 3
    min_refresh_interval: float = 10_000.0
    consecutive_error_count: int = 0
    max_consecutive_errors: int = 3
    last_error: Optional[BaseException] = None

    @property
    def is_open(self) -> bool:
        return self.consecutive_error_count >= self.max_consecutive_errors


@dataclass(frozen=True, slots=True)
class RefreshCheck:
    allowed: bool
    reason: Optional[str] = None


__all__ = [
    "INCOME",
    "EXPENSE",
    "ZOHO",
    "STRIPE",
    "DateRange",
    "Transaction",
    "CategorySummary",
    "PeriodTotals",
    "FinancialSummary",
    "FinancialData",
    "StripeIncomeData",
    "FetchedFinancialData",
    "MonthlyBalance",
    "CircuitBreakerState",
    "RefreshCheck",
]
