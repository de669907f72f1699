"""Turn a period's transactions into the dashboard summary.

Everything here is pure: the same input always yields the same
:class:`~agency_finance.models.FinancialData`, including the order of the
category and source breakdowns.
"""
from __future__ import annotations

import logging
import math
from typing import Callable, Iterable, Sequence

import pandas as pd

from .models import CategorySummary, FinancialData, FinancialSummary, PeriodTotals, Transaction

logger = logging.getLogger(__name__)

UNCATEGORISED = "Sin categoría"
UNKNOWN_SOURCE = "Sin fuente"


def validate_financial_value(value: object) -> float:
    """Coerce any incoming numeric value to a finite float.

    ``None``, NaN, infinities and unparsable strings become ``0.0``.  Strings
    in European format (``1.234,56``) and with a decimal comma (``1234,56``)
    are understood because the edge functions forward them unchanged.
    """

    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else 0.0

    text = str(value).strip()
    if "," in text and "." in text:
        text = text.replace(".", "").replace(",", ".")
    elif "," in text:
        text = text.replace(",", ".")
    try:
        number = float(text)
    except ValueError:
        return 0.0
    return number if math.isfinite(number) else 0.0


def _group(transactions: Sequence[Transaction], key: str, fallback: str) -> list[CategorySummary]:
    if not transactions:
        return []

    frame = pd.DataFrame(
        {
            "group": [getattr(tx, key) or fallback for tx in transactions],
            "amount": [tx.amount for tx in transactions],
        }
    )
    # sort=False keeps first-seen order, the stable sort keeps it for ties.
    grouped = frame.groupby("group", sort=False)["amount"].agg(["sum", "count"])
    grouped = grouped.sort_values("sum", ascending=False, kind="stable")
    total = float(grouped["sum"].sum())

    return [
        CategorySummary(
            category=str(name),
            amount=float(row["sum"]),
            percentage=float(row["sum"]) / total * 100 if total > 0 else 0.0,
            count=int(row["count"]),
        )
        for name, row in grouped.iterrows()
    ]


def group_by_category(transactions: Iterable[Transaction]) -> list[CategorySummary]:
    """Expense breakdown by category, largest first."""

    return _group([tx for tx in transactions if tx.is_expense], "category", UNCATEGORISED)


def group_by_source(transactions: Iterable[Transaction]) -> list[CategorySummary]:
    """Income breakdown by source (Zoho or Stripe), largest first."""

    return _group([tx for tx in transactions if tx.is_income], "source", UNKNOWN_SOURCE)


def _totals_by_period(
    transactions: Sequence[Transaction],
    period_of: Callable[[Transaction], str],
    label_of: Callable[[str], str],
) -> list[PeriodTotals]:
    if not transactions:
        return []

    frame = pd.DataFrame(
        {
            "period": [period_of(tx) for tx in transactions],
            "income": [tx.amount if tx.is_income else 0.0 for tx in transactions],
            "expense": [0.0 if tx.is_income else tx.amount for tx in transactions],
        }
    )
    grouped = frame.groupby("period", sort=True)[["income", "expense"]].sum()
    return [
        PeriodTotals(
            period=str(period),
            label=label_of(str(period)),
            income=float(row["income"]),
            expense=float(row["expense"]),
            profit=float(row["income"] - row["expense"]),
        )
        for period, row in grouped.iterrows()
    ]


def _month_label(month: str) -> str:
    year, _, number = month.partition("-")
    return f"{number}/{year[2:]}" if number else month


def totals_by_day(transactions: Iterable[Transaction]) -> list[PeriodTotals]:
    """Income and expense per transaction date, oldest first."""

    return _totals_by_period(list(transactions), lambda tx: tx.date[:10], lambda day: day)


def totals_by_month(transactions: Iterable[Transaction]) -> list[PeriodTotals]:
    """Income, expense and profit per ``yyyy-MM``, labelled ``MM/yy``."""

    return _totals_by_period(list(transactions), lambda tx: tx.date[:7], _month_label)


def summarize_transactions(
    transactions: Iterable[Transaction],
    starting_balance: float = 0.0,
    collaborator_expenses: Iterable[CategorySummary] = (),
) -> FinancialData:
    """Compute totals, margins and breakdowns for a list of transactions.

    ``collaborator_expenses`` is the breakdown already computed by the finance
    edge function; it is summed as given and never re-derived from
    ``transactions``.
    """

    transactions = list(transactions)
    income = [tx for tx in transactions if tx.is_income]
    expenses = [tx for tx in transactions if tx.is_expense]

    total_income = sum(tx.amount for tx in income)
    total_expense = sum(tx.amount for tx in expenses)
    collaborator_expense = sum(item.amount for item in collaborator_expenses)
    other_expense = total_expense - collaborator_expense
    if other_expense < 0:
        logger.warning(
            "Collaborator expenses (%.2f) exceed total expenses (%.2f); other expenses are negative",
            collaborator_expense,
            total_expense,
        )

    profit = starting_balance + total_income - total_expense
    summary = FinancialSummary(
        total_income=total_income,
        total_expense=total_expense,
        collaborator_expense=collaborator_expense,
        other_expense=other_expense,
        profit=profit,
        profit_margin=profit / total_income * 100 if total_income > 0 else 0.0,
        starting_balance=starting_balance,
        net_profit=total_income - total_expense,
        transaction_count=len(transactions),
        income_count=len(income),
        expense_count=len(expenses),
        avg_transaction_size=(
            sum(tx.amount for tx in transactions) / len(transactions) if transactions else 0.0
        ),
    )

    return FinancialData(
        summary=summary,
        transactions=transactions,
        income_by_source=group_by_source(income),
        expense_by_category=group_by_category(expenses),
        daily_data=totals_by_day(transactions),
        monthly_data=totals_by_month(transactions),
    )


__all__ = [
    "validate_financial_value",
    "group_by_category",
    "group_by_source",
    "totals_by_day",
    "totals_by_month",
    "summarize_transactions",
    "UNCATEGORISED",
    "UNKNOWN_SOURCE",
]
