"""SQLite persistence layer for the agency_finance backend.

The repository provides a small, well-typed API that hides SQL details from the
rest of the code.  It stores the three things the refresh pipeline needs to
remember between runs: the manually entered monthly balances, the transactions
cached from the finance edge function, and summary snapshots.
"""
from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from .models import DateRange, FinancialSummary, MonthlyBalance, Transaction

_MONTHLY_BALANCE_FIELDS = (
    "balance",
    "opex_amount",
    "tax_reserve_percentage",
    "profit_percentage",
    "itbm_amount",
    "include_zoho_fifty_percent",
    "stripe_override",
    "notes",
)


class SQLiteRepository:
    """Encapsulates all SQLite access for the application."""

    def __init__(self, database_path: Path | str) -> None:
        self._database_path = database_path
        self._connection = sqlite3.connect(database_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.Lock()

    def close(self) -> None:
        """Close the underlying SQLite connection."""

        self._connection.close()

    # ------------------------------------------------------------------
    # Schema management
    # ------------------------------------------------------------------
    def initialise_schema(self) -> None:
        """Create all tables required by the application if they do not exist."""

        with self._lock:
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS monthly_balances (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    month_year TEXT NOT NULL,
                    balance REAL NOT NULL DEFAULT 0,
                    opex_amount REAL,
                    tax_reserve_percentage REAL,
                    profit_percentage REAL,
                    itbm_amount REAL,
                    include_zoho_fifty_percent INTEGER,
                    stripe_override REAL,
                    notes TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS cached_transactions (
                    id TEXT PRIMARY KEY,
                    date TEXT NOT NULL,
                    amount REAL NOT NULL,
                    description TEXT,
                    category TEXT,
                    source TEXT NOT NULL,
                    type TEXT NOT NULL,
                    fetched_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS financial_snapshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    start_date TEXT NOT NULL,
                    end_date TEXT NOT NULL,
                    summary TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                """
            )
            self._connection.commit()

    # ------------------------------------------------------------------
    # Monthly balances
    # ------------------------------------------------------------------
    def get_monthly_balance(self, month_year: str) -> Optional[MonthlyBalance]:
        with self._lock:
            row = self._select_monthly_balance(month_year)
        if row is None:
            return None
        return _row_to_monthly_balance(row)

    def save_monthly_balance(self, month_year: str, **values: object) -> MonthlyBalance:
        """Create the month's row on first save and update it in place afterwards.

        Only the keyword arguments supplied are written on update, so saving a
        new balance keeps a previously stored Stripe override or notes.  There
        is no unique constraint on ``month_year``; uniqueness comes from the
        select-before-insert done here under the repository lock.
        """

        unknown = set(values) - set(_MONTHLY_BALANCE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown monthly balance fields: {', '.join(sorted(unknown))}")

        now = datetime.utcnow().isoformat(timespec="seconds")
        with self._lock:
            existing = self._select_monthly_balance(month_year)
            if existing is not None:
                if values:
                    assignments = ", ".join(f"{name} = :{name}" for name in values)
                    self._connection.execute(
                        f"UPDATE monthly_balances SET {assignments}, updated_at = :updated_at WHERE id = :id",
                        {**values, "updated_at": now, "id": existing["id"]},
                    )
            else:
                payload = {name: values.get(name) for name in _MONTHLY_BALANCE_FIELDS}
                if payload["balance"] is None:
                    payload["balance"] = 0.0
                self._connection.execute(
                    """
                    INSERT INTO monthly_balances (
                        month_year, balance, opex_amount, tax_reserve_percentage,
                        profit_percentage, itbm_amount, include_zoho_fifty_percent,
                        stripe_override, notes, created_at, updated_at
                    ) VALUES (
                        :month_year, :balance, :opex_amount, :tax_reserve_percentage,
                        :profit_percentage, :itbm_amount, :include_zoho_fifty_percent,
                        :stripe_override, :notes, :created_at, :updated_at
                    )
                    """,
                    {**payload, "month_year": month_year, "created_at": now, "updated_at": now},
                )
            self._connection.commit()
            row = self._select_monthly_balance(month_year)
        return _row_to_monthly_balance(row)

    def _select_monthly_balance(self, month_year: str) -> Optional[sqlite3.Row]:
        return self._connection.execute(
            "SELECT * FROM monthly_balances WHERE month_year = ? ORDER BY id LIMIT 1",
            (month_year,),
        ).fetchone()

    # ------------------------------------------------------------------
    # Cached transactions
    # ------------------------------------------------------------------
    def replace_cached_transactions(self, date_range: DateRange, transactions: Iterable[Transaction]) -> int:
        """Swap the cached transactions of ``date_range`` for ``transactions``.

        The cache for a period is replaced wholesale, never patched.  Returns
        the number of rows written.
        """

        fetched_at = datetime.utcnow().isoformat(timespec="seconds")
        rows = [
            {
                "id": tx.id,
                "date": tx.date,
                "amount": tx.amount,
                "description": tx.description,
                "category": tx.category,
                "source": tx.source,
                "type": tx.type,
                "fetched_at": fetched_at,
            }
            for tx in transactions
        ]
        with self._lock:
            self._delete_range(date_range)
            self._connection.executemany(
                """
                INSERT OR REPLACE INTO cached_transactions (
                    id, date, amount, description, category, source, type, fetched_at
                ) VALUES (
                    :id, :date, :amount, :description, :category, :source, :type, :fetched_at
                )
                """,
                rows,
            )
            self._connection.commit()
        return len(rows)

    def list_cached_transactions(
        self,
        source: Optional[str] = None,
        type_: Optional[str] = None,
        date_range: Optional[DateRange] = None,
    ) -> list[Transaction]:
        clauses: list[str] = []
        params: list[object] = []
        if source is not None:
            clauses.append("source = ?")
            params.append(source)
        if type_ is not None:
            clauses.append("type = ?")
            params.append(type_)
        if date_range is not None:
            clauses.append("date(date) BETWEEN ? AND ?")
            params.extend([date_range.start_date.isoformat(), date_range.end_date.isoformat()])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._lock:
            rows = self._connection.execute(
                f"SELECT * FROM cached_transactions {where} ORDER BY date, id",
                params,
            ).fetchall()
        return [Transaction.from_row(dict(row)) for row in rows]

    def delete_cached_transactions(self, date_range: Optional[DateRange] = None) -> int:
        with self._lock:
            if date_range is None:
                deleted = self._connection.execute("DELETE FROM cached_transactions").rowcount
            else:
                deleted = self._delete_range(date_range)
            self._connection.commit()
        return deleted

    def _delete_range(self, date_range: DateRange) -> int:
        return self._connection.execute(
            "DELETE FROM cached_transactions WHERE date(date) BETWEEN ? AND ?",
            (date_range.start_date.isoformat(), date_range.end_date.isoformat()),
        ).rowcount

    # ------------------------------------------------------------------
    # Summary snapshots
    # ------------------------------------------------------------------
    def save_summary_snapshot(self, date_range: DateRange, summary: FinancialSummary) -> None:
        with self._lock:
            self._connection.execute(
                """
                INSERT INTO financial_snapshots (start_date, end_date, summary, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    date_range.start_date.isoformat(),
                    date_range.end_date.isoformat(),
                    json.dumps(asdict(summary)),
                    datetime.utcnow().isoformat(timespec="seconds"),
                ),
            )
            self._connection.commit()

    def latest_summary_snapshot(self, date_range: DateRange) -> Optional[FinancialSummary]:
        with self._lock:
            row = self._connection.execute(
                """
                SELECT summary FROM financial_snapshots
                WHERE start_date = ? AND end_date = ?
                ORDER BY id DESC
                LIMIT 1
                """,
                (date_range.start_date.isoformat(), date_range.end_date.isoformat()),
            ).fetchone()
        if row is None:
            return None
        return FinancialSummary(**json.loads(row["summary"]))


def _row_to_monthly_balance(row: sqlite3.Row) -> MonthlyBalance:
    include_fifty = row["include_zoho_fifty_percent"]
    return MonthlyBalance(
        month_year=row["month_year"],
        balance=float(row["balance"]),
        opex_amount=row["opex_amount"],
        tax_reserve_percentage=row["tax_reserve_percentage"],
        profit_percentage=row["profit_percentage"],
        itbm_amount=row["itbm_amount"],
        include_zoho_fifty_percent=None if include_fifty is None else bool(include_fifty),
        stripe_override=row["stripe_override"],
        notes=row["notes"],
        created_at=_parse_timestamp(row["created_at"]),
        updated_at=_parse_timestamp(row["updated_at"]),
    )


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)
