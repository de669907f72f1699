import sqlite3
import threading
from datetime import date

import pytest

from agency_finance.models import EXPENSE, INCOME, STRIPE, ZOHO, DateRange, StripeIncomeData, Transaction
from agency_finance.stripe_income import StripeIncomeService

MAY = DateRange(date(2024, 5, 1), date(2024, 5, 31))


def make_tx(tx_id, tx_date, amount, source=STRIPE, type_=INCOME):
    return Transaction(id=tx_id, date=tx_date, amount=amount, source=source, type=type_)


@pytest.mark.asyncio
async def test_override_wins_over_cached_transactions(repository):
    repository.save_monthly_balance("2024-05", stripe_override=750.0)
    repository.replace_cached_transactions(MAY, [make_tx("s1", "2024-05-02", 100.0)])

    data = await StripeIncomeService(repository).load_stripe_income_data(MAY)

    assert data == StripeIncomeData(amount=750.0, is_overridden=True, override=750.0)


@pytest.mark.asyncio
async def test_sums_stripe_income_inside_range(repository):
    repository.replace_cached_transactions(
        MAY,
        [
            make_tx("s1", "2024-05-02", 100.0),
            make_tx("s2", "2024-05-31", 50.0),
            make_tx("z1", "2024-05-03", 999.0, source=ZOHO),
            make_tx("s3", "2024-05-04", 7.0, type_=EXPENSE),
        ],
    )
    repository.replace_cached_transactions(
        DateRange(date(2024, 6, 1), date(2024, 6, 30)), [make_tx("s4", "2024-06-01", 80.0)]
    )

    data = await StripeIncomeService(repository).load_stripe_income_data(MAY, MAY.contains)

    assert data.amount == 150.0
    assert not data.is_overridden
    assert data.override is None


@pytest.mark.asyncio
async def test_no_data_means_zero_income(repository):
    data = await StripeIncomeService(repository).load_stripe_income_data(MAY)

    assert data == StripeIncomeData()


@pytest.mark.asyncio
async def test_storage_error_is_reported_as_zero():
    class BrokenRepository:
        def get_monthly_balance(self, month_year):
            raise sqlite3.OperationalError("database is locked")

    data = await StripeIncomeService(BrokenRepository()).load_stripe_income_data(MAY)

    assert data == StripeIncomeData()


@pytest.mark.asyncio
async def test_storage_reads_run_in_a_worker_thread(repository):
    threads = []
    original = repository.list_cached_transactions

    def recording(*args, **kwargs):
        threads.append(threading.get_ident())
        return original(*args, **kwargs)

    repository.list_cached_transactions = recording

    await StripeIncomeService(repository).load_stripe_income_data(MAY)

    assert threads and threading.get_ident() not in threads
