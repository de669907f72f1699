import asyncio
from datetime import date

import pytest

from agency_finance.circuit_breaker import CircuitBreaker
from agency_finance.errors import CacheClearError, FetchFailedError
from agency_finance.models import (
    EXPENSE,
    INCOME,
    DateRange,
    FetchedFinancialData,
    StripeIncomeData,
    Transaction,
)
from agency_finance.notifications import DESTRUCTIVE
from agency_finance.orchestrator import RefreshOrchestrator, RefreshStage
from agency_finance.refresh_status import RefreshStatusTracker
from agency_finance.throttle import ThrottleGate

MAY = DateRange(date(2024, 5, 1), date(2024, 5, 31))
JUNE = DateRange(date(2024, 6, 1), date(2024, 6, 30))


class FakeBackend:
    """Async stand-ins for the Stripe, balance, fetch and cache collaborators."""

    def __init__(self, stripe=None, balance=None, fetched="default", clear_result=True):
        self.calls = []
        self.stripe = stripe or StripeIncomeData()
        self.balance = balance
        if fetched == "default":
            fetched = FetchedFinancialData(
                transactions=[
                    Transaction(id="i1", date="2024-05-02", amount=100.0, type=INCOME),
                    Transaction(id="e1", date="2024-05-03", amount=40.0, type=EXPENSE, category="Software"),
                ]
            )
        self.fetched = fetched
        self.fetch_error = None
        self.clear_result = clear_result
        self.clear_error = None
        self.release = None
        self.gates = []
        self.fetch_started = asyncio.Event()

    async def load_stripe_income(self, date_range, is_date_in_range):
        self.calls.append("stripe")
        return self.stripe

    async def load_starting_balance(self, date_range):
        self.calls.append("balance")
        return self.balance

    async def fetch(self, date_range, stripe_income, starting_balance, force_refresh):
        self.calls.append(("fetch", date_range, stripe_income, starting_balance, force_refresh))
        self.fetch_started.set()
        gate = self.gates.pop(0) if self.gates else self.release
        if gate is not None:
            await gate.wait()
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.fetched

    async def clear_cache(self, date_range):
        self.calls.append("clear")
        if self.clear_error is not None:
            raise self.clear_error
        return self.clear_result

    @property
    def fetch_calls(self):
        return [call for call in self.calls if isinstance(call, tuple)]


def make_orchestrator(backend, clock, notifier, timeout_seconds=30.0, on_success=None, max_refreshes=3):
    breaker = CircuitBreaker(max_refreshes=max_refreshes, clock=clock)
    tracker = RefreshStatusTracker(
        timeout_seconds=timeout_seconds,
        notifier=notifier,
        on_timeout=breaker.end_refresh,
    )
    orchestrator = RefreshOrchestrator(
        circuit_breaker=breaker,
        tracker=tracker,
        throttle=ThrottleGate(window_ms=1000, clock=clock),
        load_stripe_income=backend.load_stripe_income,
        load_starting_balance=backend.load_starting_balance,
        fetch_financial_data=backend.fetch,
        clear_cache=backend.clear_cache,
        notifier=notifier,
        date_range=MAY,
        on_success=on_success,
    )
    return orchestrator, breaker, tracker


@pytest.mark.asyncio
async def test_refresh_runs_sequence_and_publishes_data(clock, notifier):
    backend = FakeBackend(balance=20.0)
    published = []
    orchestrator, breaker, tracker = make_orchestrator(
        backend, clock, notifier, on_success=lambda dr, data: published.append((dr, data))
    )

    data = await orchestrator.refresh()

    assert backend.calls[:2] == ["stripe", "balance"]
    assert backend.fetch_calls == [("fetch", MAY, StripeIncomeData(), 20.0, False)]
    assert data.summary.profit == 80.0
    assert orchestrator.financial_data is data
    assert orchestrator.data_initialized
    assert orchestrator.starting_balance == 20.0
    assert orchestrator.stage is RefreshStage.SUCCEEDED
    assert published == [(MAY, data)]
    assert not tracker.is_refreshing
    assert not breaker.state().is_refreshing
    assert notifier.titles() == ["Actualizando datos", "Datos financieros actualizados"]


@pytest.mark.asyncio
async def test_stripe_override_is_published_and_forwarded(clock, notifier):
    stripe = StripeIncomeData(amount=500.0, is_overridden=True, override=500.0)
    backend = FakeBackend(stripe=stripe)
    orchestrator, _, _ = make_orchestrator(backend, clock, notifier)

    await orchestrator.refresh()

    assert orchestrator.stripe_override == 500.0
    assert orchestrator.stripe_income == stripe
    assert backend.fetch_calls[0][2] == stripe


@pytest.mark.asyncio
async def test_second_refresh_inside_interval_is_skipped(clock, notifier):
    backend = FakeBackend()
    orchestrator, _, _ = make_orchestrator(backend, clock, notifier)
    await orchestrator.refresh()
    calls_before = list(backend.calls)
    clock.advance(2_000)

    result = await orchestrator.refresh()

    assert result is None
    assert backend.calls == calls_before


@pytest.mark.asyncio
async def test_forced_refresh_skips_interval(clock, notifier):
    backend = FakeBackend()
    orchestrator, _, _ = make_orchestrator(backend, clock, notifier)
    await orchestrator.refresh()

    result = await orchestrator.refresh(force_refresh=True)

    assert result is not None
    assert len(backend.fetch_calls) == 2
    assert backend.fetch_calls[1][4] is True


@pytest.mark.asyncio
async def test_forced_refresh_never_runs_next_to_another(clock, notifier):
    backend = FakeBackend()
    backend.release = asyncio.Event()
    orchestrator, _, _ = make_orchestrator(backend, clock, notifier)

    first = asyncio.create_task(orchestrator.refresh())
    await backend.fetch_started.wait()
    assert orchestrator.is_refreshing

    second = await orchestrator.refresh(force_refresh=True)
    backend.release.set()
    result = await first

    assert second is None
    assert result is not None
    assert len(backend.fetch_calls) == 1


@pytest.mark.asyncio
async def test_empty_fetch_is_recorded_without_raising(clock, notifier):
    backend = FakeBackend(fetched=None)
    orchestrator, breaker, tracker = make_orchestrator(backend, clock, notifier)

    result = await orchestrator.refresh()

    assert result is None
    assert tracker.error_count == 1
    assert orchestrator.stage is RefreshStage.FAILED
    assert not orchestrator.data_initialized
    assert not breaker.state().is_refreshing
    assert notifier.items[-1][0] == "Error al obtener datos"
    assert notifier.items[-1][2] == DESTRUCTIVE


@pytest.mark.asyncio
async def test_fetch_error_is_recorded_and_reraised(clock, notifier):
    backend = FakeBackend()
    backend.fetch_error = RuntimeError("edge function unavailable")
    orchestrator, breaker, tracker = make_orchestrator(backend, clock, notifier)

    with pytest.raises(FetchFailedError, match="edge function unavailable") as excinfo:
        await orchestrator.refresh()

    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert tracker.error_count == 1
    assert breaker.state().consecutive_error_count == 1
    assert orchestrator.stage is RefreshStage.FAILED
    assert orchestrator.status()["last_error"] == "edge function unavailable"
    assert not tracker.is_refreshing
    assert not breaker.state().is_refreshing
    assert notifier.items[-1] == ("Error al obtener datos", "edge function unavailable", DESTRUCTIVE)


@pytest.mark.asyncio
async def test_force_manual_refresh_resets_the_limit(clock, notifier):
    backend = FakeBackend()
    orchestrator, breaker, _ = make_orchestrator(backend, clock, notifier)
    for _ in range(3):
        assert await orchestrator.refresh() is not None
        clock.advance(11_000)
    assert await orchestrator.refresh() is None

    result = await orchestrator.force_manual_refresh()

    assert result is not None
    assert breaker.state().refresh_count == 1


@pytest.mark.asyncio
async def test_clear_cache_then_forced_refresh(clock, notifier):
    backend = FakeBackend()
    orchestrator, _, _ = make_orchestrator(backend, clock, notifier)
    await orchestrator.refresh()

    result = await orchestrator.clear_cache_and_refresh()

    assert result is not None
    clear_index = backend.calls.index("clear")
    assert backend.calls[clear_index + 3][4] is True


@pytest.mark.asyncio
async def test_failed_cache_clear_never_fetches(clock, notifier):
    backend = FakeBackend(clear_result=False)
    orchestrator, _, _ = make_orchestrator(backend, clock, notifier)

    with pytest.raises(CacheClearError):
        await orchestrator.clear_cache_and_refresh()

    assert backend.fetch_calls == []
    assert notifier.items[-1][2] == DESTRUCTIVE


@pytest.mark.asyncio
async def test_cache_clear_exception_is_wrapped(clock, notifier):
    backend = FakeBackend()
    backend.clear_error = OSError("disk full")
    orchestrator, _, _ = make_orchestrator(backend, clock, notifier)

    with pytest.raises(CacheClearError, match="disk full"):
        await orchestrator.clear_cache_and_refresh()

    assert backend.fetch_calls == []


@pytest.mark.asyncio
async def test_result_of_timed_out_refresh_is_discarded(clock, notifier):
    backend = FakeBackend()
    backend.release = asyncio.Event()
    orchestrator, breaker, tracker = make_orchestrator(backend, clock, notifier, timeout_seconds=0.05)

    task = asyncio.create_task(orchestrator.refresh())
    await backend.fetch_started.wait()
    await asyncio.sleep(0.1)

    assert not tracker.is_refreshing
    assert not breaker.state().is_refreshing

    backend.release.set()
    result = await task

    assert result is None
    assert orchestrator.financial_data is None
    assert not orchestrator.data_initialized
    assert tracker.error_count == 0
    assert orchestrator.stage is RefreshStage.IDLE


@pytest.mark.asyncio
async def test_empty_result_of_timed_out_refresh_leaves_newer_refresh_alone(clock, notifier):
    backend = FakeBackend(fetched=None)
    stale_gate, fresh_gate = asyncio.Event(), asyncio.Event()
    backend.gates = [stale_gate, fresh_gate]
    orchestrator, breaker, tracker = make_orchestrator(backend, clock, notifier, timeout_seconds=0.05)

    stale = asyncio.create_task(orchestrator.refresh())
    await backend.fetch_started.wait()
    await asyncio.sleep(0.1)
    fresh = asyncio.create_task(orchestrator.refresh(force_refresh=True))
    while len(backend.fetch_calls) < 2:
        await asyncio.sleep(0)

    stale_gate.set()

    assert await stale is None
    assert tracker.is_refreshing
    assert breaker.state().is_refreshing
    assert orchestrator.stage is RefreshStage.FETCHING_SUMMARY
    assert tracker.error_count == 0
    assert DESTRUCTIVE not in [variant for _, _, variant in notifier.items]

    fresh_gate.set()

    assert await fresh is None
    assert tracker.error_count == 1
    assert orchestrator.stage is RefreshStage.FAILED


@pytest.mark.asyncio
async def test_loader_error_is_reported_as_failed_fetch(clock, notifier):
    backend = FakeBackend()

    async def broken_balance(date_range):
        raise LookupError("monthly_balances unavailable")

    backend.load_starting_balance = broken_balance
    orchestrator, _, tracker = make_orchestrator(backend, clock, notifier)

    with pytest.raises(FetchFailedError, match="monthly_balances unavailable"):
        await orchestrator.refresh()

    assert backend.fetch_calls == []
    assert tracker.error_count == 1


@pytest.mark.asyncio
async def test_consecutive_failures_open_the_circuit(clock, notifier):
    backend = FakeBackend(fetched=None)
    orchestrator, breaker, _ = make_orchestrator(backend, clock, notifier, max_refreshes=10)
    for _ in range(3):
        await orchestrator.refresh()
        clock.advance(11_000)
    calls_before = len(backend.fetch_calls)

    assert await orchestrator.refresh() is None
    assert len(backend.fetch_calls) == calls_before
    assert orchestrator.status()["circuit_breaker"]["is_open"]

    backend.fetched = FakeBackend().fetched
    assert await orchestrator.force_manual_refresh() is not None
    assert not breaker.state().is_open


@pytest.mark.asyncio
async def test_result_for_replaced_date_range_is_discarded(clock, notifier):
    backend = FakeBackend()
    fetched, backend.fetched = backend.fetched, None
    orchestrator, breaker, tracker = make_orchestrator(backend, clock, notifier)
    await orchestrator.refresh()
    assert tracker.error_count == 1

    backend.fetched = fetched
    backend.release = asyncio.Event()
    backend.fetch_started.clear()
    clock.advance(11_000)
    task = asyncio.create_task(orchestrator.refresh())
    await backend.fetch_started.wait()
    orchestrator.update_date_range(JUNE)
    backend.release.set()

    assert await task is None
    assert orchestrator.financial_data is None
    assert orchestrator.date_range == JUNE
    assert orchestrator.stage is RefreshStage.IDLE
    assert not tracker.is_refreshing
    assert tracker.error_count == 1
    assert str(tracker.last_error).startswith("No se obtuvieron datos")
    assert not breaker.state().is_refreshing
    assert breaker.state().consecutive_error_count == 1


@pytest.mark.asyncio
async def test_emergency_recovery_clears_tracker_and_breaker(clock, notifier):
    backend = FakeBackend(fetched=None)
    orchestrator, breaker, tracker = make_orchestrator(backend, clock, notifier)
    await orchestrator.refresh()

    assert orchestrator.emergency_recovery() is True

    assert tracker.error_count == 0
    assert orchestrator.stage is RefreshStage.IDLE
    assert breaker.state().refresh_count == 0
    assert breaker.can_refresh().allowed


@pytest.mark.asyncio
async def test_reset_refresh_state_releases_running_refresh(clock, notifier):
    backend = FakeBackend()
    backend.release = asyncio.Event()
    orchestrator, breaker, tracker = make_orchestrator(backend, clock, notifier)

    task = asyncio.create_task(orchestrator.refresh())
    await backend.fetch_started.wait()
    orchestrator.reset_refresh_state()

    assert not tracker.is_refreshing
    assert not breaker.state().is_refreshing
    assert orchestrator.status()["stage"] == "idle"

    backend.release.set()
    assert await task is None
