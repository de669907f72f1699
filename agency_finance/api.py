"""FastAPI application exposing the agency_finance backend."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import date
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, HTTPException, Path, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .circuit_breaker import CircuitBreaker
from .config import load_config
from .database import SQLiteRepository
from .errors import FetchFailedError, RefreshError
from .finance_client import FinanceDataClient
from .models import DateRange, FinancialData
from .services import FinanceDashboardService, financial_data_to_dict

logger = logging.getLogger(__name__)

MONTH_YEAR_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Initialise shared services once and reuse them across requests."""

    config = load_config()
    repository = SQLiteRepository(config.database_file)
    repository.initialise_schema()
    client = FinanceDataClient(config, repository)
    # One breaker for every refresh entry point of the running application.
    circuit_breaker = CircuitBreaker(config.max_refreshes, config.min_refresh_interval_ms)
    dashboard = FinanceDashboardService(config, repository, client, circuit_breaker)

    app.state.config = config
    app.state.repository = repository
    app.state.dashboard = dashboard

    yield

    dashboard.close()
    repository.close()


app = FastAPI(lifespan=lifespan, title="agency_finance backend", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class MonthlyBalanceUpdate(BaseModel):
    balance: Optional[float] = None
    opex_amount: Optional[float] = None
    tax_reserve_percentage: Optional[float] = None
    profit_percentage: Optional[float] = None
    itbm_amount: Optional[float] = None
    include_zoho_fifty_percent: Optional[bool] = None
    stripe_override: Optional[float] = None
    notes: Optional[str] = None


# Dependency injection ------------------------------------------------------

def get_dashboard_service() -> FinanceDashboardService:
    service: FinanceDashboardService = app.state.dashboard
    return service


def get_date_range(
    start_date: Annotated[Optional[date], Query(description="First day of the period")] = None,
    end_date: Annotated[Optional[date], Query(description="Last day of the period")] = None,
) -> Optional[DateRange]:
    if start_date is None and end_date is None:
        return None
    if start_date is None or end_date is None:
        raise HTTPException(status_code=422, detail="start_date and end_date must be supplied together")
    try:
        return DateRange(start_date, end_date)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


DashboardDep = Annotated[FinanceDashboardService, Depends(get_dashboard_service)]
DateRangeDep = Annotated[Optional[DateRange], Depends(get_date_range)]


def _refresh_payload(dashboard: FinanceDashboardService, data: Optional[FinancialData]) -> dict[str, object]:
    payload: dict[str, object] = {
        "refreshed": data is not None,
        "status": dashboard.refresh_status(),
    }
    if data is not None:
        payload.update(financial_data_to_dict(data))
    return payload


# Routes --------------------------------------------------------------------


@app.get("/health")
def health_check() -> dict[str, str]:
    """Return a basic heartbeat payload for monitoring purposes."""

    return {"status": "ok"}


@app.get("/financial-data")
def get_financial_data(dashboard: DashboardDep) -> dict[str, object]:
    return dashboard.current_financial_data()


@app.put("/date-range")
async def set_date_range(dashboard: DashboardDep, date_range: DateRangeDep) -> dict[str, object]:
    if date_range is None:
        raise HTTPException(status_code=422, detail="start_date and end_date are required")
    dashboard.orchestrator.update_date_range(date_range)
    return dashboard.refresh_status()["date_range"]


@app.post("/refresh")
async def refresh(dashboard: DashboardDep, date_range: DateRangeDep) -> dict[str, object]:
    """Rate-limited refresh.  ``refreshed`` is false when the request was skipped."""

    try:
        data = await dashboard.refresh(date_range)
    except FetchFailedError as exc:
        raise HTTPException(status_code=503, detail=f"Financial data unavailable: {exc}") from exc
    except RefreshError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return _refresh_payload(dashboard, data)


@app.post("/refresh/force")
async def force_refresh(dashboard: DashboardDep, date_range: DateRangeDep) -> dict[str, object]:
    try:
        data = await dashboard.force_refresh(date_range)
    except FetchFailedError as exc:
        raise HTTPException(status_code=503, detail=f"Financial data unavailable: {exc}") from exc
    except RefreshError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return _refresh_payload(dashboard, data)


@app.post("/cache/clear")
async def clear_cache_and_refresh(dashboard: DashboardDep, date_range: DateRangeDep) -> dict[str, object]:
    try:
        data = await dashboard.clear_cache_and_refresh(date_range)
    except FetchFailedError as exc:
        raise HTTPException(status_code=503, detail=f"Financial data unavailable: {exc}") from exc
    except RefreshError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return _refresh_payload(dashboard, data)


@app.get("/refresh/status")
def refresh_status(dashboard: DashboardDep) -> dict[str, object]:
    return dashboard.refresh_status()


@app.post("/refresh/reset")
async def reset_refresh_state(dashboard: DashboardDep) -> dict[str, object]:
    return dashboard.reset_refresh_state()


@app.post("/refresh/emergency-recovery")
async def emergency_recovery(dashboard: DashboardDep) -> dict[str, object]:
    return dashboard.emergency_recovery()


@app.get("/notifications")
def list_notifications(
    dashboard: DashboardDep,
    limit: Annotated[int, Query(ge=1, le=50)] = 20,
) -> dict[str, object]:
    items = [
        {**asdict(item), "created_at": item.created_at.isoformat(timespec="seconds")}
        for item in dashboard.notifications.recent(limit)
    ]
    return {"notifications": items, "count": len(items)}


@app.get("/monthly-balances/{month_year}")
def get_monthly_balance(
    month_year: Annotated[str, Path(pattern=MONTH_YEAR_PATTERN)],
    dashboard: DashboardDep,
) -> dict[str, object]:
    balance = dashboard.get_monthly_balance(month_year)
    if balance is None:
        raise HTTPException(status_code=404, detail=f"No monthly balance stored for {month_year}")
    return _balance_payload(asdict(balance))


@app.put("/monthly-balances/{month_year}")
def save_monthly_balance(
    month_year: Annotated[str, Path(pattern=MONTH_YEAR_PATTERN)],
    update: MonthlyBalanceUpdate,
    dashboard: DashboardDep,
) -> dict[str, object]:
    values = update.model_dump(exclude_unset=True)
    balance = dashboard.save_monthly_balance(month_year, **values)
    return _balance_payload(asdict(balance))


def _balance_payload(payload: dict[str, object]) -> dict[str, object]:
    for key in ("created_at", "updated_at"):
        value = payload.get(key)
        if value is not None:
            payload[key] = value.isoformat(timespec="seconds")
    return payload
