"""Application configuration utilities for the agency_finance backend.

This module centralises environment-driven configuration so the rest of the
code base does not need to read environment variables directly.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load any variables defined in a local .env file. The call is idempotent and
# inexpensive, so importing it at module import time keeps the API ergonomic.
load_dotenv()


@dataclass(frozen=True)
class AppConfig:
    """Strongly-typed container for runtime configuration.

    Attributes:
        project_root: Root directory of the project. Used to derive default
            paths so the app works out of the box after cloning the repo.
        database_file: Path of the SQLite database holding monthly balances,
            cached transactions and summary snapshots.
        zoho_transactions_url: Endpoint of the ``zoho-transactions`` edge
            function. Without it refreshes report a failed fetch.
        supabase_anon_key: Optional key sent as bearer token to the edge
            function.
        max_refreshes: Refreshes allowed before the circuit breaker requires a
            manual reset.
        min_refresh_interval_ms: Minimum gap between two unforced refreshes.
        throttle_window_ms: Window in which fetch bursts are coalesced.
        refresh_timeout_seconds: Safety timeout after which a refresh that
            never finished is considered over.
        http_timeout_seconds: Timeout for calls to the edge function.
        log_level: Name of the root logging level.
    """

    project_root: Path
    database_file: Path
    zoho_transactions_url: Optional[str]
    supabase_anon_key: Optional[str]
    max_refreshes: int = 3
    min_refresh_interval_ms: int = 10_000
    throttle_window_ms: int = 1000
    refresh_timeout_seconds: float = 30.0
    http_timeout_seconds: float = 30.0
    log_level: str = "INFO"


def load_config() -> AppConfig:
    """Create a new :class:`AppConfig` instance based on environment settings.

    Environment variables override the default values, allowing users to
    customise the runtime without touching the source code.
    """

    project_root = Path(__file__).resolve().parent.parent
    database_file = Path(
        getenv_with_default(
            "AGENCY_FINANCE_DB_FILE",
            project_root / "agency_finance.db",
        )
    )

    # Ensure the directories exist so later code can safely create files.
    database_file.parent.mkdir(parents=True, exist_ok=True)

    return AppConfig(
        project_root=project_root,
        database_file=database_file,
        zoho_transactions_url=getenv_with_default("ZOHO_TRANSACTIONS_URL"),
        supabase_anon_key=getenv_with_default("SUPABASE_ANON_KEY"),
        max_refreshes=int(getenv_with_default("REFRESH_MAX_REFRESHES", "3")),
        min_refresh_interval_ms=int(getenv_with_default("REFRESH_MIN_INTERVAL_MS", "10000")),
        throttle_window_ms=int(getenv_with_default("THROTTLE_WINDOW_MS", "1000")),
        refresh_timeout_seconds=float(getenv_with_default("REFRESH_TIMEOUT_SECONDS", "30")),
        http_timeout_seconds=float(getenv_with_default("HTTP_TIMEOUT_SECONDS", "30")),
        log_level=getenv_with_default("LOG_LEVEL", "INFO").upper(),
    )


def getenv_with_default(name: str, default: Optional[Path | str] = None) -> Optional[str]:
    """Return the value of an environment variable or a sensible default.

    ``None`` values are propagated so callers can make explicit decisions about
    optional configuration values. Paths are converted to strings, keeping the
    return type uniform and easy to serialise.
    """

    from os import getenv

    value = getenv(name)
    if value is not None:
        return value
    if default is None:
        return None
    return str(default)
