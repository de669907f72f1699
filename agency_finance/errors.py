"""Exceptions raised by the refresh pipeline.

Rate-limited and already-in-progress refreshes are not errors: they surface as
a ``None`` return from the orchestrator.
"""
from __future__ import annotations


class RefreshError(Exception):
    """Base class for failures the user should be told about."""


class FetchFailedError(RefreshError):
    """A collaborator call raised while collecting the period's data."""


class EmptyFetchError(FetchFailedError):
    """The main fetch returned no usable data."""


class CacheClearError(RefreshError):
    """The cache could not be cleared, so the forced refresh was skipped."""


class StaleResultError(RefreshError):
    """The result belongs to a retired refresh or a replaced date range."""


__all__ = ["RefreshError", "FetchFailedError", "EmptyFetchError", "CacheClearError", "StaleResultError"]
