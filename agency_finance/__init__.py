"""Refresh coordination backend for the agency financial dashboard."""
from .api import app

__all__ = ["app"]
