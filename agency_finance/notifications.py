"""User-facing notifications, the backend counterpart of the dashboard toasts."""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

logger = logging.getLogger(__name__)

DEFAULT = "default"
DESTRUCTIVE = "destructive"


@dataclass(frozen=True, slots=True)
class Notification:
    title: str
    description: str = ""
    variant: str = DEFAULT
    created_at: datetime = field(default_factory=datetime.utcnow)


class Notifier(Protocol):
    def notify(self, title: str, description: str = "", variant: str = DEFAULT) -> None:
        ...


class NotificationCenter:
    """Keep the most recent notifications so the dashboard can poll them."""

    def __init__(self, max_items: int = 50) -> None:
        self._items: deque[Notification] = deque(maxlen=max_items)

    def notify(self, title: str, description: str = "", variant: str = DEFAULT) -> None:
        level = logging.WARNING if variant == DESTRUCTIVE else logging.INFO
        logger.log(level, "%s: %s", title, description)
        self._items.append(Notification(title, description, variant))

    def recent(self, limit: int = 20) -> list[Notification]:
        items = list(self._items)
        return items[-limit:][::-1]

    def clear(self) -> None:
        self._items.clear()


__all__ = ["Notification", "Notifier", "NotificationCenter", "DEFAULT", "DESTRUCTIVE"]
