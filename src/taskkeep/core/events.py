# src/taskkeep/core/events.py

"""
Notification channel between the core and its consumers.

Views subscribe to re-render without polling; the Sync Engine subscribes to
capture local mutations. Storage and sync failures travel here too, so the UI
can show non-blocking feedback instead of handling exceptions.

A listener that raises is logged and skipped; it never breaks the emitter.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..tasks.task_models import Task

logger = logging.getLogger(__name__)


class EventKind(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    RESTORED = "restored"
    PURGED = "purged"

    STORAGE_ERROR = "storage_error"
    SYNC_CONFLICT = "sync_conflict"
    SYNC_WARNING = "sync_warning"
    SYNC_COMPLETED = "sync_completed"
    CONNECTIVITY = "connectivity"


class Origin(StrEnum):
    LOCAL = "local"
    REMOTE = "remote"


TASK_EVENTS = frozenset(
    {EventKind.CREATED, EventKind.UPDATED, EventKind.DELETED, EventKind.RESTORED, EventKind.PURGED}
)


@dataclass(frozen=True, slots=True)
class Notification:
    kind: EventKind
    task: Task | None = None
    origin: Origin = Origin.LOCAL
    error: Exception | None = None
    detail: Any = None


Listener = Callable[[Notification], None]


class EventBus:
    """Synchronous fan-out to subscribed listeners, in subscription order."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, notification: Notification) -> None:
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:
                logger.exception("Listener failed for %s event", notification.kind.value)

    def __len__(self) -> int:
        return len(self._listeners)
