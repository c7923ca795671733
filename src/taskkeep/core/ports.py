# src/taskkeep/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The core depends on Protocols instead of concrete implementations.
This keeps the host store and the remote service swappable and lets tests
exercise quota exhaustion, corruption and conflicts without real I/O.
"""

from collections.abc import Callable
from typing import Any, Protocol

from ..sync.sync_models import RemoteChanges
from ..tasks.task_models import Task, TaskEnvelope, UsageStats


class KeyValueStore(Protocol):
    """
    Host per-origin string store (localStorage-like).

    set_item must raise QuotaExceededError when the write would exceed capacity,
    and leave the previous value untouched in that case.
    """

    capacity_bytes: int

    def get_item(self, key: str) -> str | None: ...
    def set_item(self, key: str, value: str) -> None: ...
    def remove_item(self, key: str) -> None: ...
    def keys(self) -> list[str]: ...
    def usage_bytes(self) -> int: ...


class EnvelopeGateway(Protocol):
    """What the Task Store needs from persistence. Nothing else is coupled."""

    def read(self) -> TaskEnvelope: ...
    def write(self, envelope: TaskEnvelope) -> None: ...
    def get_usage_stats(self) -> UsageStats: ...
    def set_quota_recovery(self, recovery: Callable[[], int] | None) -> None: ...


class DocumentStore(Protocol):
    def load_document(self, key: str) -> Any | None: ...
    def save_document(self, key: str, data: Any) -> None: ...


class RemoteTaskService(Protocol):
    """
    Versioned remote task service.

    update_task must raise SyncConflictError when expected_version does not
    match the server, TransientNetworkError for retryable failures and
    RemoteRejectedError for permanent ones.
    """

    async def fetch_changes(self, since: str | None) -> RemoteChanges: ...
    async def create_task(self, task: Task) -> Task: ...
    async def update_task(self, task: Task, expected_version: int) -> Task: ...
    async def get_task(self, task_id: str) -> Task | None: ...
    async def ping(self) -> bool: ...
