# src/taskkeep/core/errors.py

"""
Error taxonomy.

Raised synchronously to the caller:
- ValidationError, NotFoundError

Delivered asynchronously (notifications) unless the caller awaits the operation itself:
- StorageFullError, CorruptedStateError, SyncConflictError, TransientNetworkError
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..sync.sync_models import ConflictRecord
    from ..tasks.task_models import Task


class TaskKeepError(Exception):
    """Base exception for all taskkeep errors."""


class ValidationError(TaskKeepError):
    """Task input was rejected. Never persisted."""

    def __init__(self, errors: list[str] | str) -> None:
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("; ".join(self.errors) or "invalid input")


class NotFoundError(TaskKeepError):
    """The target task does not exist or is not in the required state."""

    def __init__(self, task_id: str, reason: str = "not found") -> None:
        self.task_id = task_id
        self.reason = reason
        super().__init__(f"Task {task_id} {reason}")


class QuotaExceededError(TaskKeepError):
    """Host key-value store refused a write because its capacity ceiling was hit."""

    def __init__(self, key: str, required_bytes: int, capacity_bytes: int) -> None:
        self.key = key
        self.required_bytes = required_bytes
        self.capacity_bytes = capacity_bytes
        super().__init__(
            f"Storage quota exceeded writing {key!r}: "
            f"{required_bytes} bytes needed, capacity {capacity_bytes}"
        )


class StorageFullError(TaskKeepError):
    """Persisting failed even after cleanup. In-memory state is intact."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message
            or "Local storage is full. Permanently remove deleted tasks or export and clear old tasks."
        )


class CorruptedStateError(TaskKeepError):
    """Persisted envelope could not be parsed or failed structural validation."""


class SyncConflictError(TaskKeepError):
    """The remote service rejected a write because its version advanced."""

    def __init__(
        self,
        task_id: str,
        *,
        expected_version: int | None = None,
        remote_version: int | None = None,
        remote_task: Task | None = None,
        record: ConflictRecord | None = None,
    ) -> None:
        self.task_id = task_id
        self.expected_version = expected_version
        self.remote_version = remote_version
        self.remote_task = remote_task
        self.record = record
        super().__init__(
            f"Version conflict for task {task_id}: "
            f"expected {expected_version}, remote is at {remote_version}"
        )


class TransientNetworkError(TaskKeepError):
    """Remote call failed in a way that may succeed on retry."""


class RemoteRejectedError(TaskKeepError):
    """Remote call failed permanently (bad request, unauthorized, ...)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)
