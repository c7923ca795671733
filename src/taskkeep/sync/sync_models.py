# src/taskkeep/sync/sync_models.py

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any

from ..core.errors import CorruptedStateError
from ..tasks.task_models import Task, format_timestamp, parse_timestamp, utc_now


class ConnectivityState(StrEnum):
    OFFLINE = "offline"
    ONLINE = "online"


class OperationKind(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationState(StrEnum):
    """
    Per-operation lifecycle: pending -> in_flight -> acknowledged | conflicted | abandoned.

    Only pending/in_flight/conflicted operations live in the queue; acknowledged
    and abandoned ones are removed.
    """

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    ACKNOWLEDGED = "acknowledged"
    CONFLICTED = "conflicted"
    ABANDONED = "abandoned"

    @classmethod
    def from_raw(cls, raw: Any) -> OperationState:
        try:
            return cls(raw)
        except ValueError:
            return cls.PENDING


class ResolutionStrategy(StrEnum):
    USE_LOCAL = "use_local"
    USE_REMOTE = "use_remote"
    MERGE = "merge"


MergeFunction = Callable[[Task, Task], Task]


@dataclass(slots=True)
class OfflineOperation:
    kind: OperationKind
    task_id: str
    payload: dict[str, Any]
    base_version: int = 1
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    enqueued_at: datetime = field(default_factory=utc_now)
    retry_count: int = 0
    state: OperationState = OperationState.PENDING

    @classmethod
    def for_task(cls, kind: OperationKind, task: Task, *, enqueued_at: datetime | None = None) -> OfflineOperation:
        return cls(
            kind=kind,
            task_id=task.id,
            payload=task.to_dict(),
            base_version=task.version,
            enqueued_at=enqueued_at or utc_now(),
        )

    def snapshot(self) -> Task:
        """The task as it was when this operation was queued."""
        return Task.from_dict(self.payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "taskId": self.task_id,
            "payload": self.payload,
            "baseVersion": self.base_version,
            "enqueuedAt": format_timestamp(self.enqueued_at),
            "retryCount": self.retry_count,
            "state": self.state.value,
        }

    @classmethod
    def from_dict(cls, data: Any) -> OfflineOperation:
        if not isinstance(data, dict):
            raise CorruptedStateError("queued operation must be an object")
        try:
            kind = OperationKind(data.get("kind"))
        except ValueError as e:
            raise CorruptedStateError(f"unknown operation kind {data.get('kind')!r}") from e
        task_id = data.get("taskId")
        payload = data.get("payload")
        if not isinstance(task_id, str) or not task_id or not isinstance(payload, dict):
            raise CorruptedStateError("queued operation needs taskId and payload")
        return cls(
            kind=kind,
            task_id=task_id,
            payload=payload,
            base_version=int(data.get("baseVersion") or 1),
            id=str(data.get("id") or uuid.uuid4().hex),
            enqueued_at=parse_timestamp(data.get("enqueuedAt"), field_name="enqueuedAt"),
            retry_count=int(data.get("retryCount") or 0),
            state=OperationState.from_raw(data.get("state")),
        )


@dataclass(frozen=True, slots=True)
class ConflictRecord:
    task_id: str
    local_version: int
    remote_version: int
    local_task: Task
    remote_task: Task | None
    operation_id: str | None = None
    detected_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "taskId": self.task_id,
            "localVersion": self.local_version,
            "remoteVersion": self.remote_version,
            "localTask": self.local_task.to_dict(),
            "detectedAt": format_timestamp(self.detected_at),
        }
        if self.remote_task is not None:
            out["remoteTask"] = self.remote_task.to_dict()
        if self.operation_id is not None:
            out["operationId"] = self.operation_id
        return out

    @classmethod
    def from_dict(cls, data: Any) -> ConflictRecord:
        if not isinstance(data, dict):
            raise CorruptedStateError("conflict record must be an object")
        remote_raw = data.get("remoteTask")
        return cls(
            task_id=str(data.get("taskId") or ""),
            local_version=int(data.get("localVersion") or 0),
            remote_version=int(data.get("remoteVersion") or 0),
            local_task=Task.from_dict(data.get("localTask")),
            remote_task=Task.from_dict(remote_raw) if remote_raw is not None else None,
            operation_id=data.get("operationId"),
            detected_at=parse_timestamp(data.get("detectedAt"), field_name="detectedAt"),
        )


@dataclass(frozen=True, slots=True)
class RemoteChanges:
    tasks: list[Task]
    cursor: str | None = None


@dataclass(slots=True)
class SyncReport:
    acknowledged: int = 0
    conflicted: int = 0
    abandoned: int = 0
    deferred: int = 0
    retried: int = 0
    pulled: int = 0
    skipped: bool = False

    def summary(self) -> str:
        if self.skipped:
            return "sync skipped (offline)"
        return (
            f"acked={self.acknowledged} conflicts={self.conflicted} abandoned={self.abandoned} "
            f"deferred={self.deferred} retried={self.retried} pulled={self.pulled}"
        )


def last_writer_wins_merge(local: Task, remote: Task) -> Task:
    """
    Field-level last-writer-wins.

    There are no per-field clocks, so each differing field is taken from the copy
    whose own change timestamp is later:
    - text: the copy with the later updatedAt (remote wins ties)
    - completed/completedAt: the copy with the later completion change
      (completedAt if set, else updatedAt)
    - deletedAt: a deletion wins if it happened after the other copy's last update

    The result carries the remote version, so pushing it with expectedVersion=remote.version
    is an ordinary optimistic write.
    """
    newer_text = local if local.updated_at > remote.updated_at else remote

    def completion_clock(t: Task) -> datetime:
        return t.completed_at or t.updated_at

    completion_src = local if completion_clock(local) > completion_clock(remote) else remote

    deleted_at = None
    if local.deleted_at is not None and local.deleted_at > remote.updated_at:
        deleted_at = local.deleted_at
    elif remote.deleted_at is not None and remote.deleted_at >= local.updated_at:
        deleted_at = remote.deleted_at

    return replace(
        remote,
        text=newer_text.text,
        completed=completion_src.completed,
        completed_at=completion_src.completed_at if completion_src.completed else None,
        deleted_at=deleted_at,
        created_at=min(local.created_at, remote.created_at),
        updated_at=max(local.updated_at, remote.updated_at),
    )
