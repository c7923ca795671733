# src/taskkeep/tasks/task_store.py

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from ..core.errors import NotFoundError, ValidationError
from ..core.events import EventBus, EventKind, Notification, Origin
from ..core.ports import EnvelopeGateway
from .task_models import Task, TaskEnvelope, utc_now
from .validation import normalize_task_text

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(days=30)

UPDATABLE_FIELDS = frozenset({"text", "completed"})


def _new_task_id() -> str:
    return uuid.uuid4().hex


class TaskStore:
    """
    In-memory ordered task collection backed by a Persistence Gateway.

    The canonical order is newest-first: create() inserts at the head.
    Every mutation re-checks invariants, asks the gateway to persist the whole
    envelope, then emits a notification.

    Per-task state machine:
        Active(open) <-> Active(completed) -> Deleted -> Active (restore)
        Deleted -> Purged (terminal, removed from storage)

    Deleted tasks are invisible to update/delete; only restore and purge touch them.
    Sync-originated changes go through acknowledge_version() / apply_remote(),
    which enforce the same text rules and never move versions or timestamps backwards.
    """

    def __init__(
        self,
        gateway: EnvelopeGateway,
        *,
        events: EventBus | None = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = _new_task_id,
        retention: timedelta = DEFAULT_RETENTION,
    ) -> None:
        self._gateway = gateway
        self._events = events or EventBus()
        self._clock = clock
        self._id_factory = id_factory
        self._retention = retention
        self._last_ts: datetime | None = None

        envelope = gateway.read()
        self._tasks: list[Task] = list(envelope.tasks)
        self._index: dict[str, int] = {}
        self._reindex()
        for t in self._tasks:
            self._observe_ts(t.updated_at)

        gateway.set_quota_recovery(self.purge_expired_deletions)
        logger.info(
            "TaskStore ready total=%d active=%d deleted=%d",
            len(self._tasks),
            sum(1 for t in self._tasks if not t.is_deleted),
            sum(1 for t in self._tasks if t.is_deleted),
        )

    @property
    def events(self) -> EventBus:
        return self._events

    def __len__(self) -> int:
        return len(self._tasks)

    # ---- low-level helpers ----

    def _reindex(self) -> None:
        self._index = {t.id: i for i, t in enumerate(self._tasks)}

    def _observe_ts(self, ts: datetime) -> None:
        if self._last_ts is None or ts > self._last_ts:
            self._last_ts = ts

    def _now(self) -> datetime:
        """Clock reading clamped so issued timestamps never go backwards."""
        now = self._clock()
        if self._last_ts is not None and now < self._last_ts:
            now = self._last_ts
        self._last_ts = now
        return now

    def _replace(self, task: Task) -> None:
        self._tasks[self._index[task.id]] = task

    def _persist(self) -> None:
        envelope = TaskEnvelope(last_modified=self._now(), tasks=tuple(self._tasks))
        self._gateway.write(envelope)

    def _emit(self, kind: EventKind, task: Task | None, origin: Origin = Origin.LOCAL) -> None:
        self._events.emit(Notification(kind=kind, task=task, origin=origin))

    def _require_active(self, task_id: str) -> Task:
        task = self.find(task_id)
        if task is None:
            raise NotFoundError(task_id)
        if task.is_deleted:
            raise NotFoundError(task_id, "is deleted")
        return task

    # ---- queries ----

    def find(self, task_id: str) -> Task | None:
        """Any stored task (deleted included), or None."""
        i = self._index.get(task_id)
        return None if i is None else self._tasks[i]

    def get(self, task_id: str, *, include_deleted: bool = False) -> Task:
        if include_deleted:
            task = self.find(task_id)
            if task is None:
                raise NotFoundError(task_id)
            return task
        return self._require_active(task_id)

    def list_active(self) -> list[Task]:
        """Non-deleted tasks, newest createdAt first. sorted() is stable: ties keep canonical order."""
        active = [t for t in self._tasks if not t.is_deleted]
        return sorted(active, key=lambda t: t.created_at, reverse=True)

    def list_deleted(self) -> list[Task]:
        deleted = [t for t in self._tasks if t.is_deleted]
        return sorted(deleted, key=lambda t: t.deleted_at or t.updated_at, reverse=True)

    def all_tasks(self) -> list[Task]:
        return list(self._tasks)

    # ---- mutations ----

    def create(self, text: Any) -> Task:
        clean = normalize_task_text(text)
        now = self._now()
        task = Task(
            id=self._id_factory(),
            text=clean,
            created_at=now,
            updated_at=now,
            completed=False,
            version=1,
        )
        if task.id in self._index:
            raise ValidationError(f"Duplicate task id {task.id}")

        self._tasks.insert(0, task)
        self._reindex()
        self._persist()
        logger.debug("Task created id=%s", task.id)
        self._emit(EventKind.CREATED, task)
        return task

    def update(self, task_id: str, changes: Mapping[str, Any] | None = None, **fields: Any) -> Task:
        """
        Merge `changes` (and/or keyword fields) into an active task.

        Only text and completed are updatable. completedAt follows completed:
        set on false->true, cleared on true->false.
        """
        merged = {**(changes or {}), **fields}
        task = self._require_active(task_id)

        unknown = sorted(set(merged) - UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(unknown)}")

        text = task.text
        if "text" in merged:
            text = normalize_task_text(merged["text"])

        completed = task.completed
        if "completed" in merged:
            if not isinstance(merged["completed"], bool):
                raise ValidationError("completed must be a boolean")
            completed = merged["completed"]

        now = self._now()
        completed_at = task.completed_at
        if completed and not task.completed:
            completed_at = now
        elif not completed and task.completed:
            completed_at = None

        updated = replace(task, text=text, completed=completed, completed_at=completed_at, updated_at=now)
        self._replace(updated)
        self._persist()
        logger.debug("Task updated id=%s fields=%s", task_id, sorted(merged))
        self._emit(EventKind.UPDATED, updated)
        return updated

    def toggle(self, task_id: str) -> Task:
        task = self._require_active(task_id)
        return self.update(task_id, completed=not task.completed)

    def delete(self, task_id: str) -> None:
        """Soft delete: the task stays in storage (for undo) until purged."""
        task = self._require_active(task_id)
        now = self._now()
        deleted = replace(task, deleted_at=now, updated_at=now)
        self._replace(deleted)
        self._persist()
        logger.debug("Task soft-deleted id=%s", task_id)
        self._emit(EventKind.DELETED, deleted)

    def restore(self, task_id: str) -> Task:
        task = self.find(task_id)
        if task is None:
            raise NotFoundError(task_id)
        if not task.is_deleted:
            raise NotFoundError(task_id, "is not deleted")

        restored = replace(task, deleted_at=None, updated_at=self._now())
        self._replace(restored)
        self._persist()
        logger.debug("Task restored id=%s", task_id)
        self._emit(EventKind.RESTORED, restored)
        return restored

    def clear_completed(self) -> int:
        """Soft delete every completed active task. Returns how many were deleted."""
        ids = [t.id for t in self._tasks if t.completed and not t.is_deleted]
        for task_id in ids:
            self.delete(task_id)
        return len(ids)

    def purge_expired_deletions(self, retention: timedelta | None = None) -> int:
        """
        Permanently remove soft-deleted tasks whose deletedAt is older than the window.
        Irreversible. Also installed as the gateway's quota-recovery hook.
        """
        window = self._retention if retention is None else retention
        cutoff = self._clock() - window

        expired = [t for t in self._tasks if t.deleted_at is not None and t.deleted_at < cutoff]
        if not expired:
            return 0

        gone = {t.id for t in expired}
        self._tasks = [t for t in self._tasks if t.id not in gone]
        self._reindex()
        self._persist()
        logger.info("Purged %d expired deletion(s) older than %s", len(expired), window)
        for t in expired:
            self._emit(EventKind.PURGED, t)
        return len(expired)

    # ---- sync surface ----

    def acknowledge_version(self, task_id: str, version: int) -> Task | None:
        """
        Record the version the remote service assigned after accepting a write.

        Works for deleted tasks too (a remote delete is still acknowledged).
        Versions never move backwards. No notification: nothing user-visible changed.
        """
        task = self.find(task_id)
        if task is None:
            logger.debug("acknowledge_version: task %s no longer stored", task_id)
            return None
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise ValidationError(f"Invalid version {version!r}")
        if version <= task.version:
            return task

        acked = replace(task, version=version)
        self._replace(acked)
        self._persist()
        return acked

    def apply_remote(self, remote: Task) -> Task | None:
        """
        Upsert an authoritative remote copy.

        - unknown + deleted remotely: ignored (nothing to resurrect),
        - unknown: adopted and placed by createdAt,
        - known: text/completed/deletedAt/version taken from remote; timestamps
          never move backwards.
        Emits created/updated/deleted/restored with origin=remote.
        """
        text = normalize_task_text(remote.text)
        local = self.find(remote.id)

        if local is None:
            if remote.is_deleted:
                return None
            adopted = replace(remote, text=text)
            self._observe_ts(adopted.updated_at)
            pos = 0
            while pos < len(self._tasks) and self._tasks[pos].created_at > adopted.created_at:
                pos += 1
            self._tasks.insert(pos, adopted)
            self._reindex()
            self._persist()
            logger.debug("Adopted remote task id=%s version=%s", remote.id, remote.version)
            self._emit(EventKind.CREATED, adopted, Origin.REMOTE)
            return adopted

        merged = replace(
            local,
            text=text,
            completed=remote.completed,
            completed_at=remote.completed_at if remote.completed else None,
            deleted_at=remote.deleted_at,
            version=max(local.version, remote.version),
            updated_at=max(local.updated_at, remote.updated_at),
        )
        self._observe_ts(merged.updated_at)
        self._replace(merged)
        self._persist()

        if merged.is_deleted and not local.is_deleted:
            kind = EventKind.DELETED
        elif local.is_deleted and not merged.is_deleted:
            kind = EventKind.RESTORED
        else:
            kind = EventKind.UPDATED
        logger.debug("Applied remote copy id=%s version=%s", remote.id, merged.version)
        self._emit(kind, merged, Origin.REMOTE)
        return merged
