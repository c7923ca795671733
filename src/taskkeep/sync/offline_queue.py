# src/taskkeep/sync/offline_queue.py

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Any

from ..core.errors import CorruptedStateError, StorageFullError
from ..core.ports import DocumentStore
from .sync_models import ConflictRecord, OfflineOperation, OperationState

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_KEY = "taskkeep.sync.queue"


class OfflineQueue:
    """
    Persistent FIFO of local mutations not yet confirmed by the remote service.

    Besides operations it keeps the open conflict records (one per task), the
    pull cursor and the ids of remote changes a pull had to skip, all in a single
    JSON document saved after every change.
    A task with an open conflict is "held": its queued operations are not replayed
    until the conflict is resolved.
    """

    def __init__(self, documents: DocumentStore, *, key: str = DEFAULT_QUEUE_KEY) -> None:
        self._documents = documents
        self._key = key
        self._ops: list[OfflineOperation] = []
        self._conflicts: dict[str, ConflictRecord] = {}
        self._stale: set[str] = set()
        self.cursor: str | None = None
        self._load()

    def __len__(self) -> int:
        return len(self._ops)

    def __iter__(self) -> Iterator[OfflineOperation]:
        return iter(list(self._ops))

    # ---- persistence ----

    def _load(self) -> None:
        data = self._documents.load_document(self._key)
        if data is None:
            return
        try:
            if not isinstance(data, dict):
                raise CorruptedStateError("queue document must be an object")
            ops = [OfflineOperation.from_dict(d) for d in data.get("operations") or []]
            conflicts = [ConflictRecord.from_dict(d) for d in data.get("conflicts") or []]
        except (CorruptedStateError, TypeError, ValueError) as e:
            logger.error("Offline queue document is corrupted (%s); starting with an empty queue.", e)
            return

        for op in ops:
            # Anything in flight when the process died is simply pending again.
            if op.state == OperationState.IN_FLIGHT:
                op.state = OperationState.PENDING
        self._ops = sorted(ops, key=lambda o: o.enqueued_at)
        self._conflicts = {c.task_id: c for c in conflicts}
        stale = data.get("stale")
        if isinstance(stale, list):
            self._stale = {s for s in stale if isinstance(s, str)}
        cursor = data.get("cursor")
        self.cursor = cursor if isinstance(cursor, str) else None
        logger.info(
            "Offline queue loaded operations=%d conflicts=%d", len(self._ops), len(self._conflicts)
        )

    def save(self) -> None:
        doc: dict[str, Any] = {
            "operations": [op.to_dict() for op in self._ops],
            "conflicts": [c.to_dict() for c in self._conflicts.values()],
            "cursor": self.cursor,
            "stale": sorted(self._stale),
        }
        try:
            self._documents.save_document(self._key, doc)
        except StorageFullError:
            # The queue is still intact in memory; the next save retries.
            logger.error("Could not persist offline queue (%d operations): storage full", len(self._ops))
            raise

    # ---- operations ----

    def append(self, op: OfflineOperation) -> None:
        if self._ops and op.enqueued_at < self._ops[-1].enqueued_at:
            # Keep FIFO by enqueuedAt even if the clock stepped back.
            op.enqueued_at = self._ops[-1].enqueued_at
        self._ops.append(op)

    def pending(self) -> list[OfflineOperation]:
        """Snapshot in FIFO order."""
        return list(self._ops)

    def remove(self, op_id: str) -> OfflineOperation | None:
        for i, op in enumerate(self._ops):
            if op.id == op_id:
                return self._ops.pop(i)
        return None

    def drop_task(self, task_id: str) -> int:
        before = len(self._ops)
        self._ops = [op for op in self._ops if op.task_id != task_id]
        return before - len(self._ops)

    def has_task(self, task_id: str) -> bool:
        return any(op.task_id == task_id for op in self._ops)

    # ---- conflicts ----

    def add_conflict(self, record: ConflictRecord) -> None:
        self._conflicts[record.task_id] = record

    def conflict_for(self, task_id: str) -> ConflictRecord | None:
        return self._conflicts.get(task_id)

    def conflicts(self) -> list[ConflictRecord]:
        return sorted(self._conflicts.values(), key=lambda c: c.detected_at)

    def clear_conflict(self, task_id: str) -> ConflictRecord | None:
        return self._conflicts.pop(task_id, None)

    def held_task_ids(self) -> set[str]:
        return set(self._conflicts)

    # ---- skipped remote changes ----

    def mark_stale(self, task_id: str) -> None:
        """The pull cursor moved past a remote change for this task without applying it."""
        self._stale.add(task_id)

    def stale_task_ids(self) -> list[str]:
        return sorted(self._stale)

    def clear_stale(self, task_id: str) -> None:
        self._stale.discard(task_id)
