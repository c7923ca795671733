# src/taskkeep/sync/sync_engine.py

from __future__ import annotations

"""
Sync Engine.

Captures local mutations (Task Store notifications with origin=local) into a
persistent offline queue and, while online, replays them against the Remote Task
Service with optimistic concurrency:

- operations replay in FIFO order; operations for the same task never overtake
  each other, operations for different tasks may,
- a version mismatch produces a ConflictRecord and holds that task's later
  operations until resolve_conflict() is called; other tasks keep flowing,
- transient failures are retried on later rounds, at most `max_attempts` times,
  then the operation is abandoned with a sync_warning notification,
- after replay, remote-only changes are pulled and applied through the Task Store;
  remote changes skipped while local work was pending are re-fetched once it drains.

The engine never mutates tasks itself: every change goes through TaskStore,
so text rules and version/timestamp monotonicity are re-checked.
"""

import asyncio
import contextlib
import logging
from dataclasses import replace

from ..core.errors import (
    RemoteRejectedError,
    StorageFullError,
    SyncConflictError,
    TransientNetworkError,
    ValidationError,
)
from ..core.events import EventBus, EventKind, Notification, Origin
from ..core.ports import DocumentStore, RemoteTaskService
from ..tasks.task_models import Task
from ..tasks.task_store import TaskStore
from ..tasks.validation import normalize_task_text
from .offline_queue import DEFAULT_QUEUE_KEY, OfflineQueue
from .sync_models import (
    ConflictRecord,
    ConnectivityState,
    MergeFunction,
    OfflineOperation,
    OperationKind,
    OperationState,
    ResolutionStrategy,
    SyncReport,
    last_writer_wins_merge,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

_KIND_FOR_EVENT = {
    EventKind.CREATED: OperationKind.CREATE,
    EventKind.UPDATED: OperationKind.UPDATE,
    EventKind.RESTORED: OperationKind.UPDATE,
    EventKind.DELETED: OperationKind.DELETE,
}


class SyncEngine:
    def __init__(
        self,
        store: TaskStore,
        documents: DocumentStore,
        remote: RemoteTaskService,
        *,
        events: EventBus | None = None,
        interval_seconds: float = 30.0,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        merge: MergeFunction | None = None,
        online: bool = False,
        auto_flush: bool = True,
        probe_when_offline: bool = True,
        queue_key: str = DEFAULT_QUEUE_KEY,
    ) -> None:
        self._store = store
        self._remote = remote
        self._events = events or store.events
        self._interval = float(interval_seconds)
        self._max_attempts = max(1, int(max_attempts))
        self._merge = merge
        self._auto_flush = auto_flush
        self._probe = probe_when_offline
        self._state = ConnectivityState.ONLINE if online else ConnectivityState.OFFLINE

        self._queue = OfflineQueue(documents, key=queue_key)
        self._lock = asyncio.Lock()
        self._kick_task: asyncio.Task[None] | None = None
        self._rerun = False
        self._runner: asyncio.Task[None] | None = None

        self._unsubscribe = store.events.subscribe(self._on_store_event)
        logger.info(
            "SyncEngine ready state=%s queued=%d conflicts=%d",
            self._state.value,
            len(self._queue),
            len(self._queue.conflicts()),
        )

    # ---- state ----

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state == ConnectivityState.ONLINE

    @property
    def queue(self) -> OfflineQueue:
        return self._queue

    def pending_operations(self) -> list[OfflineOperation]:
        return self._queue.pending()

    def conflicts(self) -> list[ConflictRecord]:
        return self._queue.conflicts()

    def close(self) -> None:
        self._unsubscribe()

    # ---- connectivity ----

    def set_online(self) -> None:
        if self._state == ConnectivityState.ONLINE:
            return
        self._state = ConnectivityState.ONLINE
        logger.info("Connectivity: online (queued=%d)", len(self._queue))
        self._events.emit(Notification(kind=EventKind.CONNECTIVITY, detail=self._state))
        self._kick()

    def set_offline(self) -> None:
        if self._state == ConnectivityState.OFFLINE:
            return
        self._state = ConnectivityState.OFFLINE
        logger.info("Connectivity: offline")
        self._events.emit(Notification(kind=EventKind.CONNECTIVITY, detail=self._state))

    async def check_connectivity(self) -> bool:
        try:
            ok = bool(await self._remote.ping())
        except Exception:
            logger.debug("Connectivity probe failed", exc_info=True)
            ok = False
        if ok:
            self.set_online()
        else:
            self.set_offline()
        return ok

    # ---- queue ----

    def _on_store_event(self, n: Notification) -> None:
        if n.origin != Origin.LOCAL or n.task is None:
            return
        kind = _KIND_FOR_EVENT.get(n.kind)
        if kind is None:
            return
        self.enqueue(OfflineOperation.for_task(kind, n.task))

    def enqueue(self, operation: OfflineOperation) -> None:
        self._queue.append(operation)
        self._save_queue()
        logger.debug(
            "Queued %s for task %s (queued=%d)", operation.kind.value, operation.task_id, len(self._queue)
        )
        if self.is_online:
            self._kick()

    def _save_queue(self) -> None:
        try:
            self._queue.save()
        except StorageFullError as e:
            self._events.emit(Notification(kind=EventKind.STORAGE_ERROR, error=e))

    def _kick(self) -> None:
        if not self._auto_flush:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: the periodic runner or an explicit flush picks it up.
            return
        if self._kick_task is not None and not self._kick_task.done():
            self._rerun = True
            return
        self._kick_task = loop.create_task(self._kick_flush())

    async def _kick_flush(self) -> None:
        while True:
            self._rerun = False
            try:
                await self.flush_queue()
            except Exception:
                logger.exception("Background sync failed")
            if not self._rerun or not self.is_online:
                return

    # ---- sync round ----

    async def flush_queue(self) -> SyncReport:
        """Replay queued operations in FIFO order, then pull remote-only changes."""
        report = SyncReport()
        if not self.is_online:
            report.skipped = True
            return report

        async with self._lock:
            await self._replay(report)
            if self.is_online:
                await self._pull(report)

        logger.info("Sync round finished: %s", report.summary())
        self._events.emit(Notification(kind=EventKind.SYNC_COMPLETED, detail=report))
        return report

    async def _replay(self, report: SyncReport) -> None:
        blocked = self._queue.held_task_ids()

        for op in self._queue.pending():
            if not self.is_online:
                break
            if op.task_id in blocked:
                report.deferred += 1
                continue

            op.state = OperationState.IN_FLIGHT
            try:
                result = await self._push(op)
            except SyncConflictError as e:
                self._record_conflict(op, e)
                blocked.add(op.task_id)
                report.conflicted += 1
            except TransientNetworkError as e:
                op.retry_count += 1
                blocked.add(op.task_id)
                if op.retry_count >= self._max_attempts:
                    self._abandon(op, e)
                    report.abandoned += 1
                else:
                    op.state = OperationState.PENDING
                    report.retried += 1
                    logger.info(
                        "Transient failure for %s task=%s (attempt %d/%d): %s",
                        op.kind.value,
                        op.task_id,
                        op.retry_count,
                        self._max_attempts,
                        e,
                    )
            except RemoteRejectedError as e:
                self._abandon(op, e)
                report.abandoned += 1
            else:
                op.state = OperationState.ACKNOWLEDGED
                self._queue.remove(op.id)
                self._store.acknowledge_version(op.task_id, result.version)
                report.acknowledged += 1
            finally:
                self._save_queue()

    async def _push(self, op: OfflineOperation) -> Task:
        local = self._store.find(op.task_id)
        expected = local.version if local is not None else op.base_version
        task = replace(op.snapshot(), version=expected)
        if op.kind == OperationKind.CREATE:
            return await self._remote.create_task(task)
        return await self._remote.update_task(task, expected_version=expected)

    def _record_conflict(self, op: OfflineOperation, err: SyncConflictError) -> ConflictRecord:
        local = self._store.find(op.task_id) or op.snapshot()
        local_version = err.expected_version if err.expected_version is not None else local.version
        remote_version = err.remote_version
        if remote_version is None:
            remote_version = err.remote_task.version if err.remote_task is not None else local_version + 1

        record = ConflictRecord(
            task_id=op.task_id,
            local_version=local_version,
            remote_version=remote_version,
            local_task=local,
            remote_task=err.remote_task,
            operation_id=op.id,
        )
        err.record = record
        op.state = OperationState.CONFLICTED
        self._queue.add_conflict(record)
        logger.warning(
            "Conflict on task %s: local v%d, remote v%d (%s held)",
            op.task_id,
            local_version,
            remote_version,
            op.kind.value,
        )
        self._events.emit(
            Notification(kind=EventKind.SYNC_CONFLICT, task=local, error=err, detail=record)
        )
        return record

    def _abandon(self, op: OfflineOperation, err: Exception) -> None:
        op.state = OperationState.ABANDONED
        self._queue.remove(op.id)
        logger.warning(
            "Abandoned %s for task %s after %d attempt(s): %s",
            op.kind.value,
            op.task_id,
            max(1, op.retry_count),
            err,
        )
        self._events.emit(Notification(kind=EventKind.SYNC_WARNING, error=err, detail=op))

    async def _pull(self, report: SyncReport) -> None:
        try:
            changes = await self._remote.fetch_changes(self._queue.cursor)
        except (TransientNetworkError, RemoteRejectedError) as e:
            logger.warning("Pull failed: %s", e)
            self._events.emit(Notification(kind=EventKind.SYNC_WARNING, error=e))
            return

        for remote in changes.tasks:
            # Local edits still queued win the race: they get pushed and version-checked.
            # The cursor moves past this change anyway, so the task is re-fetched later.
            if self._is_busy(remote.id):
                self._queue.mark_stale(remote.id)
                continue
            self._queue.clear_stale(remote.id)
            if self._apply_if_newer(remote):
                report.pulled += 1

        self._queue.cursor = changes.cursor
        await self._refresh_stale(report)
        self._save_queue()

    def _is_busy(self, task_id: str) -> bool:
        return self._queue.has_task(task_id) or self._queue.conflict_for(task_id) is not None

    def _apply_if_newer(self, remote: Task) -> bool:
        local = self._store.find(remote.id)
        if local is not None and remote.version <= local.version:
            return False
        try:
            applied = self._store.apply_remote(remote)
        except ValidationError as e:
            logger.warning("Ignoring remote task %s: %s", remote.id, e)
            return False
        return applied is not None

    async def _refresh_stale(self, report: SyncReport) -> None:
        """
        Re-fetch tasks whose remote changes a pull skipped, once nothing local is
        queued or conflicted for them (acknowledged, abandoned or resolved).
        """
        for task_id in self._queue.stale_task_ids():
            if self._is_busy(task_id):
                continue
            try:
                remote = await self._remote.get_task(task_id)
            except TransientNetworkError as e:
                logger.info("Refresh of task %s deferred: %s", task_id, e)
                return
            except RemoteRejectedError as e:
                logger.warning("Refresh of task %s failed: %s", task_id, e)
                self._queue.clear_stale(task_id)
                continue
            self._queue.clear_stale(task_id)
            if remote is not None and self._apply_if_newer(remote):
                report.pulled += 1

    # ---- conflict resolution ----

    async def resolve_conflict(
        self,
        record: ConflictRecord,
        strategy: ResolutionStrategy | str,
        merge: MergeFunction | None = None,
    ) -> Task:
        """
        Resolve a recorded conflict.

        - use_local: push the current local task over the remote copy
          (expectedVersion = remote version, so the version advances past it),
        - use_remote: overwrite the local task with the current remote copy via the Task Store
          (the copy recorded with the conflict when the remote is unreachable),
        - merge: apply `merge(local, remote)` (or the engine's configured merge) and push
          the result. If no function is supplied, last_writer_wins_merge is used:
          each differing field is taken from the copy that changed it last.
          This fallback is logged as a warning.

        Push strategies need connectivity (TransientNetworkError otherwise). A new 409 replaces
        the record and raises SyncConflictError. On success the conflict is cleared and the
        task's held operations are dropped: the resolved copy supersedes them.
        """
        strategy = ResolutionStrategy(strategy)
        current = self._queue.conflict_for(record.task_id) or record
        task_id = current.task_id

        if strategy == ResolutionStrategy.USE_REMOTE:
            remote = await self._latest_remote_copy(current)
            applied = self._store.apply_remote(remote)
            self._finish_resolution(task_id, strategy)
            return applied or remote

        if not self.is_online:
            raise TransientNetworkError("Cannot push a conflict resolution while offline")

        local = self._store.find(task_id) or current.local_task
        if strategy == ResolutionStrategy.USE_LOCAL:
            candidate = local
        else:
            remote = current.remote_task or await self._fetch_remote_copy(task_id)
            merge_fn = merge or self._merge
            if merge_fn is None:
                logger.warning(
                    "No merge function supplied for task %s; applying last-writer-wins per field", task_id
                )
                merge_fn = last_writer_wins_merge
            candidate = merge_fn(local, remote)
            if candidate.id != task_id:
                raise ValidationError("merge function must return the same task id")
        normalize_task_text(candidate.text)

        async with self._lock:
            try:
                pushed = await self._remote.update_task(
                    replace(candidate, version=current.remote_version),
                    expected_version=current.remote_version,
                )
            except SyncConflictError as e:
                op_id = current.operation_id
                renewed = ConflictRecord(
                    task_id=task_id,
                    local_version=current.remote_version,
                    remote_version=e.remote_version or current.remote_version + 1,
                    local_task=candidate,
                    remote_task=e.remote_task,
                    operation_id=op_id,
                )
                e.record = renewed
                self._queue.add_conflict(renewed)
                self._save_queue()
                self._events.emit(
                    Notification(kind=EventKind.SYNC_CONFLICT, task=local, error=e, detail=renewed)
                )
                raise

        if strategy == ResolutionStrategy.USE_LOCAL:
            result = self._store.acknowledge_version(task_id, pushed.version) or pushed
        else:
            result = self._store.apply_remote(pushed) or pushed
        self._finish_resolution(task_id, strategy)
        return result

    async def _latest_remote_copy(self, record: ConflictRecord) -> Task:
        """The remote copy as of now when reachable; the one captured with the conflict otherwise."""
        if self.is_online:
            try:
                remote = await self._remote.get_task(record.task_id)
            except TransientNetworkError as e:
                logger.info("Using the recorded remote copy of task %s: %s", record.task_id, e)
            else:
                if remote is not None:
                    return remote
        if record.remote_task is not None:
            return record.remote_task
        return await self._fetch_remote_copy(record.task_id)

    async def _fetch_remote_copy(self, task_id: str) -> Task:
        if not self.is_online:
            raise TransientNetworkError("Remote copy unavailable while offline")
        remote = await self._remote.get_task(task_id)
        if remote is None:
            raise RemoteRejectedError(f"Remote task {task_id} no longer exists", 404)
        return remote

    def _finish_resolution(self, task_id: str, strategy: ResolutionStrategy) -> None:
        self._queue.clear_conflict(task_id)
        dropped = self._queue.drop_task(task_id)
        self._save_queue()
        logger.info(
            "Conflict on task %s resolved with %s (%d held operation(s) dropped)",
            task_id,
            strategy.value,
            dropped,
        )

    # ---- periodic sync ----

    async def run(self, *, interval_seconds: float | None = None) -> None:
        """
        Periodic sync loop.

        Every interval: probe connectivity while offline (if enabled), then flush the
        queue and pull while online. To stop, cancel the coroutine/task.
        """
        sleep_s = max(0.01, float(interval_seconds if interval_seconds is not None else self._interval))

        while True:
            try:
                if not self.is_online and self._probe:
                    await self.check_connectivity()
                if self.is_online:
                    await self.flush_queue()
            except Exception:
                logger.exception("Periodic sync failed")

            await asyncio.sleep(sleep_s)

    def start(self) -> asyncio.Task[None]:
        if self._runner is None or self._runner.done():
            self._runner = asyncio.get_running_loop().create_task(self.run())
        return self._runner

    async def stop(self) -> None:
        for task in (self._runner, self._kick_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._runner = None
        self._kick_task = None
