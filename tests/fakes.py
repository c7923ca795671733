# tests/fakes.py

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta

from taskkeep.core.errors import (
    QuotaExceededError,
    RemoteRejectedError,
    SyncConflictError,
    TransientNetworkError,
)
from taskkeep.storage.kv_store import MemoryKeyValueStore
from taskkeep.sync.sync_models import RemoteChanges
from taskkeep.tasks.task_models import Task


class FakeClock:
    """Deterministic wall clock for TaskStore (returns aware UTC datetimes)."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    """Deterministic monotonic clock for the gateway cache TTL."""

    def __init__(self) -> None:
        self.t = 1000.0

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class ScriptedQuotaStore(MemoryKeyValueStore):
    """
    MemoryKeyValueStore whose next `fail_next` writes raise QuotaExceededError,
    regardless of real size. Counts every set_item call.
    """

    def __init__(self, capacity_bytes: int = 1_000_000) -> None:
        super().__init__(capacity_bytes)
        self.fail_next = 0
        self.set_calls = 0
        self.failures = 0

    def set_item(self, key: str, value: str) -> None:
        self.set_calls += 1
        if self.fail_next > 0:
            self.fail_next -= 1
            self.failures += 1
            raise QuotaExceededError(key, self.capacity_bytes + 1, self.capacity_bytes)
        super().set_item(key, value)


class BrokenStatsStore(MemoryKeyValueStore):
    def usage_bytes(self) -> int:
        raise RuntimeError("stats backend down")


class FakeRemoteTaskService:
    """
    In-memory versioned remote service with the same contract as HttpRemoteTaskService.

    - `calls` records (method, task_id, text, expected_version) in call order,
    - `inject_conflict(task_id, on_call=n)`: the n-th push for that task first gets a
      concurrent remote edit, so it conflicts naturally,
    - `transient[task_id] = n`: the next n pushes for that task fail transiently,
    - `reachable` drives ping().
    """

    def __init__(self) -> None:
        self.tasks: dict[str, Task] = {}
        self.calls: list[tuple[str, str, str, int | None]] = []
        self.transient: dict[str, int] = {}
        self.reject: set[str] = set()
        self.reachable = True
        self._seq = 0
        self._changed_at: dict[str, int] = {}
        self._conflict_plan: dict[str, int] = {}
        self._push_count: dict[str, int] = {}

    # ---- test helpers ----

    def _touch(self, task: Task) -> Task:
        self._seq += 1
        self.tasks[task.id] = task
        self._changed_at[task.id] = self._seq
        return task

    def seed(self, task: Task) -> Task:
        return self._touch(task)

    def edit_remotely(self, task_id: str, **changes) -> Task:
        cur = self.tasks[task_id]
        edited = replace(cur, version=cur.version + 1, **changes)
        if "updated_at" not in changes:
            edited = replace(edited, updated_at=cur.updated_at + timedelta(seconds=1))
        return self._touch(edited)

    def inject_conflict(self, task_id: str, *, on_call: int = 1) -> None:
        self._conflict_plan[task_id] = self._push_count.get(task_id, 0) + on_call

    def _before_push(self, task_id: str) -> None:
        if task_id in self.reject:
            raise RemoteRejectedError(f"task {task_id} rejected", 422)
        left = self.transient.get(task_id, 0)
        if left > 0:
            self.transient[task_id] = left - 1
            raise TransientNetworkError(f"simulated outage for {task_id}")
        self._push_count[task_id] = self._push_count.get(task_id, 0) + 1
        if self._conflict_plan.get(task_id) == self._push_count[task_id] and task_id in self.tasks:
            del self._conflict_plan[task_id]
            self.edit_remotely(task_id, text=self.tasks[task_id].text + " (edited elsewhere)")

    # ---- RemoteTaskService ----

    async def fetch_changes(self, since: str | None) -> RemoteChanges:
        if not self.reachable:
            raise TransientNetworkError("unreachable")
        after = int(since or 0)
        changed = [self.tasks[i] for i, seq in sorted(self._changed_at.items(), key=lambda kv: kv[1]) if seq > after]
        return RemoteChanges(tasks=changed, cursor=str(self._seq))

    async def create_task(self, task: Task) -> Task:
        self.calls.append(("create", task.id, task.text, None))
        if not self.reachable:
            raise TransientNetworkError("unreachable")
        self._before_push(task.id)
        if task.id in self.tasks:
            cur = self.tasks[task.id]
            raise SyncConflictError(task.id, remote_version=cur.version, remote_task=cur)
        return self._touch(replace(task, version=1))

    async def update_task(self, task: Task, expected_version: int) -> Task:
        self.calls.append(("update", task.id, task.text, expected_version))
        if not self.reachable:
            raise TransientNetworkError("unreachable")
        self._before_push(task.id)
        cur = self.tasks.get(task.id)
        if cur is None:
            return self._touch(replace(task, version=1))
        if cur.version != expected_version:
            raise SyncConflictError(
                task.id, expected_version=expected_version, remote_version=cur.version, remote_task=cur
            )
        return self._touch(replace(task, version=cur.version + 1))

    async def get_task(self, task_id: str) -> Task | None:
        if not self.reachable:
            raise TransientNetworkError("unreachable")
        return self.tasks.get(task_id)

    async def ping(self) -> bool:
        return self.reachable
