# tests/test_gateway.py

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from taskkeep.core.errors import StorageFullError
from taskkeep.core.events import EventBus, EventKind
from taskkeep.storage.gateway import PersistenceGateway, decode_envelope, encode_envelope
from taskkeep.storage.kv_store import MemoryKeyValueStore
from taskkeep.tasks.task_models import Task, TaskEnvelope
from taskkeep.tasks.task_store import TaskStore

from .fakes import BrokenStatsStore, FakeClock, FakeMonotonic, ScriptedQuotaStore

KEY = "taskkeep.tasks"


def _envelope(clock: FakeClock, *texts: str) -> TaskEnvelope:
    tasks = tuple(
        Task(id=f"t{i}", text=text, created_at=clock.now, updated_at=clock.now) for i, text in enumerate(texts)
    )
    return TaskEnvelope(last_modified=clock.now, tasks=tasks)


def test_missing_key_reads_as_empty(gateway) -> None:
    env = gateway.read()
    assert env.tasks == ()
    assert env.schema_version == "1"


def test_read_cache_honours_ttl(kv, clock) -> None:
    mono = FakeMonotonic()
    gw = PersistenceGateway(kv, cache_ttl_seconds=5.0, clock=mono)
    kv.set_item(KEY, encode_envelope(_envelope(clock, "a")))
    assert [t.text for t in gw.read().tasks] == ["a"]

    # Changed underneath: still served from cache while fresh.
    kv.set_item(KEY, encode_envelope(_envelope(clock, "a", "b")))
    mono.advance(4.9)
    assert len(gw.read().tasks) == 1

    mono.advance(0.2)
    assert len(gw.read().tasks) == 2


@pytest.mark.parametrize(
    "payload",
    ["{not json", '{"schemaVersion": "1", "lastModified": "2025-01-01T00:00:00Z", "tasks": [{"id": 5}]}', "[]"],
    ids=["invalid-json", "bad-task", "not-an-object"],
)
def test_corrupted_envelope_reads_as_empty_and_is_backed_up(kv, events, seen, payload) -> None:
    kv.set_item(KEY, payload)
    gw = PersistenceGateway(kv, events=events)

    env = gw.read()
    assert env.tasks == ()
    assert kv.get_item(KEY + ".corrupt") == payload
    assert [n.kind for n in seen] == [EventKind.STORAGE_ERROR]
    assert seen[0].detail == {"backup_key": KEY + ".corrupt"}


def test_store_starts_empty_after_corruption(kv, events, clock) -> None:
    kv.set_item(KEY, "\x00garbage")
    store = TaskStore(PersistenceGateway(kv, events=events), events=events, clock=clock)
    assert store.list_active() == []
    t = store.create("fresh start")
    assert decode_envelope(kv.get_item(KEY)).tasks[0].id == t.id


@pytest.mark.asyncio
async def test_writes_are_debounced_and_reads_see_latest(clock) -> None:
    kv = MemoryKeyValueStore()
    gw = PersistenceGateway(kv, debounce_seconds=0.02)

    for n in range(1, 4):
        gw.write(_envelope(clock, *[f"task {i}" for i in range(n)]))

    assert len(gw.read().tasks) == 3
    assert kv.get_item(KEY) is None
    assert gw.has_pending_write

    await asyncio.sleep(0.15)
    assert gw.physical_writes == 1
    assert len(decode_envelope(kv.get_item(KEY)).tasks) == 3
    assert not gw.has_pending_write


@pytest.mark.asyncio
async def test_pending_write_wins_over_expired_cache(clock) -> None:
    kv = MemoryKeyValueStore()
    mono = FakeMonotonic()
    gw = PersistenceGateway(kv, cache_ttl_seconds=1.0, debounce_seconds=10.0, clock=mono)
    gw.write(_envelope(clock, "unsaved"))
    mono.advance(60)
    assert [t.text for t in gw.read().tasks] == ["unsaved"]
    await gw.flush()
    assert gw.physical_writes == 1


@pytest.mark.asyncio
async def test_quota_failure_purges_and_retries_exactly_once(events, clock) -> None:
    kv = ScriptedQuotaStore()
    gw = PersistenceGateway(kv, debounce_seconds=10.0, events=events)
    store = TaskStore(gw, events=events, clock=clock)

    stale = store.create("long gone")
    store.delete(stale.id)
    clock.advance(days=31)
    keep = store.create("keep me")

    kv.fail_next = 1
    await gw.flush()

    assert kv.set_calls == 2
    assert kv.failures == 1
    persisted = decode_envelope(kv.get_item(KEY))
    assert [t.id for t in persisted.tasks] == [keep.id]
    assert store.find(stale.id) is None


@pytest.mark.asyncio
async def test_quota_failure_with_nothing_to_purge_is_storage_full(events, clock) -> None:
    kv = ScriptedQuotaStore()
    gw = PersistenceGateway(kv, debounce_seconds=10.0, events=events)
    store = TaskStore(gw, events=events, clock=clock)
    t = store.create("important")

    kv.fail_next = 2
    with pytest.raises(StorageFullError):
        await gw.flush()

    assert kv.set_calls == 2
    # In-memory state is intact.
    assert store.get(t.id).text == "important"
    assert kv.get_item(KEY) is None


@pytest.mark.asyncio
async def test_failed_flush_keeps_envelope_pending_for_shutdown(events, clock) -> None:
    kv = ScriptedQuotaStore()
    gw = PersistenceGateway(kv, debounce_seconds=10.0, events=events)
    store = TaskStore(gw, events=events, clock=clock)
    t = store.create("important")

    kv.fail_next = 2
    with pytest.raises(StorageFullError):
        await gw.flush()
    assert gw.has_pending_write

    await gw.aclose()

    assert not gw.has_pending_write
    assert [x.id for x in decode_envelope(kv.get_item(KEY)).tasks] == [t.id]


def test_blocking_failure_is_retried_by_next_flush(events, seen, clock) -> None:
    kv = ScriptedQuotaStore()
    gw = PersistenceGateway(kv, events=events)
    store = TaskStore(gw, events=events, clock=clock)

    kv.fail_next = 2
    t = store.create("important")
    assert isinstance(seen[-2].error, StorageFullError)
    assert kv.get_item(KEY) is None
    assert gw.has_pending_write

    gw.flush_now()

    assert [x.text for x in decode_envelope(kv.get_item(KEY)).tasks] == ["important"]
    assert store.get(t.id).text == "important"


@pytest.mark.asyncio
async def test_debounced_storage_full_becomes_notification(clock) -> None:
    events = EventBus()
    errors = []
    events.subscribe(lambda n: errors.append(n) if n.kind == EventKind.STORAGE_ERROR else None)
    kv = ScriptedQuotaStore()
    gw = PersistenceGateway(kv, debounce_seconds=0.0, events=events)

    kv.fail_next = 2
    gw.write(_envelope(clock, "a"))
    await asyncio.sleep(0.2)

    assert len(errors) == 1
    assert isinstance(errors[0].error, StorageFullError)
    assert "full" in str(errors[0].error).lower()


def test_blocking_path_reports_storage_full(events, seen, clock) -> None:
    kv = MemoryKeyValueStore(capacity_bytes=400)
    store = TaskStore(PersistenceGateway(kv, events=events), events=events, clock=clock)
    store.create("fits")
    big = store.create("y" * 280)

    assert isinstance(seen[-2].error, StorageFullError)
    assert store.get(big.id).text == "y" * 280
    assert len(decode_envelope(kv.get_item(KEY)).tasks) == 1


def test_blocking_path_recovers_with_purge(clock) -> None:
    kv = ScriptedQuotaStore()
    store = TaskStore(PersistenceGateway(kv), clock=clock)
    old = store.create("old")
    store.delete(old.id)
    clock.advance(days=40)

    kv.fail_next = 1
    store.create("new")
    assert [t.text for t in decode_envelope(kv.get_item(KEY)).tasks] == ["new"]


def test_usage_stats(gateway, store) -> None:
    store.create("hello")
    stats = gateway.get_usage_stats()
    assert stats.ok
    assert stats.used_bytes > 0
    assert stats.estimated_capacity_bytes == 1_000_000
    assert 0 < stats.envelope_bytes <= stats.used_bytes
    assert 0.0 < stats.used_ratio < 1.0


def test_usage_stats_failure_is_not_raised() -> None:
    gw = PersistenceGateway(BrokenStatsStore())
    stats = gw.get_usage_stats()
    assert stats.ok is False


def test_documents_round_trip_and_tolerate_garbage(gateway, kv) -> None:
    gateway.save_document("doc", {"a": [1, 2]})
    assert gateway.load_document("doc") == {"a": [1, 2]}
    kv.set_item("doc", "{")
    assert gateway.load_document("doc") is None
    assert gateway.load_document("missing") is None


def test_purge_window_comes_from_store(clock) -> None:
    kv = ScriptedQuotaStore()
    store = TaskStore(PersistenceGateway(kv), clock=clock, retention=timedelta(days=1))
    t = store.create("t")
    store.delete(t.id)
    clock.advance(days=2)
    kv.fail_next = 1
    store.create("u")
    assert store.find(t.id) is None
