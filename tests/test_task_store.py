# tests/test_task_store.py

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from taskkeep.core.errors import NotFoundError, ValidationError
from taskkeep.core.events import EventKind, Origin
from taskkeep.storage.gateway import PersistenceGateway, decode_envelope
from taskkeep.tasks.task_models import Task
from taskkeep.tasks.task_store import TaskStore


def test_create_rejects_invalid_text_without_persisting(store, kv) -> None:
    with pytest.raises(ValidationError):
        store.create("   ")
    with pytest.raises(ValidationError):
        store.create("x" * 281)
    assert store.list_active() == []
    assert kv.get_item("taskkeep.tasks") is None


def test_create_sets_defaults(store, clock) -> None:
    t = store.create("  buy milk ")
    assert t.text == "buy milk"
    assert t.completed is False
    assert t.version == 1
    assert t.created_at == t.updated_at == clock.now
    assert t.completed_at is None and t.deleted_at is None


def test_list_active_is_newest_first(store, clock) -> None:
    ids = []
    for text in ("a", "b", "c"):
        ids.append(store.create(text).id)
        clock.advance(seconds=1)
    assert [t.id for t in store.list_active()] == list(reversed(ids))


def test_equal_created_at_keeps_insertion_order_newest_first(store) -> None:
    first = store.create("first")
    second = store.create("second")
    assert first.created_at == second.created_at
    assert [t.text for t in store.list_active()] == ["second", "first"]


def test_timestamps_never_go_backwards(store, clock) -> None:
    t = store.create("task")
    clock.advance(hours=-2)
    updated = store.update(t.id, text="renamed")
    assert updated.updated_at >= t.updated_at


def test_update_merges_fields_and_tracks_completed_at(store, clock) -> None:
    t = store.create("write report")
    clock.advance(minutes=1)
    done = store.update(t.id, {"completed": True})
    assert done.completed and done.completed_at == clock.now
    assert done.text == "write report"

    clock.advance(minutes=1)
    renamed = store.update(t.id, text="write final report")
    assert renamed.completed_at == done.completed_at

    reopened = store.toggle(t.id)
    assert reopened.completed is False
    assert reopened.completed_at is None
    assert reopened.created_at == t.created_at


def test_update_rejects_unknown_fields(store) -> None:
    t = store.create("task")
    with pytest.raises(ValidationError):
        store.update(t.id, version=9)
    with pytest.raises(ValidationError):
        store.update(t.id, completed="yes")
    assert store.get(t.id) == t


def test_soft_delete_and_restore_round_trip(store, clock) -> None:
    t = store.create("call mom")
    clock.advance(seconds=5)
    store.delete(t.id)
    assert store.list_active() == []
    assert [d.id for d in store.list_deleted()] == [t.id]

    clock.advance(seconds=5)
    restored = store.restore(t.id)
    assert restored == replace(t, updated_at=restored.updated_at)
    assert restored.updated_at > t.updated_at
    assert [a.id for a in store.list_active()] == [t.id]


def test_deleted_tasks_reject_update_and_delete(store) -> None:
    t = store.create("task")
    store.delete(t.id)
    with pytest.raises(NotFoundError):
        store.update(t.id, text="new")
    with pytest.raises(NotFoundError):
        store.delete(t.id)
    with pytest.raises(NotFoundError):
        store.get(t.id)
    assert store.get(t.id, include_deleted=True).is_deleted


def test_restore_requires_a_deleted_task(store) -> None:
    t = store.create("task")
    with pytest.raises(NotFoundError):
        store.restore(t.id)
    with pytest.raises(NotFoundError):
        store.restore("missing")


def test_clear_completed_soft_deletes(store) -> None:
    a = store.create("a")
    b = store.create("b")
    store.update(a.id, completed=True)
    assert store.clear_completed() == 1
    assert [t.id for t in store.list_active()] == [b.id]
    assert store.restore(a.id).completed is True


def test_purge_removes_only_expired_deletions(store, clock, seen) -> None:
    old = store.create("old")
    recent = store.create("recent")
    store.delete(old.id)
    clock.advance(days=20)
    store.delete(recent.id)
    clock.advance(days=11)

    assert store.purge_expired_deletions() == 1
    assert store.find(old.id) is None
    assert store.find(recent.id) is not None
    with pytest.raises(NotFoundError):
        store.restore(old.id)
    assert [n.task.id for n in seen if n.kind == EventKind.PURGED] == [old.id]


def test_purge_with_custom_window(store, clock) -> None:
    t = store.create("t")
    store.delete(t.id)
    clock.advance(seconds=1)
    assert store.purge_expired_deletions(timedelta(0)) == 1
    assert len(store) == 0


def test_state_survives_restart(kv, store, clock) -> None:
    a = store.create("a")
    clock.advance(seconds=1)
    b = store.create("b")
    store.delete(a.id)

    reopened = TaskStore(PersistenceGateway(kv, debounce_seconds=0.0), clock=clock)
    assert [t.id for t in reopened.list_active()] == [b.id]
    assert reopened.find(a.id).is_deleted


def test_every_mutation_persists_the_whole_envelope(store, kv) -> None:
    store.create("a")
    store.create("b")
    env = decode_envelope(kv.get_item("taskkeep.tasks"))
    assert [t.text for t in env.tasks] == ["b", "a"]


def test_notifications_follow_mutations(store, seen) -> None:
    t = store.create("a")
    store.update(t.id, text="b")
    store.delete(t.id)
    store.restore(t.id)
    kinds = [n.kind for n in seen]
    assert kinds == [EventKind.CREATED, EventKind.UPDATED, EventKind.DELETED, EventKind.RESTORED]
    assert all(n.origin == Origin.LOCAL for n in seen)


def test_failing_listener_does_not_break_mutation(store, events) -> None:
    def boom(_n) -> None:
        raise RuntimeError("listener bug")

    events.subscribe(boom)
    t = store.create("still works")
    assert store.get(t.id).text == "still works"


# ---- sync surface ----


def test_acknowledge_version_is_monotonic_and_silent(store, seen) -> None:
    t = store.create("a")
    seen.clear()
    assert store.acknowledge_version(t.id, 4).version == 4
    assert store.acknowledge_version(t.id, 2).version == 4
    store.delete(t.id)
    assert store.acknowledge_version(t.id, 5).version == 5
    assert store.acknowledge_version("gone", 7) is None
    assert [n.kind for n in seen] == [EventKind.DELETED]


def test_apply_remote_adopts_unknown_task_in_created_order(store, clock) -> None:
    older = clock.now
    clock.advance(minutes=10)
    local = store.create("local")
    remote = Task(id="r1", text=" from phone ", created_at=older, updated_at=older, version=3)

    adopted = store.apply_remote(remote)
    assert adopted.text == "from phone"
    assert [t.id for t in store.all_tasks()] == [local.id, "r1"]


def test_apply_remote_ignores_unknown_deleted_task(store, clock) -> None:
    remote = Task(id="r1", text="x", created_at=clock.now, updated_at=clock.now, deleted_at=clock.now)
    assert store.apply_remote(remote) is None
    assert len(store) == 0


def test_apply_remote_overwrites_known_task(store, clock, seen) -> None:
    t = store.create("local text")
    clock.advance(minutes=1)
    remote = replace(t, text="remote text", completed=True, completed_at=clock.now, updated_at=clock.now, version=5)
    merged = store.apply_remote(remote)
    assert merged.text == "remote text"
    assert merged.completed and merged.version == 5
    assert seen[-1].origin == Origin.REMOTE

    stale = replace(remote, version=2, updated_at=t.updated_at)
    again = store.apply_remote(stale)
    assert again.version == 5
    assert again.updated_at == clock.now


def test_apply_remote_enforces_text_rules(store, clock) -> None:
    bad = Task(id="r1", text="", created_at=clock.now, updated_at=clock.now)
    with pytest.raises(ValidationError):
        store.apply_remote(bad)


def test_apply_remote_deletion_and_restore_emit_matching_events(store, clock, seen) -> None:
    t = store.create("t")
    clock.advance(seconds=1)
    store.apply_remote(replace(t, deleted_at=clock.now, updated_at=clock.now, version=2))
    assert seen[-1].kind == EventKind.DELETED
    clock.advance(seconds=1)
    store.apply_remote(replace(t, deleted_at=None, updated_at=clock.now, version=3))
    assert seen[-1].kind == EventKind.RESTORED
