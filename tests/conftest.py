# tests/conftest.py

from __future__ import annotations

from types import SimpleNamespace

import pytest

from taskkeep.cli.bootstrap import create_initial_state
from taskkeep.core.events import EventBus, Notification
from taskkeep.core.state import AppState
from taskkeep.storage.gateway import PersistenceGateway
from taskkeep.storage.kv_store import MemoryKeyValueStore
from taskkeep.tasks.task_store import TaskStore

from .fakes import FakeClock, FakeRemoteTaskService


@pytest.fixture()
def settings(tmp_path) -> SimpleNamespace:
    """
    Minimal settings object compatible with the composition root.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="taskkeep-test",
        log_level="DEBUG",
        data_dir=tmp_path,
        kv_db_path=tmp_path / "storage.sqlite3",
        storage_key="taskkeep.tasks",
        storage_capacity_bytes=1_000_000,
        cache_ttl_seconds=5.0,
        write_debounce_ms=0,
        retention_days=30,
        sync_enabled=False,
        remote_base_url="",
        remote_api_token=None,
        sync_interval_seconds=0.05,
        sync_max_attempts=3,
        remote_connect_timeout_seconds=1.0,
        remote_read_timeout_seconds=1.0,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def events() -> EventBus:
    return EventBus()


@pytest.fixture()
def seen(events: EventBus) -> list[Notification]:
    """Every notification emitted on the shared bus, in order."""
    out: list[Notification] = []
    events.subscribe(out.append)
    return out


@pytest.fixture()
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore(capacity_bytes=1_000_000)


@pytest.fixture()
def gateway(kv: MemoryKeyValueStore, events: EventBus) -> PersistenceGateway:
    return PersistenceGateway(kv, debounce_seconds=0.0, events=events)


@pytest.fixture()
def store(gateway: PersistenceGateway, events: EventBus, clock: FakeClock) -> TaskStore:
    return TaskStore(gateway, events=events, clock=clock)


@pytest.fixture()
def remote() -> FakeRemoteTaskService:
    return FakeRemoteTaskService()


@pytest.fixture()
def state(settings: SimpleNamespace) -> AppState:
    """AppState wired with an in-memory host store (sync disabled)."""
    return create_initial_state(settings=settings, kv=MemoryKeyValueStore(1_000_000))
