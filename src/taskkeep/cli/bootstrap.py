# src/taskkeep/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires host store -> gateway -> task store -> sync engine into AppState.

Every component is an explicit instance built here; nothing lives in module globals,
so tests can build several independent states side by side.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from ..config import get_settings
from ..core.events import EventBus
from ..core.ports import KeyValueStore, RemoteTaskService
from ..core.state import AppState
from ..storage.gateway import PersistenceGateway
from ..storage.kv_store import SQLiteKeyValueStore
from ..sync.remote_client import HttpRemoteTaskService
from ..sync.sync_engine import SyncEngine
from ..tasks.task_store import TaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.kv_db_path.parent.mkdir(parents=True, exist_ok=True)


def _build_remote(settings) -> RemoteTaskService | None:
    try:
        return HttpRemoteTaskService(
            settings.remote_base_url,
            api_token=settings.remote_api_token,
            connect_timeout_seconds=settings.remote_connect_timeout_seconds,
            read_timeout_seconds=settings.remote_read_timeout_seconds,
        )
    except ValueError as e:
        logger.warning("Sync is enabled but the remote is not configured (%s); running local-only.", e)
        return None


def create_initial_state(
    *,
    settings=None,
    kv: KeyValueStore | None = None,
    remote: RemoteTaskService | None = None,
) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings(). `kv` and `remote` override the
    concrete host store and remote service.
    """
    if settings is None:
        settings = get_settings()

    if kv is None:
        _ensure_local_dirs(settings)
        kv = SQLiteKeyValueStore(settings.kv_db_path, capacity_bytes=settings.storage_capacity_bytes)

    events = EventBus()
    gateway = PersistenceGateway(
        kv,
        storage_key=settings.storage_key,
        cache_ttl_seconds=settings.cache_ttl_seconds,
        debounce_seconds=settings.write_debounce_ms / 1000.0,
        events=events,
    )
    task_store = TaskStore(gateway, events=events, retention=timedelta(days=settings.retention_days))

    sync_engine: SyncEngine | None = None
    if settings.sync_enabled:
        if remote is None:
            remote = _build_remote(settings)
        if remote is not None:
            sync_engine = SyncEngine(
                task_store,
                gateway,
                remote,
                events=events,
                interval_seconds=settings.sync_interval_seconds,
                max_attempts=settings.sync_max_attempts,
            )

    return AppState(
        settings=settings,
        kv=kv,
        gateway=gateway,
        events=events,
        task_store=task_store,
        sync_engine=sync_engine,
        remote=remote,
    )
