# src/taskkeep/core/state.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..core.events import EventBus
from ..storage.gateway import PersistenceGateway
from ..sync.remote_client import HttpRemoteTaskService
from ..sync.sync_engine import SyncEngine
from ..tasks.task_store import TaskStore
from .ports import KeyValueStore


@dataclass
class AppState:
    # Store Settings on the state for easy access in other modules later.
    settings: Any

    kv: KeyValueStore
    gateway: PersistenceGateway
    events: EventBus
    task_store: TaskStore

    sync_engine: SyncEngine | None = None
    remote: HttpRemoteTaskService | Any | None = None

    # Task ids in the order the last /list printed them (1-based references in commands).
    last_listing: list[str] = field(default_factory=list)
