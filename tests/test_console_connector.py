# tests/test_console_connector.py

from __future__ import annotations

import builtins

import pytest

from taskkeep.connectors.console_connector import describe_notification, run_console_loop
from taskkeep.core.errors import StorageFullError
from taskkeep.core.events import EventKind, Notification, Origin
from taskkeep.sync.sync_models import ConnectivityState


def test_describe_notification(store) -> None:
    t = store.create("pay rent")
    assert describe_notification(Notification(EventKind.CREATED, t)) is None
    assert "another device" in describe_notification(Notification(EventKind.UPDATED, t, Origin.REMOTE))
    assert "restored from another device" in describe_notification(Notification(EventKind.RESTORED, t, Origin.REMOTE))
    assert describe_notification(Notification(EventKind.RESTORED, t)) is None
    assert describe_notification(Notification(EventKind.STORAGE_ERROR, error=StorageFullError())).startswith(
        "[STORAGE] Local storage is full"
    )
    assert "'pay rent'" in describe_notification(Notification(EventKind.SYNC_CONFLICT, t))
    assert describe_notification(Notification(EventKind.CONNECTIVITY, detail=ConnectivityState.ONLINE)) == (
        "[SYNC] Connection is now online."
    )


@pytest.mark.asyncio
async def test_console_loop_adds_bare_text_and_exits(state, monkeypatch, capsys) -> None:
    lines = iter(["water plants", "", "/list", "/exit", "never read"])
    monkeypatch.setattr(builtins, "input", lambda prompt="": next(lines))

    await run_console_loop(state)

    out = capsys.readouterr().out
    assert "Added: water plants" in out
    assert "1. [ ] water plants" in out
    assert [t.text for t in state.task_store.list_active()] == ["water plants"]
    assert len(state.events) == 0


@pytest.mark.asyncio
async def test_console_loop_stops_on_eof(state, monkeypatch) -> None:
    def eof(prompt: str = "") -> str:
        raise EOFError

    monkeypatch.setattr(builtins, "input", eof)
    await run_console_loop(state)
