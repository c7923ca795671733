# src/taskkeep/connectors/console_connector.py

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from ..cli.commands import registry as command_registry
from ..core.events import TASK_EVENTS, EventKind, Notification, Origin
from ..core.state import AppState

logger = logging.getLogger(__name__)

_NOTICE_KINDS = frozenset(
    {EventKind.STORAGE_ERROR, EventKind.SYNC_CONFLICT, EventKind.SYNC_WARNING, EventKind.CONNECTIVITY}
)


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _print_ts(text: str) -> None:
    print(f"[{_ts_local()}] {text}", flush=True)


def describe_notification(n: Notification) -> str | None:
    """Short user-facing line for background events; None for plain task events."""
    if n.kind not in _NOTICE_KINDS:
        if n.kind in TASK_EVENTS and n.origin == Origin.REMOTE:
            text = n.task.text if n.task is not None else "?"
            return f"[SYNC] {n.kind.value} from another device: {text}"
        return None
    if n.kind == EventKind.STORAGE_ERROR:
        return f"[STORAGE] {n.error}"
    if n.kind == EventKind.SYNC_CONFLICT:
        text = n.task.text if n.task is not None else "?"
        return f"[SYNC] Conflict on {text!r}. Use /conflicts and /resolve."
    if n.kind == EventKind.SYNC_WARNING:
        return f"[SYNC] {n.error}"
    return f"[SYNC] Connection is now {n.detail}."


async def run_console_loop(state: AppState) -> None:
    logger.info("Console connector started.")
    _print_ts("[CONSOLE] Type a task to add it. Use /help for commands. Use /exit to quit.\n")

    def on_event(n: Notification) -> None:
        line = describe_notification(n)
        if line:
            _print_ts(line)

    unsubscribe = state.events.subscribe(on_event)

    def emit(text: str) -> None:
        _print_ts(text)

    try:
        while True:
            try:
                user_input = (await asyncio.to_thread(input, ">>> ")).strip()
            except EOFError:
                logger.info("Console EOF received, exiting.")
                break
            except KeyboardInterrupt:
                logger.info("Console KeyboardInterrupt, exiting.")
                print()
                break

            if not user_input:
                continue

            if user_input.lower() in ("/exit", "/quit"):
                logger.info("Console exit command received.")
                break

            # Bare text is a new task.
            line = user_input if user_input.startswith("/") else f"/add {user_input}"

            try:
                reply = await command_registry.handle(state, line, emit=emit)
            except Exception:
                logger.exception("Command handler crashed.")
                reply = "Internal error while handling a command."

            if reply is not None:
                print(f"[{_ts_local()}] {reply}")
    finally:
        unsubscribe()

    logger.info("Console connector finished.")
