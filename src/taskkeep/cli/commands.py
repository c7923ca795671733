# src/taskkeep/cli/commands.py

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import cast

from ..core.errors import NotFoundError, TaskKeepError
from ..core.state import AppState
from ..sync.sync_models import ConflictRecord, ResolutionStrategy
from ..tasks.task_models import Task

CommandEmitter = Callable[[str], None]
CommandResult = str | Awaitable[str]
CommandHandler2 = Callable[[AppState, list[str]], CommandResult]
CommandHandler3 = Callable[[AppState, list[str], CommandEmitter | None], CommandResult]
CommandHandler = CommandHandler2 | CommandHandler3

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by the console (/help, /add, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    async def handle(
        self,
        state: AppState,
        line: str,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        Handlers may be plain functions or coroutines. Core errors become replies.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except Exception:
            nparams = 3

        try:
            if nparams >= 3:
                result = cast(CommandHandler3, handler)(state, args, emit)
            else:
                result = cast(CommandHandler2, handler)(state, args)
            if inspect.isawaitable(result):
                result = await result
        except TaskKeepError as e:
            logger.debug("/%s failed: %s", name, e)
            return f"Error: {e}"
        return cast(str, result)

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


# ---- helpers ----


def format_task(n: int, task: Task) -> str:
    box = "[x]" if task.completed else "[ ]"
    return f"{n:>3}. {box} {task.text}  ({task.id[:8]} v{task.version})"


def _resolve_task(state: AppState, ref: str, *, deleted: bool = False) -> Task:
    """
    Accept a 1-based number (from the last listing, or the trash for deleted=True)
    or an id prefix.
    """
    store = state.task_store
    if ref.isdigit():
        if deleted:
            ids = [t.id for t in store.list_deleted()]
        else:
            ids = state.last_listing or [t.id for t in store.list_active()]
        i = int(ref) - 1
        if 0 <= i < len(ids):
            return store.get(ids[i], include_deleted=deleted)
        raise NotFoundError(ref, "is not in the list")

    pool = store.list_deleted() if deleted else store.list_active()
    matches = [t for t in pool if t.id.startswith(ref)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise NotFoundError(ref)
    raise NotFoundError(ref, f"is ambiguous ({len(matches)} matches)")


def _format_conflict(n: int, c: ConflictRecord) -> str:
    remote_text = c.remote_task.text if c.remote_task is not None else "?"
    return (
        f"{n:>3}. task {c.task_id[:8]}: local v{c.local_version} {c.local_task.text!r} "
        f"vs remote v{c.remote_version} {remote_text!r}"
    )


# ---- commands ----


def cmd_help(state: AppState, args: list[str]) -> str:
    return registry.build_help()


def cmd_add(state: AppState, args: list[str]) -> str:
    task = state.task_store.create(" ".join(args))
    return f"Added: {task.text}"


def cmd_list(state: AppState, args: list[str]) -> str:
    tasks = state.task_store.list_active()
    if args and args[0].lower() in ("open", "todo"):
        tasks = [t for t in tasks if not t.completed]
    elif args and args[0].lower() == "done":
        tasks = [t for t in tasks if t.completed]
    state.last_listing = [t.id for t in tasks]
    if not tasks:
        return "No tasks."
    return "\n".join(format_task(i, t) for i, t in enumerate(tasks, start=1))


def _set_completed(state: AppState, args: list[str], completed: bool) -> str:
    if not args:
        return "Usage: /done <n> (or /undone <n>)."
    lines = []
    for ref in args:
        task = _resolve_task(state, ref)
        task = state.task_store.update(task.id, completed=completed)
        lines.append(f"{'Completed' if completed else 'Reopened'}: {task.text}")
    return "\n".join(lines)


def cmd_done(state: AppState, args: list[str]) -> str:
    return _set_completed(state, args, True)


def cmd_undone(state: AppState, args: list[str]) -> str:
    return _set_completed(state, args, False)


def cmd_edit(state: AppState, args: list[str]) -> str:
    if len(args) < 2:
        return "Usage: /edit <n> <new text>."
    task = _resolve_task(state, args[0])
    task = state.task_store.update(task.id, text=" ".join(args[1:]))
    return f"Updated: {task.text}"


def cmd_del(state: AppState, args: list[str]) -> str:
    if not args:
        return "Usage: /del <n>."
    task = _resolve_task(state, args[0])
    state.task_store.delete(task.id)
    return f"Deleted: {task.text} (use /undo to restore)"


def cmd_undo(state: AppState, args: list[str]) -> str:
    """
    /undo      -> restore the most recently deleted task
    /undo <n>  -> restore task n from /trash
    """
    if args:
        task = _resolve_task(state, args[0], deleted=True)
    else:
        deleted = state.task_store.list_deleted()
        if not deleted:
            return "Nothing to undo."
        task = deleted[0]
    restored = state.task_store.restore(task.id)
    return f"Restored: {restored.text}"


def cmd_trash(state: AppState, args: list[str]) -> str:
    deleted = state.task_store.list_deleted()
    if not deleted:
        return "Trash is empty."
    lines = ["Deleted tasks (restore with /undo <n>):"]
    for i, t in enumerate(deleted, start=1):
        when = t.deleted_at.astimezone().strftime("%Y-%m-%d %H:%M") if t.deleted_at else "?"
        lines.append(f"{i:>3}. {t.text}  (deleted {when})")
    return "\n".join(lines)


def cmd_purge(state: AppState, args: list[str]) -> str:
    """
    /purge        -> remove deleted tasks older than the retention window
    /purge <days> -> custom window (0 empties the trash)
    """
    retention = None
    if args:
        try:
            retention = timedelta(days=max(0.0, float(args[0])))
        except ValueError:
            return "Usage: /purge [days]."
    n = state.task_store.purge_expired_deletions(retention)
    return f"Permanently removed {n} task(s)."


def cmd_clear(state: AppState, args: list[str]) -> str:
    n = state.task_store.clear_completed()
    return f"Deleted {n} completed task(s) (use /undo to restore)."


def cmd_stats(state: AppState, args: list[str]) -> str:
    stats = state.gateway.get_usage_stats()
    if not stats.ok:
        return "Storage stats unavailable."
    active = state.task_store.list_active()
    done = sum(1 for t in active if t.completed)
    return (
        "Storage:\n"
        f"  Tasks: {len(active)} active ({done} done), {len(state.task_store.list_deleted())} in trash\n"
        f"  Used: {stats.used_bytes} / {stats.estimated_capacity_bytes} bytes ({stats.used_ratio:.1%})\n"
        f"  Envelope: {stats.envelope_bytes} bytes"
    )


def cmd_status(state: AppState, args: list[str]) -> str:
    engine = state.sync_engine
    if engine is None:
        return "Status:\n  Sync: disabled (local-only)"
    return (
        "Status:\n"
        f"  Sync: {engine.state.value}\n"
        f"  Queued operations: {len(engine.pending_operations())}\n"
        f"  Open conflicts: {len(engine.conflicts())}"
    )


async def cmd_sync(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    engine = state.sync_engine
    if engine is None:
        return "Sync is disabled."
    if not engine.is_online:
        if emit:
            emit("[SYNC] Offline; probing remote...")
        if not await engine.check_connectivity():
            return "Remote is unreachable; changes stay queued."
    report = await engine.flush_queue()
    return f"Sync: {report.summary()}"


def cmd_online(state: AppState, args: list[str]) -> str:
    engine = state.sync_engine
    if engine is None:
        return "Sync is disabled."
    engine.set_online()
    return "Marked online."


def cmd_offline(state: AppState, args: list[str]) -> str:
    engine = state.sync_engine
    if engine is None:
        return "Sync is disabled."
    engine.set_offline()
    return "Marked offline; changes will be queued."


def cmd_conflicts(state: AppState, args: list[str]) -> str:
    engine = state.sync_engine
    if engine is None:
        return "Sync is disabled."
    conflicts = engine.conflicts()
    if not conflicts:
        return "No conflicts."
    return "\n".join(_format_conflict(i, c) for i, c in enumerate(conflicts, start=1))


async def cmd_resolve(state: AppState, args: list[str]) -> str:
    """/resolve <n> local|remote|merge"""
    engine = state.sync_engine
    if engine is None:
        return "Sync is disabled."
    if len(args) != 2 or not args[0].isdigit():
        return "Usage: /resolve <n> local|remote|merge."
    conflicts = engine.conflicts()
    i = int(args[0]) - 1
    if not 0 <= i < len(conflicts):
        return f"No conflict #{args[0]}. Use /conflicts."
    strategies = {
        "local": ResolutionStrategy.USE_LOCAL,
        "remote": ResolutionStrategy.USE_REMOTE,
        "merge": ResolutionStrategy.MERGE,
    }
    strategy = strategies.get(args[1].lower())
    if strategy is None:
        return "Strategy must be one of: local, remote, merge."
    task = await engine.resolve_conflict(conflicts[i], strategy)
    note = " (last-writer-wins per field)" if strategy == ResolutionStrategy.MERGE else ""
    return f"Resolved with {strategy.value}{note}: {task.text} v{task.version}"


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("add", cmd_add, help_text="Add a task: /add <text>.", aliases=["a"])
registry.register("list", cmd_list, help_text="List tasks: /list [open|done].", aliases=["ls", "l"])
registry.register("done", cmd_done, help_text="Complete tasks: /done <n> [<n> ...].")
registry.register("undone", cmd_undone, help_text="Reopen tasks: /undone <n> [<n> ...].")
registry.register("edit", cmd_edit, help_text="Change task text: /edit <n> <text>.")
registry.register("del", cmd_del, help_text="Delete a task (undoable): /del <n>.", aliases=["rm"])
registry.register("undo", cmd_undo, help_text="Restore the last deleted task, or /undo <n> from /trash.")
registry.register("trash", cmd_trash, help_text="List deleted tasks.")
registry.register("purge", cmd_purge, help_text="Permanently remove old deleted tasks: /purge [days].")
registry.register("clear", cmd_clear, help_text="Delete all completed tasks (undoable).")
registry.register("stats", cmd_stats, help_text="Show storage usage.")
registry.register("status", cmd_status, help_text="Show sync state, queue size and conflicts.")
registry.register("sync", cmd_sync, help_text="Sync now.")
registry.register("online", cmd_online, help_text="Mark the connection as online.")
registry.register("offline", cmd_offline, help_text="Mark the connection as offline.")
registry.register("conflicts", cmd_conflicts, help_text="List unresolved sync conflicts.")
registry.register("resolve", cmd_resolve, help_text="Resolve a conflict: /resolve <n> local|remote|merge.")
