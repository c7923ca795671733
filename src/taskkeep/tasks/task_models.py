# src/taskkeep/tasks/task_models.py

"""
Task data model and the persisted envelope codec.

Wire layout (compatible across schema revisions via additive fields only):

    {
      "schemaVersion": "1",
      "lastModified": "2025-01-01T12:00:00Z",
      "tasks": [
        {"id": "...", "text": "...", "completed": false,
         "createdAt": "...", "updatedAt": "...", "version": 1,
         "completedAt": "...", "deletedAt": "..."}
      ]
    }

Optional fields (completedAt, deletedAt) are omitted when unset, never serialized as null.
Unknown keys are ignored on read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from ..core.errors import CorruptedStateError

SCHEMA_VERSION = "1"


def utc_now() -> datetime:
    return datetime.now(UTC)


def format_timestamp(ts: datetime) -> str:
    """ISO-8601 in UTC with a trailing Z; keeps microseconds so round-trips are exact."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_timestamp(raw: Any, *, field_name: str = "timestamp") -> datetime:
    if not isinstance(raw, str) or not raw.strip():
        raise CorruptedStateError(f"{field_name} must be an ISO-8601 string, got {raw!r}")
    s = raw.strip()
    if s.endswith(("Z", "z")):
        s = s[:-1] + "+00:00"
    try:
        ts = datetime.fromisoformat(s)
    except ValueError as e:
        raise CorruptedStateError(f"{field_name} is not ISO-8601: {raw!r}") from e
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def _schema_major(version: str) -> str:
    return version.split(".", 1)[0].strip()


@dataclass(frozen=True, slots=True)
class Task:
    id: str
    text: str
    created_at: datetime
    updated_at: datetime
    completed: bool = False
    version: int = 1
    completed_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "text": self.text,
            "completed": self.completed,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "version": self.version,
        }
        if self.completed_at is not None:
            out["completedAt"] = format_timestamp(self.completed_at)
        if self.deleted_at is not None:
            out["deletedAt"] = format_timestamp(self.deleted_at)
        return out

    @classmethod
    def from_dict(cls, data: Any) -> Task:
        """
        Structural validation of one serialized task.

        Raises CorruptedStateError on any shape problem. Text content rules
        (length, control chars) are enforced by the Task Store, not here.
        """
        if not isinstance(data, dict):
            raise CorruptedStateError(f"task must be an object, got {type(data).__name__}")

        task_id = data.get("id")
        if not isinstance(task_id, str) or not task_id:
            raise CorruptedStateError(f"task id must be a non-empty string, got {task_id!r}")

        text = data.get("text")
        if not isinstance(text, str):
            raise CorruptedStateError(f"task {task_id}: text must be a string")

        completed = data.get("completed", False)
        if not isinstance(completed, bool):
            raise CorruptedStateError(f"task {task_id}: completed must be a boolean")

        version = data.get("version", 1)
        # bool is an int subclass; reject it explicitly.
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise CorruptedStateError(f"task {task_id}: version must be an integer >= 1")

        created_at = parse_timestamp(data.get("createdAt"), field_name=f"task {task_id} createdAt")
        updated_at = parse_timestamp(data.get("updatedAt"), field_name=f"task {task_id} updatedAt")
        if updated_at < created_at:
            raise CorruptedStateError(f"task {task_id}: updatedAt precedes createdAt")

        completed_at = None
        if data.get("completedAt") is not None:
            completed_at = parse_timestamp(data["completedAt"], field_name=f"task {task_id} completedAt")

        deleted_at = None
        if data.get("deletedAt") is not None:
            deleted_at = parse_timestamp(data["deletedAt"], field_name=f"task {task_id} deletedAt")

        return cls(
            id=task_id,
            text=text,
            created_at=created_at,
            updated_at=updated_at,
            completed=completed,
            version=version,
            completed_at=completed_at,
            deleted_at=deleted_at,
        )


@dataclass(frozen=True, slots=True)
class TaskEnvelope:
    """The unit that is actually persisted. Always written whole."""

    last_modified: datetime
    tasks: tuple[Task, ...] = ()
    schema_version: str = SCHEMA_VERSION

    @classmethod
    def empty(cls) -> TaskEnvelope:
        return cls(last_modified=utc_now())

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "lastModified": format_timestamp(self.last_modified),
            "tasks": [t.to_dict() for t in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: Any) -> TaskEnvelope:
        if not isinstance(data, dict):
            raise CorruptedStateError("envelope must be a JSON object")

        schema_version = data.get("schemaVersion")
        if not isinstance(schema_version, str) or not schema_version.strip():
            raise CorruptedStateError(f"schemaVersion must be a string, got {schema_version!r}")
        if _schema_major(schema_version) != _schema_major(SCHEMA_VERSION):
            raise CorruptedStateError(
                f"unsupported schemaVersion {schema_version!r} (reader understands {SCHEMA_VERSION!r})"
            )

        raw_tasks = data.get("tasks")
        if not isinstance(raw_tasks, list):
            raise CorruptedStateError("tasks must be a list")

        tasks = tuple(Task.from_dict(item) for item in raw_tasks)
        seen: set[str] = set()
        for t in tasks:
            if t.id in seen:
                raise CorruptedStateError(f"duplicate task id {t.id}")
            seen.add(t.id)

        return cls(
            last_modified=parse_timestamp(data.get("lastModified"), field_name="lastModified"),
            tasks=tasks,
            schema_version=schema_version,
        )


@dataclass(frozen=True, slots=True)
class UsageStats:
    """Best-effort size accounting for observability only."""

    used_bytes: int = 0
    estimated_capacity_bytes: int = 0
    envelope_bytes: int = 0
    ok: bool = True

    @property
    def used_ratio(self) -> float:
        if self.estimated_capacity_bytes <= 0:
            return 0.0
        return self.used_bytes / self.estimated_capacity_bytes


@dataclass(frozen=True, slots=True)
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
