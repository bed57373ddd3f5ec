from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any
from uuid import uuid4

from autopilot.errors import ErrorKind


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def rank(self) -> int:
        if self is TaskStatus.PENDING:
            return 0
        if self is TaskStatus.IN_PROGRESS:
            return 1
        return 2

    @property
    def is_terminal(self) -> bool:
        return self.rank == 2


def id_sort_key(task_id: str) -> tuple[tuple[int, int | str], ...]:
    """Hierarchical id key: numeric parts compare numerically, so 2.10 sorts after 2.9."""
    parts: list[tuple[int, int | str]] = []
    for part in task_id.split("."):
        if part.isdigit():
            parts.append((0, int(part)))
        else:
            parts.append((1, part))
    return tuple(parts)


@dataclass(slots=True)
class Subtask:
    id: str
    title: str
    status: TaskStatus = TaskStatus.PENDING
    optional: bool = False
    description: list[str] = field(default_factory=list)
    requirements: list[str] = field(default_factory=list)
    line_number: int = 0

    @property
    def is_done(self) -> bool:
        return self.status in {TaskStatus.COMPLETED, TaskStatus.SKIPPED}


@dataclass(slots=True)
class Task:
    id: str
    title: str
    spec_name: str
    file_path: Path
    line_number: int
    status: TaskStatus = TaskStatus.PENDING
    description: list[str] = field(default_factory=list)
    subtasks: list[Subtask] = field(default_factory=list)
    requirements: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return task_key(self.spec_name, self.id)

    def subtask(self, subtask_id: str) -> Subtask | None:
        for subtask in self.subtasks:
            if subtask.id == subtask_id:
                return subtask
        return None

    def incomplete_required_subtasks(self) -> list[Subtask]:
        return [
            subtask
            for subtask in self.subtasks
            if not subtask.optional and subtask.status != TaskStatus.COMPLETED
        ]

    def can_complete(self) -> bool:
        return not self.incomplete_required_subtasks()

    @property
    def all_subtasks_optional(self) -> bool:
        return bool(self.subtasks) and all(subtask.optional for subtask in self.subtasks)

    def dependency_keys(self) -> list[str]:
        keys: list[str] = []
        for dep in self.dependencies:
            if ":" in dep:
                keys.append(dep)
            else:
                keys.append(task_key(self.spec_name, dep))
        return keys

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "id": self.id,
            "title": self.title,
            "spec": self.spec_name,
            "status": str(self.status),
            "line_number": self.line_number,
            "requirements": list(self.requirements),
            "dependencies": list(self.dependencies),
            "subtasks": [
                {
                    "id": subtask.id,
                    "title": subtask.title,
                    "status": str(subtask.status),
                    "optional": subtask.optional,
                }
                for subtask in self.subtasks
            ],
        }


def task_key(spec_name: str, task_id: str) -> str:
    return f"{spec_name}:{task_id}"


@dataclass(slots=True)
class Spec:
    name: str
    directory: Path
    task_file: Path
    tasks: list[Task] = field(default_factory=list)
    requirements_path: Path | None = None
    design_path: Path | None = None


@dataclass(slots=True, frozen=True)
class TaskRef:
    spec: str
    id: str

    @property
    def key(self) -> str:
        return task_key(self.spec, self.id)

    def to_dict(self) -> dict[str, str]:
        return {"spec": self.spec, "id": self.id}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskRef:
        return cls(spec=str(payload["spec"]), id=str(payload["id"]))

    @classmethod
    def of(cls, task: Task) -> TaskRef:
        return cls(spec=task.spec_name, id=task.id)


@dataclass(slots=True)
class ErrorRecord:
    kind: ErrorKind
    message: str
    at: str = field(default_factory=utcnow_iso)
    attempt: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": str(self.kind),
            "message": self.message,
            "at": self.at,
            "attempt": self.attempt,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ErrorRecord:
        try:
            kind = ErrorKind(str(payload.get("kind", "unknown")))
        except ValueError:
            kind = ErrorKind.UNKNOWN
        return cls(
            kind=kind,
            message=str(payload.get("message", "")),
            at=str(payload.get("at") or utcnow_iso()),
            attempt=int(payload.get("attempt", 0)),
        )


@dataclass(slots=True)
class RetryRecord:
    """Attempt counter and error history for one task."""

    attempts: int = 0
    errors: list[ErrorRecord] = field(default_factory=list)

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)

    def record(self, kind: ErrorKind, message: str) -> ErrorRecord:
        entry = ErrorRecord(kind=kind, message=message, attempt=self.attempts)
        self.errors.append(entry)
        return entry

    @property
    def last_error(self) -> ErrorRecord | None:
        return self.errors[-1] if self.errors else None

    def to_dict(self) -> dict[str, Any]:
        return {"attempts": self.attempts, "errors": [item.to_dict() for item in self.errors]}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RetryRecord:
        errors = payload.get("errors", [])
        return cls(
            attempts=int(payload.get("attempts", 0)),
            errors=[ErrorRecord.from_dict(item) for item in errors if isinstance(item, dict)],
        )


class SessionStatus(StrEnum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    HALTED = "halted"
    STOPPED = "stopped"

    @property
    def is_closed(self) -> bool:
        return self in {SessionStatus.COMPLETED, SessionStatus.HALTED, SessionStatus.STOPPED}


@dataclass(slots=True)
class Session:
    id: str
    workspace: str
    started_at: str
    config: dict[str, Any]
    status: SessionStatus = SessionStatus.RUNNING
    ended_at: str | None = None
    active_spec: str | None = None
    active_task_id: str | None = None
    completed: list[TaskRef] = field(default_factory=list)
    failed: list[TaskRef] = field(default_factory=list)
    skipped: list[TaskRef] = field(default_factory=list)
    retry_records: dict[str, RetryRecord] = field(default_factory=dict)
    history: list[dict[str, Any]] = field(default_factory=list)
    recovered_from: str | None = None

    @classmethod
    def open(cls, workspace: str, config: dict[str, Any]) -> Session:
        session_id = f"session-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"
        return cls(id=session_id, workspace=workspace, started_at=utcnow_iso(), config=config)

    def retry_record(self, key: str) -> RetryRecord:
        record = self.retry_records.get(key)
        if record is None:
            record = RetryRecord()
            self.retry_records[key] = record
        return record

    def note(self, action: str, **details: Any) -> None:
        entry = {"action": action, "at": utcnow_iso(), **details}
        self.history.append(entry)
        del self.history[:-200]

    def close(self, status: SessionStatus) -> None:
        self.status = status
        self.ended_at = utcnow_iso()
        self.active_spec = None
        self.active_task_id = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.id,
            "workspace": self.workspace,
            "status": str(self.status),
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "active_spec": self.active_spec,
            "active_task_id": self.active_task_id,
            "completed": [ref.to_dict() for ref in self.completed],
            "failed": [ref.to_dict() for ref in self.failed],
            "skipped": [ref.to_dict() for ref in self.skipped],
            "retry_records": {key: record.to_dict() for key, record in self.retry_records.items()},
            "history": list(self.history),
            "config": self.config,
            "recovered_from": self.recovered_from,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Session:
        def _refs(name: str) -> list[TaskRef]:
            items = payload.get(name, [])
            if not isinstance(items, list):
                return []
            return [TaskRef.from_dict(item) for item in items if isinstance(item, dict)]

        records = payload.get("retry_records", {})
        try:
            status = SessionStatus(str(payload.get("status", "running")))
        except ValueError:
            status = SessionStatus.RUNNING
        return cls(
            id=str(payload["session_id"]),
            workspace=str(payload.get("workspace", "")),
            started_at=str(payload.get("started_at") or utcnow_iso()),
            config=dict(payload.get("config") or {}),
            status=status,
            ended_at=payload.get("ended_at"),
            active_spec=payload.get("active_spec"),
            active_task_id=payload.get("active_task_id"),
            completed=_refs("completed"),
            failed=_refs("failed"),
            skipped=_refs("skipped"),
            retry_records={
                str(key): RetryRecord.from_dict(value)
                for key, value in (records.items() if isinstance(records, dict) else [])
                if isinstance(value, dict)
            },
            history=list(payload.get("history") or []),
            recovered_from=payload.get("recovered_from"),
        )
