from __future__ import annotations

import asyncio
import os
import tempfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from autopilot.context import RuntimeContext
from autopilot.errors import TaskStateError
from autopilot.events import EngineEvent
from autopilot.models import Spec, Task, TaskStatus, id_sort_key, task_key
from autopilot.tasks.parser import line_declares, parse_tasks, rewrite_mark
from autopilot.tasks.watcher import FileChange, Fingerprint, PollingFileWatcher, fingerprint

if TYPE_CHECKING:
    from autopilot.resources import ResourceSupervisor


def _read_preserving(path: Path) -> str:
    with open(path, encoding="utf-8", newline="") as handle:
        return handle.read()


def _write_atomic(path: Path, content: str) -> None:
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(content)
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.unlink(temp_name)
        except OSError:
            pass
        raise


class TaskStore:
    """In-memory model of every spec's task file, with line-anchored write-back."""

    def __init__(
        self,
        context: RuntimeContext,
        *,
        supervisor: ResourceSupervisor | None = None,
    ) -> None:
        self.context = context
        self.supervisor = supervisor
        self.logger = context.logger.getChild("tasks")
        self._specs: dict[str, Spec] = {}
        self._tasks: dict[str, Task] = {}
        self._fingerprints: dict[Path, Fingerprint] = {}
        self._locks: dict[Path, asyncio.Lock] = {}
        self._loaded = False
        self.changes: asyncio.Queue[FileChange] | None = None
        self._watcher: PollingFileWatcher | None = None
        self._update_task: asyncio.Task[None] | None = None

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def specs_root(self) -> Path:
        return self.context.specs_root

    @property
    def _watcher_resource_id(self) -> str:
        return f"watcher:{self.specs_root}"

    def spec_rank(self, spec_name: str) -> tuple[int, str]:
        order = self.context.config.workspace.spec_order
        if spec_name in order:
            return (order.index(spec_name), "")
        return (len(order), spec_name)

    def _load_spec(self, task_file: Path) -> Spec | None:
        spec_dir = task_file.parent
        spec_name = spec_dir.name
        workspace = self.context.config.workspace
        try:
            content = _read_preserving(task_file)
        except (OSError, UnicodeDecodeError) as exc:
            self.logger.warning("Skipping spec %s: cannot read %s (%s)", spec_name, task_file, exc)
            return None
        result = parse_tasks(content, spec_name=spec_name, file_path=task_file.resolve())
        requirements = spec_dir / workspace.requirements_file
        design = spec_dir / workspace.design_file
        stamp = fingerprint(task_file)
        if stamp is not None:
            self._fingerprints[task_file.resolve()] = stamp
        return Spec(
            name=spec_name,
            directory=spec_dir.resolve(),
            task_file=task_file.resolve(),
            tasks=result.tasks,
            requirements_path=requirements.resolve() if requirements.is_file() else None,
            design_path=design.resolve() if design.is_file() else None,
        )

    def discover(self) -> list[Task]:
        """Parse every task file under the specs directory."""
        self._specs.clear()
        self._tasks.clear()
        self._fingerprints.clear()
        task_file_name = self.context.config.workspace.task_file
        if self.specs_root.is_dir():
            for task_file in sorted(self.specs_root.glob(f"*/{task_file_name}")):
                spec = self._load_spec(task_file)
                if spec is None:
                    continue
                self._specs[spec.name] = spec
                for task in spec.tasks:
                    self._tasks[task.key] = task
        else:
            self.logger.warning("Specs directory not found: %s", self.specs_root)
        self._loaded = True
        self.logger.info(
            "Discovered %s task(s) across %s spec(s)", len(self._tasks), len(self._specs)
        )
        return self.tasks()

    def specs(self) -> list[Spec]:
        return sorted(self._specs.values(), key=lambda spec: self.spec_rank(spec.name))

    def spec(self, name: str) -> Spec | None:
        return self._specs.get(name)

    def tasks(self) -> list[Task]:
        ordered: list[Task] = []
        for spec in self.specs():
            ordered.extend(sorted(spec.tasks, key=lambda task: id_sort_key(task.id)))
        return ordered

    def get(self, task_id: str, spec_name: str | None = None) -> Task | None:
        if spec_name is not None:
            return self._tasks.get(task_key(spec_name, task_id))
        if task_id in self._tasks:
            return self._tasks[task_id]
        for spec in self.specs():
            task = self._tasks.get(task_key(spec.name, task_id))
            if task is not None:
                return task
        return None

    def update_status(
        self, task_id: str, status: TaskStatus, *, spec_name: str | None = None
    ) -> bool:
        """Change a task's in-memory status. Nothing is written until ``persist``."""
        task = self.get(task_id, spec_name)
        if task is None:
            return False
        if task.status == status:
            return True
        if status.rank < task.status.rank or (task.status.is_terminal and status.is_terminal):
            raise TaskStateError(
                f"Task {task.key} cannot move from {task.status} to {status} without a reset."
            )
        if status == TaskStatus.COMPLETED and not task.can_complete():
            missing = ", ".join(subtask.id for subtask in task.incomplete_required_subtasks())
            raise TaskStateError(
                f"Task {task.key} has incomplete required subtasks: {missing}"
            )
        task.status = status
        return True

    def update_subtask_status(
        self,
        task_id: str,
        subtask_id: str,
        status: TaskStatus,
        *,
        spec_name: str | None = None,
    ) -> bool:
        task = self.get(task_id, spec_name)
        if task is None:
            return False
        subtask = task.subtask(subtask_id)
        if subtask is None:
            return False
        subtask.status = status
        return True

    def reset(
        self, task_id: str, *, spec_name: str | None = None, subtasks: bool = True
    ) -> bool:
        """Move a task back to pending. This is the only backwards transition."""
        task = self.get(task_id, spec_name)
        if task is None:
            return False
        task.status = TaskStatus.PENDING
        if subtasks:
            for subtask in task.subtasks:
                subtask.status = TaskStatus.PENDING
        self.logger.info("Task %s reset to pending", task.key)
        return True

    def _lock_for(self, path: Path) -> asyncio.Lock:
        lock = self._locks.get(path)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[path] = lock
        return lock

    @staticmethod
    def _locate(
        lines: list[str], line_number: int, item_id: str, *, subtask: bool, start: int = 0
    ) -> int:
        index = line_number - 1
        if 0 <= index < len(lines) and line_declares(lines[index], item_id, subtask=subtask):
            return index
        for candidate in range(start, len(lines)):
            if line_declares(lines[candidate], item_id, subtask=subtask):
                return candidate
        return -1

    async def persist(self, task_id: str, *, spec_name: str | None = None) -> bool:
        """Rewrite the checkbox marks of one task and its subtasks in its source file."""
        task = self.get(task_id, spec_name)
        if task is None:
            return False
        path = task.file_path
        async with self._lock_for(path):
            try:
                content = _read_preserving(path)
            except FileNotFoundError:
                self.logger.warning("Cannot persist %s: %s no longer exists", task.key, path)
                return False
            if fingerprint(path) != self._fingerprints.get(path):
                self.logger.info("%s changed on disk since load; re-anchoring %s", path, task.key)
            lines = content.splitlines(keepends=True)
            task_index = self._locate(lines, task.line_number, task.id, subtask=False)
            if task_index < 0:
                self.logger.warning("Task %s not found in %s; status not written", task.key, path)
                return False
            task.line_number = task_index + 1
            changed = False
            updated = rewrite_mark(lines[task_index], task.status)
            if updated != lines[task_index]:
                lines[task_index] = updated
                changed = True
            for subtask in task.subtasks:
                sub_index = self._locate(
                    lines, subtask.line_number, subtask.id, subtask=True, start=task_index + 1
                )
                if sub_index < 0:
                    self.logger.warning(
                        "Subtask %s of %s not found in %s", subtask.id, task.key, path
                    )
                    continue
                subtask.line_number = sub_index + 1
                updated = rewrite_mark(lines[sub_index], subtask.status)
                if updated != lines[sub_index]:
                    lines[sub_index] = updated
                    changed = True
            if changed:
                _write_atomic(path, "".join(lines))
            stamp = fingerprint(path)
            if stamp is not None:
                self._fingerprints[path] = stamp
            if self._watcher is not None:
                self._watcher.acknowledge(path)
        return True

    def refresh_file(self, path: Path, kind: str = "modified") -> dict[str, Any]:
        """Re-parse one task file after an external change and report what moved."""
        path = path.resolve()
        spec_name = path.parent.name
        old_tasks = {key: task for key, task in self._tasks.items() if task.file_path == path}
        if kind == "deleted" or not path.exists():
            for key in old_tasks:
                self._tasks.pop(key, None)
            self._specs.pop(spec_name, None)
            self._fingerprints.pop(path, None)
            diff = {"added": [], "removed": sorted(old_tasks), "status_changed": []}
        else:
            spec = self._load_spec(path)
            if spec is None:
                return {"added": [], "removed": [], "status_changed": []}
            status_changed: list[str] = []
            for task in spec.tasks:
                previous = old_tasks.get(task.key)
                if previous is None:
                    continue
                # the file format has no mark for failed or skipped
                if task.status == TaskStatus.PENDING and previous.status in {
                    TaskStatus.FAILED,
                    TaskStatus.SKIPPED,
                }:
                    task.status = previous.status
                if task.status != previous.status:
                    status_changed.append(task.key)
            for key in old_tasks:
                self._tasks.pop(key, None)
            self._specs[spec.name] = spec
            for task in spec.tasks:
                self._tasks[task.key] = task
            new_keys = {task.key for task in spec.tasks}
            diff = {
                "added": sorted(new_keys - old_tasks.keys()),
                "removed": sorted(old_tasks.keys() - new_keys),
                "status_changed": status_changed,
            }
        if any(diff.values()):
            self.logger.info(
                "Task file %s %s: +%s -%s ~%s",
                path,
                kind,
                len(diff["added"]),
                len(diff["removed"]),
                len(diff["status_changed"]),
            )
            self.context.events.emit(EngineEvent.TASKS_CHANGED, path=str(path), **diff)
        return diff

    async def _update_loop(self) -> None:
        assert self.changes is not None
        while True:
            change = await self.changes.get()
            try:
                async with self._lock_for(change.path):
                    self.refresh_file(change.path, change.kind)
            except Exception:
                self.logger.exception("Failed to refresh %s", change.path)
            finally:
                if self.supervisor is not None:
                    self.supervisor.touch(self._watcher_resource_id)
                self.changes.task_done()

    def watch(self) -> PollingFileWatcher:
        """Start watching task files; external edits are re-parsed by the update loop."""
        if self._watcher is not None and self._watcher.running:
            return self._watcher
        self.changes = asyncio.Queue()
        interval = self.context.config.workspace.watch_interval_ms / 1000
        self._watcher = PollingFileWatcher(
            self.specs_root,
            f"*/{self.context.config.workspace.task_file}",
            self.changes,
            interval_seconds=interval,
        )
        self._watcher.start()
        self._update_task = asyncio.create_task(self._update_loop(), name="task-store-updates")
        if self.supervisor is not None:
            self.supervisor.register(
                self._watcher_resource_id,
                "file_watcher",
                name=f"task file watcher for {self.context.workspace_name}",
                release=self._cancel_watch_tasks,
            )
        self.logger.info("Watching %s for task file changes", self.specs_root)
        return self._watcher

    def _cancel_watch_tasks(self) -> None:
        if self._watcher is not None:
            self._watcher.cancel()
        if self._update_task is not None:
            self._update_task.cancel()

    async def stop_watching(self) -> None:
        watcher, update_task = self._watcher, self._update_task
        self._watcher, self._update_task = None, None
        if watcher is not None:
            await watcher.stop()
        if update_task is not None:
            update_task.cancel()
            try:
                await update_task
            except asyncio.CancelledError:
                pass
        if self.supervisor is not None:
            self.supervisor.unregister(self._watcher_resource_id)

    @asynccontextmanager
    async def watching(self) -> AsyncIterator[PollingFileWatcher]:
        watcher = self.watch()
        try:
            yield watcher
        finally:
            await self.stop_watching()
