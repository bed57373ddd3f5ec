from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

logger = logging.getLogger(__name__)

ChangeKind = Literal["created", "modified", "deleted"]
Fingerprint = tuple[int, int]


@dataclass(slots=True, frozen=True)
class FileChange:
    path: Path
    kind: ChangeKind


def fingerprint(path: Path) -> Fingerprint | None:
    try:
        stat = path.stat()
    except FileNotFoundError:
        return None
    return (stat.st_mtime_ns, stat.st_size)


class PollingFileWatcher:
    """Polls task files matching ``pattern`` under ``root`` and queues changes."""

    def __init__(
        self,
        root: Path,
        pattern: str,
        changes: asyncio.Queue[FileChange],
        *,
        interval_seconds: float = 1.0,
    ) -> None:
        self.root = root
        self.pattern = pattern
        self.changes = changes
        self.interval_seconds = interval_seconds
        self._known: dict[Path, Fingerprint] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _scan(self) -> dict[Path, Fingerprint]:
        found: dict[Path, Fingerprint] = {}
        if not self.root.is_dir():
            return found
        for path in sorted(self.root.glob(self.pattern)):
            stamp = fingerprint(path)
            if stamp is not None:
                found[path.resolve()] = stamp
        return found

    def prime(self) -> None:
        self._known = self._scan()

    def acknowledge(self, path: Path) -> None:
        """Record our own write so it is not reported as an external change."""
        current = fingerprint(path)
        resolved = path.resolve()
        if current is None:
            self._known.pop(resolved, None)
        else:
            self._known[resolved] = current

    def poll_once(self) -> list[FileChange]:
        current = self._scan()
        changes: list[FileChange] = []
        for path, stamp in current.items():
            previous = self._known.get(path)
            if previous is None:
                changes.append(FileChange(path, "created"))
            elif previous != stamp:
                changes.append(FileChange(path, "modified"))
        for path in self._known.keys() - current.keys():
            changes.append(FileChange(path, "deleted"))
        self._known = current
        for change in changes:
            self.changes.put_nowait(change)
        return changes

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.poll_once()
            except OSError:
                logger.exception("Task file scan failed under %s", self.root)

    def start(self) -> None:
        if self.running:
            return
        self.prime()
        self._task = asyncio.create_task(self._run(), name=f"watch:{self.root}")

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
