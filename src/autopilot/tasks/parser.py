from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from autopilot.models import Subtask, Task, TaskStatus

logger = logging.getLogger(__name__)

CHECKBOX_PATTERN = re.compile(
    r"^(?P<indent>[ \t]*)-\s*\[(?P<mark>[^\]]?)\](?P<optional>\*)?\s*(?P<rest>.*)$"
)
TASK_PATTERN = re.compile(
    r"^-\s*\[(?P<mark>[ ~xX])\](?P<optional>\*)?\s*(?P<id>\d+(?:\.\d+)*)\.\s+(?P<title>\S.*?)\s*$"
)
SUBTASK_PATTERN = re.compile(
    r"^(?P<indent>[ \t]+)-\s*\[(?P<mark>[ ~xX])\](?P<optional>\*)?\s*"
    r"(?P<id>\d+(?:\.\d+)+)\.?\s+(?P<title>\S.*?)\s*$"
)
REFERENCE_PATTERN = re.compile(
    r"^_(?P<label>Requirements|Depends(?: on)?):\s*(?P<values>.*?)_\s*$", re.IGNORECASE
)
BOM = "\ufeff"
MARK_PATTERN = re.compile(
    r"^(?P<prefix>\ufeff?[ \t]*-\s*\[)(?P<mark>[ ~xX])(?P<suffix>\].*)$", re.DOTALL
)

_MARK_TO_STATUS = {
    " ": TaskStatus.PENDING,
    "~": TaskStatus.IN_PROGRESS,
    "x": TaskStatus.COMPLETED,
    "X": TaskStatus.COMPLETED,
}


def status_from_mark(mark: str) -> TaskStatus:
    return _MARK_TO_STATUS.get(mark, TaskStatus.PENDING)


def mark_for_status(status: TaskStatus) -> str:
    # failed and skipped have no checkbox mark of their own
    if status == TaskStatus.COMPLETED:
        return "x"
    if status == TaskStatus.IN_PROGRESS:
        return "~"
    return " "


@dataclass(slots=True)
class ParseResult:
    tasks: list[Task] = field(default_factory=list)
    skipped_lines: list[tuple[int, str]] = field(default_factory=list)


def _split_values(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def parse_tasks(content: str, *, spec_name: str, file_path: Path) -> ParseResult:
    """Parse a task document. Malformed lines are recorded and skipped."""
    result = ParseResult()
    seen_ids: set[str] = set()
    current_task: Task | None = None
    current_subtask: Subtask | None = None

    for index, raw_line in enumerate(content.splitlines()):
        line_number = index + 1
        line = raw_line.rstrip("\r\n")
        if index == 0:
            line = line.removeprefix(BOM)
        if not line.strip():
            continue

        task_match = TASK_PATTERN.match(line)
        if task_match:
            task_id = task_match.group("id")
            if task_id in seen_ids:
                result.skipped_lines.append((line_number, "duplicate task id"))
                current_task = None
                current_subtask = None
                continue
            seen_ids.add(task_id)
            current_task = Task(
                id=task_id,
                title=task_match.group("title"),
                spec_name=spec_name,
                file_path=file_path,
                line_number=line_number,
                status=status_from_mark(task_match.group("mark")),
            )
            current_subtask = None
            result.tasks.append(current_task)
            continue

        subtask_match = SUBTASK_PATTERN.match(line)
        if subtask_match:
            subtask_id = subtask_match.group("id")
            if current_task is None or not subtask_id.startswith(f"{current_task.id}."):
                result.skipped_lines.append((line_number, "subtask outside its parent task"))
                current_subtask = None
                continue
            if current_task.subtask(subtask_id) is not None:
                result.skipped_lines.append((line_number, "duplicate subtask id"))
                current_subtask = None
                continue
            current_subtask = Subtask(
                id=subtask_id,
                title=subtask_match.group("title"),
                status=status_from_mark(subtask_match.group("mark")),
                optional=subtask_match.group("optional") == "*",
                line_number=line_number,
            )
            current_task.subtasks.append(current_subtask)
            continue

        if CHECKBOX_PATTERN.match(line):
            result.skipped_lines.append((line_number, "malformed checkbox line"))
            continue

        stripped = line.strip()
        reference = REFERENCE_PATTERN.match(stripped)
        if reference and current_task is not None:
            values = _split_values(reference.group("values"))
            if reference.group("label").lower().startswith("depends"):
                current_task.dependencies.extend(
                    value for value in values if value not in current_task.dependencies
                )
            elif current_subtask is not None:
                current_subtask.requirements.extend(values)
            else:
                current_task.requirements.extend(values)
            continue

        if line[:1] in {" ", "\t"} and current_task is not None:
            if current_subtask is not None:
                current_subtask.description.append(stripped)
            else:
                current_task.description.append(stripped)
            continue

        # unindented prose or a heading ends the current task body
        current_task = None
        current_subtask = None

    for line_number, reason in result.skipped_lines:
        logger.warning("Skipping line %s of %s: %s", line_number, file_path, reason)
    return result


def rewrite_mark(line: str, status: TaskStatus) -> str:
    """Return ``line`` with only its checkbox mark changed to match ``status``.

    A mark that already reads as ``status`` is left as it is.
    """
    match = MARK_PATTERN.match(line)
    if match is None:
        return line
    if status_from_mark(match.group("mark")) == status:
        return line
    return f"{match.group('prefix')}{mark_for_status(status)}{match.group('suffix')}"


def line_declares(line: str, item_id: str, *, subtask: bool) -> bool:
    pattern = SUBTASK_PATTERN if subtask else TASK_PATTERN
    match = pattern.match(line.rstrip("\r\n").removeprefix(BOM))
    return bool(match) and match.group("id") == item_id
