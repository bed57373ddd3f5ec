from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from autopilot.models import ErrorRecord, Spec, Task
from autopilot.tasks.watcher import fingerprint

if TYPE_CHECKING:
    from autopilot.resources import BoundedCache

TRUNCATION_NOTICE = "\n\n[Content truncated due to length]"

DEFAULT_TEMPLATE = """Implement the task from the markdown document at {spec_name}/{task_file}:

Task: {task_id} - {task_title}

{details}

{subtasks}

Requirements: {requirements}

## Context

### Requirements
{requirements_content}

### Design
{design_content}

## Instructions
Implement the task according to the requirements and design.
Only focus on ONE task at a time. Do NOT implement functionality for other tasks.
If the task has sub-tasks, implement the sub-tasks first.
Write all required code changes before executing any tests or validation steps.
Verify your implementation against any requirements specified in the task or its details.
When you are done, reply with "Task completed successfully" or explain why the task failed."""


class PromptBuilder:
    def __init__(
        self,
        *,
        task_file: str = "tasks.md",
        max_chars: int = 50_000,
        include_optional: bool = True,
        cache: BoundedCache | None = None,
        template: str = DEFAULT_TEMPLATE,
    ) -> None:
        self.task_file = task_file
        self.max_chars = max_chars
        self.include_optional = include_optional
        self.cache = cache
        self.template = template

    def read_document(self, path: Path | None) -> str:
        """Read a context document, through the cache when one is configured."""
        if path is None:
            return "(not provided)"
        stamp = fingerprint(path)
        if stamp is None:
            return "(not provided)"
        if self.cache is None:
            return path.read_text(encoding="utf-8", errors="replace").strip()
        key = f"doc:{path}:{stamp[0]}:{stamp[1]}"
        return self.cache.get_or_load(
            key, lambda: path.read_text(encoding="utf-8", errors="replace").strip()
        )

    def format_subtasks(self, task: Task) -> str:
        subtasks = [
            subtask
            for subtask in task.subtasks
            if self.include_optional or not subtask.optional
        ]
        if not subtasks:
            return "No subtasks"
        lines = ["Subtasks:"]
        for subtask in subtasks:
            lines.append(f"- {subtask.id} {subtask.title}")
            lines.extend(f"  {line}" for line in subtask.description)
            if subtask.optional:
                lines.append("  (Optional)")
        return "\n".join(lines)

    def build(self, task: Task, spec: Spec | None) -> str:
        prompt = self.template.format(
            spec_name=task.spec_name,
            task_file=self.task_file,
            task_id=task.id,
            task_title=task.title,
            details="\n".join(task.description) or "No additional details",
            subtasks=self.format_subtasks(task),
            requirements=", ".join(task.requirements) or "none listed",
            requirements_content=self.read_document(spec.requirements_path if spec else None),
            design_content=self.read_document(spec.design_path if spec else None),
        )
        return self.truncate(prompt)

    def build_retry(self, task: Task, spec: Spec | None, error: ErrorRecord, retry: int) -> str:
        retry_context = (
            "\n\n## Retry Information\n\n"
            f"This is retry attempt #{retry}.\n\n"
            f"Previous error ({error.kind}):\n{error.message}\n\n"
            "Please address the error and try again."
        )
        base = self.build(task, spec)
        return self.truncate(base + retry_context, keep_tail=retry_context)

    def truncate(self, prompt: str, *, keep_tail: str = "") -> str:
        if len(prompt) <= self.max_chars:
            return prompt
        budget = max(0, self.max_chars - len(keep_tail) - len(TRUNCATION_NOTICE))
        head = prompt[:budget]
        cut = max(head.rfind("."), head.rfind("\n"))
        if cut > budget * 0.8:
            head = head[: cut + 1]
        return head + TRUNCATION_NOTICE + keep_tail
