from __future__ import annotations

import heapq
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from autopilot.errors import CycleError, DependencyError
from autopilot.models import Task, TaskStatus, id_sort_key

SortKey = Callable[[Task], Any]


@dataclass(slots=True)
class ValidationReport:
    cycles: list[list[str]] = field(default_factory=list)
    missing: dict[str, list[str]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.cycles and not self.missing

    def raise_for_errors(self) -> None:
        if self.cycles:
            raise CycleError(self.cycles)
        if self.missing:
            rendered = "; ".join(
                f"{key} depends on missing {', '.join(deps)}"
                for key, deps in sorted(self.missing.items())
            )
            raise DependencyError(f"Unknown dependencies: {rendered}")

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "cycles": self.cycles, "missing": self.missing}


def _default_sort_key(task: Task) -> Any:
    return (task.spec_name, id_sort_key(task.id))


class DependencyValidator:
    """Cycle detection and dependency-respecting ordering over a set of tasks."""

    def __init__(self, tasks: Iterable[Task], *, sort_key: SortKey | None = None) -> None:
        self.sort_key = sort_key or _default_sort_key
        self.tasks: dict[str, Task] = {task.key: task for task in tasks}

    def _edges(self, key: str) -> list[str]:
        return [dep for dep in self.tasks[key].dependency_keys() if dep in self.tasks]

    def _ordered_keys(self) -> list[str]:
        return sorted(self.tasks, key=lambda key: self.sort_key(self.tasks[key]))

    def missing_dependencies(self) -> dict[str, list[str]]:
        missing: dict[str, list[str]] = {}
        for key in self._ordered_keys():
            unknown = [dep for dep in self.tasks[key].dependency_keys() if dep not in self.tasks]
            if unknown:
                missing[key] = unknown
        return missing

    def detect_cycles(self) -> list[list[str]]:
        """Return every distinct elementary cycle, each rotated to start at its smallest member."""
        order = self._ordered_keys()
        position = {key: index for index, key in enumerate(order)}
        found: set[tuple[str, ...]] = set()
        cycles: list[list[str]] = []

        # a cycle is reported once, from its lowest-positioned member
        for start in order:
            stack: list[tuple[str, list[str]]] = [(start, [start])]
            while stack:
                node, path = stack.pop()
                for dep in self._edges(node):
                    if dep == start:
                        canonical = tuple(path)
                        if canonical not in found:
                            found.add(canonical)
                            cycles.append(list(path))
                    elif dep not in path and position[dep] > position[start]:
                        stack.append((dep, [*path, dep]))
        cycles.sort(key=lambda cycle: [position[key] for key in cycle])
        return cycles

    def compute_order(self, tasks: Iterable[Task] | None = None) -> list[Task]:
        """Topological order over ``tasks`` with ties broken by the sort key.

        Dependencies outside the given subset are treated as already satisfied.
        """
        subset = {task.key: task for task in (tasks if tasks is not None else self.tasks.values())}
        indegree = {key: 0 for key in subset}
        dependents: dict[str, list[str]] = {key: [] for key in subset}
        for key, task in subset.items():
            for dep in task.dependency_keys():
                if dep in subset:
                    indegree[key] += 1
                    dependents[dep].append(key)

        heap: list[tuple[Any, str]] = [
            (self.sort_key(subset[key]), key) for key, degree in indegree.items() if degree == 0
        ]
        heapq.heapify(heap)
        ordered: list[Task] = []
        while heap:
            _, key = heapq.heappop(heap)
            ordered.append(subset[key])
            for dependent in dependents[key]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(heap, (self.sort_key(subset[dependent]), dependent))
        if len(ordered) != len(subset):
            remaining = sorted(set(subset) - {task.key for task in ordered})
            raise CycleError(self.detect_cycles() or [remaining])
        return ordered

    def unsatisfied(self, task: Task) -> list[str]:
        """Dependency keys of ``task`` that are not completed yet."""
        blocked: list[str] = []
        for dep in task.dependency_keys():
            other = self.tasks.get(dep)
            if other is None or other.status != TaskStatus.COMPLETED:
                blocked.append(dep)
        return blocked

    def validate(self) -> ValidationReport:
        return ValidationReport(cycles=self.detect_cycles(), missing=self.missing_dependencies())
