from autopilot.tasks.dependencies import DependencyValidator, ValidationReport
from autopilot.tasks.parser import ParseResult, parse_tasks
from autopilot.tasks.store import TaskStore
from autopilot.tasks.watcher import FileChange, PollingFileWatcher

__all__ = [
    "DependencyValidator",
    "FileChange",
    "ParseResult",
    "PollingFileWatcher",
    "TaskStore",
    "ValidationReport",
    "parse_tasks",
]
