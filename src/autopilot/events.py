from __future__ import annotations

import logging
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from autopilot.models import utcnow_iso

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]


class EngineEvent(StrEnum):
    SESSION_STARTED = "session_started"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_SKIPPED = "task_skipped"
    TASK_RETRYING = "task_retrying"
    SESSION_PAUSED = "session_paused"
    SESSION_RESUMED = "session_resumed"
    SESSION_COMPLETED = "session_completed"
    STATE_CHANGED = "state_changed"
    PERFORMANCE_ALERT = "performance_alert"
    TASKS_CHANGED = "tasks_changed"


class EventBus:
    """Fans lifecycle events out to subscribers. One bus per workspace context."""

    def __init__(self, workspace: str) -> None:
        self.workspace = workspace
        self._hooks: list[EventHook] = []

    def subscribe(self, hook: EventHook) -> Callable[[], None]:
        self._hooks.append(hook)

        def _unsubscribe() -> None:
            if hook in self._hooks:
                self._hooks.remove(hook)

        return _unsubscribe

    def emit(self, event: EngineEvent | str, **payload: Any) -> dict[str, Any]:
        record: dict[str, Any] = {
            "event": str(event),
            "at": utcnow_iso(),
            "workspace": self.workspace,
            **payload,
        }
        for hook in list(self._hooks):
            try:
                hook(record)
            except Exception:
                logger.exception("Event subscriber failed for %s", record["event"])
        return record
