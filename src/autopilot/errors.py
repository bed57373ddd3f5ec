from __future__ import annotations

import asyncio
from enum import StrEnum


class ErrorKind(StrEnum):
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    PROTOCOL = "protocol"
    REPORTED_FAILURE = "reported_failure"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.TRANSPORT,
        ErrorKind.TIMEOUT,
        ErrorKind.PROTOCOL,
        ErrorKind.REPORTED_FAILURE,
        ErrorKind.UNKNOWN,
    }
)


def is_retryable(kind: ErrorKind) -> bool:
    return kind in RETRYABLE_KINDS


class AutomationError(RuntimeError):
    """Base class for failures of a task attempt."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, *, task_key: str | None = None) -> None:
        super().__init__(message)
        self.task_key = task_key

    @property
    def retriable(self) -> bool:
        return is_retryable(self.kind)


class TransportError(AutomationError):
    """The assistant could not be reached or the channel broke."""

    kind = ErrorKind.TRANSPORT


class AssistantTimeoutError(AutomationError):
    """No verdict arrived before the task timeout."""

    kind = ErrorKind.TIMEOUT


class ProtocolError(AutomationError):
    """The assistant answered with something the detector cannot classify."""

    kind = ErrorKind.PROTOCOL


class ReportedFailureError(AutomationError):
    """The assistant explicitly reported that the task failed."""

    kind = ErrorKind.REPORTED_FAILURE


class UnknownAutomationError(AutomationError):
    kind = ErrorKind.UNKNOWN


class ConfigurationError(AutomationError):
    """Invalid configuration or plan structure. Retrying cannot fix it."""

    kind = ErrorKind.CONFIGURATION


class DependencyError(ConfigurationError):
    """A task references a dependency that is missing or not satisfiable."""


class CycleError(DependencyError):
    def __init__(self, cycles: list[list[str]]) -> None:
        self.cycles = cycles
        rendered = "; ".join("cycle: " + " → ".join([*cycle, cycle[0]]) for cycle in cycles)
        super().__init__(f"Dependency cycles detected: {rendered}")


class EngineStateError(RuntimeError):
    """Raised when an engine operation is called from a state that does not allow it."""


class TaskStateError(RuntimeError):
    """Raised on an illegal task status transition."""


class StateStoreError(RuntimeError):
    """Raised when the persisted session state cannot be read or written."""


class RevisionConflictError(StateStoreError):
    """Raised when a state file changed between read and write."""


_KEYWORD_KINDS: list[tuple[tuple[str, ...], ErrorKind]] = [
    (("network", "connection"), ErrorKind.TRANSPORT),
    (("timeout", "timed out"), ErrorKind.TIMEOUT),
    (("dependency", "dependencies", "configuration", "config", "invalid"), ErrorKind.CONFIGURATION),
]


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, AutomationError):
        return exc.kind
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, (ConnectionError, OSError)):
        return ErrorKind.TRANSPORT
    message = str(exc).lower()
    for keywords, kind in _KEYWORD_KINDS:
        if any(keyword in message for keyword in keywords):
            return kind
    return ErrorKind.UNKNOWN
