from __future__ import annotations

from dataclasses import dataclass

from autopilot.config import EngineConfig
from autopilot.errors import ErrorKind, is_retryable


@dataclass(slots=True, frozen=True)
class RetryDecision:
    retry: bool
    delay_seconds: float
    reason: str


@dataclass(slots=True)
class RetryPolicy:
    """Capped exponential backoff with a per-task retry budget."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0

    @classmethod
    def from_config(cls, config: EngineConfig) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            base_delay_seconds=config.retry_base_delay_ms / 1000,
            max_delay_seconds=config.retry_max_delay_ms / 1000,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, retry_index: int) -> float:
        """Delay before retry ``retry_index`` (0 for the first retry of a task)."""
        return min(self.base_delay_seconds * (2 ** max(0, retry_index)), self.max_delay_seconds)

    def decide(self, kind: ErrorKind, retries_so_far: int) -> RetryDecision:
        if not is_retryable(kind):
            return RetryDecision(False, 0.0, f"{kind} errors are not retried")
        if retries_so_far >= self.max_retries:
            return RetryDecision(
                False, 0.0, f"retry budget exhausted after {retries_so_far} retries"
            )
        return RetryDecision(
            True,
            self.delay_for(retries_so_far),
            f"retry {retries_so_far + 1} of {self.max_retries}",
        )
