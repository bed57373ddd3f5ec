from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from autopilot.config import CompletionConfig
from autopilot.errors import AssistantTimeoutError, ConfigurationError

logger = logging.getLogger(__name__)

ResponseFetcher = Callable[[str], Awaitable[str | None]]


@dataclass(slots=True, frozen=True)
class Verdict:
    """Outcome of classifying assistant text.

    ``completed`` is False while no indicator has been seen. A failure indicator
    always wins over a success indicator; when both matched, ``ambiguous`` is set.
    A closed channel with no indicator yields ``completed=True, success=False,
    ambiguous=True`` and no ``indicator``.
    """

    completed: bool
    success: bool
    ambiguous: bool = False
    indicator: str | None = None
    reason: str = ""

    @property
    def unresolved(self) -> bool:
        return self.completed and self.ambiguous and self.indicator is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed": self.completed,
            "success": self.success,
            "ambiguous": self.ambiguous,
            "indicator": self.indicator,
            "reason": self.reason,
        }


PENDING = Verdict(completed=False, success=False, reason="no indicator yet")


def _compile(phrases: Iterable[str]) -> re.Pattern[str] | None:
    cleaned = sorted(
        {phrase.strip() for phrase in phrases if phrase.strip()}, key=len, reverse=True
    )
    if not cleaned:
        return None
    alternation = "|".join(re.escape(phrase) for phrase in cleaned)
    return re.compile(rf"(?<!\w)(?:{alternation})(?!\w)", re.IGNORECASE)


class IndicatorClassifier:
    """Whole-phrase, case-insensitive matching against success and failure phrase lists."""

    def __init__(
        self, success_indicators: Iterable[str], failure_indicators: Iterable[str]
    ) -> None:
        self.success_indicators = list(success_indicators)
        self.failure_indicators = list(failure_indicators)
        self._success = _compile(self.success_indicators)
        self._failure = _compile(self.failure_indicators)

    @classmethod
    def from_config(cls, config: CompletionConfig) -> IndicatorClassifier:
        return cls(config.success_indicators, config.failure_indicators)

    @staticmethod
    def _search(pattern: re.Pattern[str] | None, text: str, final: bool) -> str | None:
        if pattern is None:
            return None
        for match in pattern.finditer(text):
            # A match touching the end of unfinished text may be a cut-off word.
            if final or match.end() < len(text):
                return match.group(0).lower()
        return None

    def classify(self, text: str, *, final: bool = True) -> Verdict:
        """Classify ``text``.

        With ``final=False`` the text is a prefix of a reply still streaming in,
        and phrases ending exactly at its end are not counted yet.
        """
        failure = self._search(self._failure, text, final)
        success = self._search(self._success, text, final)
        if failure is not None:
            return Verdict(
                completed=True,
                success=False,
                ambiguous=success is not None,
                indicator=failure,
                reason=(
                    f"failure indicator '{failure}' outranks success indicator '{success}'"
                    if success is not None
                    else f"failure indicator '{failure}'"
                ),
            )
        if success is not None:
            return Verdict(
                completed=True,
                success=True,
                indicator=success,
                reason=f"success indicator '{success}'",
            )
        return PENDING


class CompletionDetector:
    def __init__(
        self, classifier: IndicatorClassifier, *, log: logging.Logger | None = None
    ) -> None:
        self.classifier = classifier
        self.logger = log or logger

    @classmethod
    def from_config(
        cls, config: CompletionConfig, *, log: logging.Logger | None = None
    ) -> CompletionDetector:
        return cls(IndicatorClassifier.from_config(config), log=log)

    def closed_verdict(self, text: str) -> Verdict:
        verdict = self.classifier.classify(text)
        if verdict.completed:
            return verdict
        return Verdict(
            completed=True,
            success=False,
            ambiguous=True,
            reason="response channel closed without a success or failure indicator",
        )

    async def await_verdict(self, stream: AsyncIterator[str], timeout: float) -> Verdict:
        """Consume ``stream`` until a verdict is settled or ``timeout`` seconds pass."""
        chunks: list[str] = []

        async def _consume() -> Verdict:
            async for chunk in stream:
                chunks.append(chunk)
                verdict = self.classifier.classify("".join(chunks), final=False)
                if verdict.completed and not verdict.success:
                    return verdict
            return self.closed_verdict("".join(chunks))

        deadline = asyncio.timeout(timeout)
        try:
            async with deadline:
                return await _consume()
        except TimeoutError:
            if not deadline.expired():
                raise
            verdict = self.classifier.classify("".join(chunks))
            if verdict.completed:
                self.logger.info("Timed out after an indicator; accepting %s", verdict.reason)
                return verdict
            raise AssistantTimeoutError(
                f"No completion indicator within {timeout:.1f}s"
            ) from None
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def poll_for_completion(
        self,
        message_id: str,
        fetch: ResponseFetcher,
        *,
        interval: float,
        timeout: float,
    ) -> Verdict:
        """Poll ``fetch(message_id)`` until its text carries an indicator.

        Fetch failures are logged and polling continues, except configuration errors.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                text = await fetch(message_id)
            except ConfigurationError:
                raise
            except Exception as exc:
                self.logger.warning("Polling %s failed: %s", message_id, exc)
                text = None
            if text:
                verdict = self.classifier.classify(text)
                if verdict.completed:
                    return verdict
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise AssistantTimeoutError(
                    f"No completion indicator for {message_id} within {timeout:.1f}s"
                )
            await asyncio.sleep(min(interval, remaining))
