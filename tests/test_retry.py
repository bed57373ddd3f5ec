import pytest

from autopilot.config import EngineConfig
from autopilot.errors import (
    ConfigurationError,
    ErrorKind,
    ProtocolError,
    TransportError,
    classify_error,
)
from autopilot.retry import RetryPolicy


def test_delay_doubles_and_is_capped() -> None:
    policy = RetryPolicy(max_retries=5, base_delay_seconds=1.0, max_delay_seconds=5.0)

    assert [policy.delay_for(index) for index in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_from_config_converts_milliseconds() -> None:
    config = EngineConfig(max_retries=2, retry_base_delay_ms=250, retry_max_delay_ms=1000)

    policy = RetryPolicy.from_config(config)

    assert policy.max_attempts == 3
    assert policy.base_delay_seconds == 0.25
    assert policy.max_delay_seconds == 1.0


def test_budget_allows_exactly_max_retries() -> None:
    policy = RetryPolicy(max_retries=2, base_delay_seconds=0.5)

    first = policy.decide(ErrorKind.TRANSPORT, 0)
    second = policy.decide(ErrorKind.TRANSPORT, 1)
    third = policy.decide(ErrorKind.TRANSPORT, 2)

    assert (first.retry, first.delay_seconds) == (True, 0.5)
    assert (second.retry, second.delay_seconds) == (True, 1.0)
    assert third.retry is False
    assert "exhausted" in third.reason


def test_configuration_errors_are_never_retried() -> None:
    decision = RetryPolicy(max_retries=10).decide(ErrorKind.CONFIGURATION, 0)

    assert decision.retry is False
    assert ConfigurationError("bad").retriable is False
    assert TransportError("down").retriable is True


@pytest.mark.parametrize(
    ("exc", "kind"),
    [
        (ProtocolError("garbled"), ErrorKind.PROTOCOL),
        (TimeoutError(), ErrorKind.TIMEOUT),
        (ConnectionResetError(), ErrorKind.TRANSPORT),
        (RuntimeError("network unreachable"), ErrorKind.TRANSPORT),
        (RuntimeError("invalid configuration value"), ErrorKind.CONFIGURATION),
        (RuntimeError("something odd"), ErrorKind.UNKNOWN),
    ],
)
def test_classify_error(exc: BaseException, kind: ErrorKind) -> None:
    assert classify_error(exc) == kind
