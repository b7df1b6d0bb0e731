"""Unit tests for sweep retry policy helpers and the retry executor."""

from __future__ import annotations

import httpx
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from scheduler.retry import (
    RetryExecutor,
    RetryPolicy,
    compute_backoff_delay_seconds,
    is_transient_error,
)


def _transient() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("could not connect to server"))


class FlakyOperation:
    """Fails with the configured errors, then returns a result."""

    def __init__(self, *errors: Exception, result: str = "done") -> None:
        self.errors = list(errors)
        self.calls = 0
        self.result = result

    def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def test_compute_backoff_delay_exponential() -> None:
    """Ensure exponential backoff scales with retry count and caps at the max."""
    policy = RetryPolicy(initial_delay_seconds=5, max_delay_seconds=60, multiplier=2)
    delays = [compute_backoff_delay_seconds(policy, count) for count in range(1, 6)]
    assert delays == [5, 10, 20, 40, 60]


def test_compute_backoff_rejects_zero_retry_count() -> None:
    with pytest.raises(ValueError):
        compute_backoff_delay_seconds(RetryPolicy(), 0)


@pytest.mark.parametrize(
    "error",
    [
        OperationalError("SELECT 1", {}, Exception("server closed the connection")),
        httpx.ConnectError("Connection refused"),
        ConnectionResetError("reset"),
        TimeoutError("timed out"),
        RuntimeError("ECONNRESET while reading"),
    ],
)
def test_transient_errors_are_detected(error) -> None:
    assert is_transient_error(error) is True


@pytest.mark.parametrize(
    "error",
    [
        ValueError("bad input"),
        IntegrityError("INSERT", {}, Exception("unique constraint failed")),
        KeyError("missing"),
    ],
)
def test_fatal_errors_are_not_transient(error) -> None:
    assert is_transient_error(error) is False


def test_transient_failures_retry_with_backoff() -> None:
    """Two transient failures then success sleep 5s then 10s."""
    sleeps: list[float] = []
    resets: list[int] = []
    executor = RetryExecutor(
        RetryPolicy(max_attempts=6, initial_delay_seconds=5, max_delay_seconds=60, multiplier=2),
        reset_hook=lambda: resets.append(1),
        sleep=sleeps.append,
    )
    operation = FlakyOperation(_transient(), _transient())

    assert executor.run(operation, label="test") == "done"
    assert operation.calls == 3
    assert sleeps == [5, 10]
    assert len(resets) == 2


def test_fatal_error_propagates_without_sleep() -> None:
    sleeps: list[float] = []
    executor = RetryExecutor(RetryPolicy(), sleep=sleeps.append)
    operation = FlakyOperation(ValueError("bad row"))

    with pytest.raises(ValueError):
        executor.run(operation)

    assert operation.calls == 1
    assert sleeps == []


def test_retries_exhausted_raise_last_error() -> None:
    sleeps: list[float] = []
    executor = RetryExecutor(
        RetryPolicy(max_attempts=3, initial_delay_seconds=1, max_delay_seconds=60, multiplier=2),
        sleep=sleeps.append,
    )
    operation = FlakyOperation(_transient(), _transient(), _transient())

    with pytest.raises(OperationalError):
        executor.run(operation)

    assert operation.calls == 3
    assert sleeps == [1, 2]


def test_run_job_logs_and_returns_none(caplog) -> None:
    """Scheduled job failures never escape the job boundary."""
    executor = RetryExecutor(RetryPolicy(max_attempts=1), sleep=lambda delay: None)

    result = executor.run_job("billing.grace_period", FlakyOperation(RuntimeError("boom")))

    assert result is None
    assert "Scheduled job failed: job=billing.grace_period" in caplog.text


def test_on_retry_callback_receives_attempt_and_delay() -> None:
    seen: list[tuple[int, float]] = []
    executor = RetryExecutor(
        RetryPolicy(max_attempts=2, initial_delay_seconds=3, max_delay_seconds=60, multiplier=2),
        sleep=lambda delay: None,
        on_retry=lambda exc, attempt, delay: seen.append((attempt, delay)),
    )

    executor.run(FlakyOperation(_transient()))

    assert seen == [(1, 3)]


def test_invalid_policy_rejected() -> None:
    with pytest.raises(ValueError):
        RetryExecutor(RetryPolicy(max_attempts=0))
