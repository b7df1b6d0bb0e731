"""Bounded retry with exponential backoff for scheduled sweeps."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

import httpx
from sqlalchemy.exc import DBAPIError, DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_MESSAGE_MARKERS = (
    "connection refused",
    "connection reset",
    "server closed the connection",
    "could not connect",
    "can't reach database",
    "connection timed out",
    "terminating connection",
    "econnrefused",
    "econnreset",
    "etimedout",
    "timeout expired",
)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry/backoff configuration for scheduled sweeps."""

    max_attempts: int = 6
    initial_delay_seconds: float = 5.0
    max_delay_seconds: float = 60.0
    multiplier: float = 2.0

    @staticmethod
    def from_settings() -> "RetryPolicy":
        """Build a retry policy from scheduler settings."""
        retry_config = settings.scheduler.retry
        return RetryPolicy(
            max_attempts=int(retry_config.max_attempts),
            initial_delay_seconds=float(retry_config.initial_delay_seconds),
            max_delay_seconds=float(retry_config.max_delay_seconds),
            multiplier=float(retry_config.multiplier),
        )


def compute_backoff_delay_seconds(policy: RetryPolicy, retry_count: int) -> float:
    """Compute the delay before retry number ``retry_count`` (1-based)."""
    if retry_count <= 0:
        raise ValueError("retry_count must be >= 1.")
    delay = policy.initial_delay_seconds * (policy.multiplier ** (retry_count - 1))
    return min(delay, policy.max_delay_seconds)


def is_transient_error(error: BaseException) -> bool:
    """Return whether an error looks like a recoverable connectivity failure."""
    if isinstance(error, (OperationalError, DisconnectionError, PoolTimeoutError)):
        return True
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True
    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MESSAGE_MARKERS)


class RetryExecutor:
    """Run operations, retrying transient failures with capped backoff.

    ``reset_hook`` runs before every sleep so the next attempt gets fresh
    connections. Fatal errors propagate on the first attempt.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        reset_hook: Callable[[], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        on_retry: Callable[[BaseException, int, float], None] | None = None,
        classifier: Callable[[BaseException], bool] = is_transient_error,
    ) -> None:
        self.policy = policy or RetryPolicy.from_settings()
        _validate_policy(self.policy)
        self._reset_hook = reset_hook
        self._sleep = sleep
        self._on_retry = on_retry
        self._classifier = classifier

    def run(self, operation: Callable[[], T], *, label: str = "operation") -> T:
        """Run ``operation``; the final error propagates to the caller."""
        attempt = 1
        while True:
            try:
                return operation()
            except Exception as exc:
                if not self._classifier(exc):
                    raise
                if attempt >= self.policy.max_attempts:
                    logger.error(
                        "Retries exhausted: label=%s attempts=%s error=%s",
                        label,
                        attempt,
                        exc,
                    )
                    raise
                delay = compute_backoff_delay_seconds(self.policy, attempt)
                logger.warning(
                    "Transient failure, retrying: label=%s attempt=%s/%s delay=%.1fs error=%s",
                    label,
                    attempt,
                    self.policy.max_attempts,
                    delay,
                    exc,
                )
                if self._on_retry is not None:
                    self._on_retry(exc, attempt, delay)
                if self._reset_hook is not None:
                    self._reset_hook()
                self._sleep(delay)
                attempt += 1

    def run_job(self, job_name: str, operation: Callable[[], T]) -> T | None:
        """Run a scheduled job body; failures are logged and yield None."""
        try:
            return self.run(operation, label=job_name)
        except Exception:
            logger.exception("Scheduled job failed: job=%s", job_name)
            return None


def _validate_policy(policy: RetryPolicy) -> None:
    """Validate retry policy settings."""
    if policy.max_attempts < 1:
        raise ValueError("max_attempts must be >= 1.")
    if policy.initial_delay_seconds < 0 or policy.max_delay_seconds < 0:
        raise ValueError("retry delays must be >= 0.")
    if policy.multiplier < 1:
        raise ValueError("multiplier must be >= 1.")
