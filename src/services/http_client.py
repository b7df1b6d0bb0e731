"""Synchronous HTTP client wrapper with configurable error handling and retries.

Outbound integrations (the payment provider and the email relay) share this
wrapper so timeouts, error handling and transient retries stay uniform:

    # Strict client: provider errors surface to the caller
    client = HttpClient(base_url="https://api.stripe.com/v1", timeout=30)
    response = client.delete("/subscriptions/sub_123")

    # Fire-and-forget client: failures are logged and swallowed
    client = HttpClient(
        error_config=ErrorConfig(strategy=ErrorStrategy.LOG_AND_SUPPRESS),
    )
    client.post("https://mail.example/send", json={...})

Retries are opt-in and only meant for idempotent calls.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10


class ErrorStrategy(Enum):
    """Strategy for handling HTTP errors.

    - RAISE: Re-raise exceptions (default, for strict error handling)
    - LOG_AND_SUPPRESS: Log error and return None (for fire-and-forget)
    """

    RAISE = "raise"
    LOG_AND_SUPPRESS = "log_and_suppress"


@dataclass
class ErrorConfig:
    """Configuration for error handling behavior.

    Args:
        strategy: How to handle HTTP errors
        log_level: Logging level for errors (default: ERROR)
        include_response_body: Whether to log response body on errors
        passthrough_status_codes: Status codes returned to the caller as-is
    """

    strategy: ErrorStrategy = ErrorStrategy.RAISE
    log_level: int = logging.ERROR
    include_response_body: bool = False
    passthrough_status_codes: frozenset[int] = frozenset()


@dataclass
class RetryConfig:
    """Configuration for retry logic with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (including initial attempt)
        retry_status_codes: HTTP status codes that should trigger a retry
        backoff_factor: Base delay; attempt ``n`` waits ``backoff_factor * 2**n``
        max_backoff: Maximum backoff delay in seconds
        retry_exceptions: Exception types that should trigger a retry
    """

    max_attempts: int = 3
    retry_status_codes: set[int] = field(default_factory=lambda: {500, 502, 503, 504})
    backoff_factor: float = 2.0
    max_backoff: float = 60.0
    retry_exceptions: tuple[type[Exception], ...] = (
        httpx.ConnectError,
        httpx.ReadTimeout,
        httpx.PoolTimeout,
    )


class HttpClient:
    """Synchronous HTTP client with configurable error handling and retries.

    Args:
        base_url: Prefix joined to relative request paths
        headers: Default headers sent with every request
        timeout: Request timeout in seconds
        connect_timeout: Connection timeout in seconds
        error_config: Error handling configuration
        retry_config: Retry configuration (None = no retries)
        sleep: Sleep function used between retries
    """

    def __init__(
        self,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
        timeout: int | None = None,
        connect_timeout: int | None = None,
        error_config: ErrorConfig | None = None,
        retry_config: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.headers = dict(headers or {})
        self.timeout = timeout if timeout is not None else DEFAULT_TIMEOUT_SECONDS
        self.connect_timeout = (
            connect_timeout if connect_timeout is not None else DEFAULT_CONNECT_TIMEOUT_SECONDS
        )
        self.error_config = error_config or ErrorConfig()
        self.retry_config = retry_config
        self._sleep = sleep

    def request(self, method: str, url: str, **kwargs) -> httpx.Response | None:
        """Perform a request with an arbitrary method."""
        return self._request(method.upper(), url, **kwargs)

    def get(self, url: str, **kwargs) -> httpx.Response | None:
        """Perform a GET request."""
        return self._request("GET", url, **kwargs)

    def post(self, url: str, **kwargs) -> httpx.Response | None:
        """Perform a POST request.

        Returns:
            Response object, or None if the error strategy swallows the failure

        Raises:
            httpx.HTTPError: If error_strategy is RAISE and request fails
        """
        return self._request("POST", url, **kwargs)

    def delete(self, url: str, **kwargs) -> httpx.Response | None:
        """Perform a DELETE request."""
        return self._request("DELETE", url, **kwargs)

    def _resolve_url(self, url: str) -> str:
        if self.base_url and not url.startswith(("http://", "https://")):
            return f"{self.base_url}/{url.lstrip('/')}"
        return url

    def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        headers = {**self.headers, **kwargs.pop("headers", {})}
        with httpx.Client(
            timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout)
        ) as client:
            response = client.request(method, url, headers=headers, **kwargs)
            if response.status_code in self.error_config.passthrough_status_codes:
                return response
            response.raise_for_status()
            return response

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response | None:
        """Execute an HTTP request with error handling and optional retries."""
        target = self._resolve_url(url)
        if self.retry_config is None:
            try:
                return self._send(method, target, **kwargs)
            except (httpx.HTTPStatusError, httpx.RequestError) as e:
                return self._handle_error(e, method, target)
        return self._execute_with_retry(method, target, **kwargs)

    def _execute_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response | None:
        """Execute an HTTP request with retry logic and exponential backoff."""
        assert self.retry_config is not None
        last_exception: Exception | None = None

        for attempt in range(self.retry_config.max_attempts):
            try:
                return self._send(method, url, **dict(kwargs))
            except httpx.HTTPStatusError as e:
                last_exception = e
                if e.response.status_code not in self.retry_config.retry_status_codes:
                    return self._handle_error(e, method, url)
                reason = f"status {e.response.status_code}"
            except self.retry_config.retry_exceptions as e:
                last_exception = e
                reason = type(e).__name__
            except httpx.RequestError as e:
                last_exception = e
                break

            if attempt + 1 >= self.retry_config.max_attempts:
                break
            delay = min(
                self.retry_config.backoff_factor * (2**attempt),
                self.retry_config.max_backoff,
            )
            logger.warning(
                "HTTP %s %s failed with %s, retrying in %.1fs (attempt %s/%s)",
                method,
                url,
                reason,
                delay,
                attempt + 1,
                self.retry_config.max_attempts,
            )
            self._sleep(delay)

        return self._handle_error(last_exception, method, url)

    def _handle_error(self, error: Exception, method: str, url: str) -> httpx.Response | None:
        """Handle HTTP errors according to configured strategy."""
        if self.error_config.strategy == ErrorStrategy.RAISE:
            raise error

        error_msg = f"HTTP {method} {url} failed: {error}"
        if isinstance(error, httpx.HTTPStatusError) and self.error_config.include_response_body:
            error_msg += f"\nResponse body: {error.response.text}"
        logger.log(self.error_config.log_level, error_msg)
        return None
