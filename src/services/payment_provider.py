"""Client for the upstream subscription billing provider."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from config import settings
from services.http_client import ErrorConfig, ErrorStrategy, HttpClient, RetryConfig

logger = logging.getLogger(__name__)


class PaymentProviderError(Exception):
    """Raised when the payment provider rejects or fails a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Subset of provider subscription state used by billing flows."""

    subscription_id: str
    status: str
    price_id: str | None
    current_period_end: int | None


class PaymentProviderClient:
    """Cancel, inspect and reprice provider subscriptions.

    Reads go through ``read_client``, which retries transient failures with
    backoff. Writes are never retried here; the scheduler retries whole jobs.
    """

    def __init__(
        self,
        http_client: HttpClient | None = None,
        read_client: HttpClient | None = None,
    ) -> None:
        self._http = http_client or _build_http_client()
        if read_client is None:
            read_client = http_client or _build_http_client(_read_retry_config())
        self._read_http = read_client

    def cancel_subscription(self, subscription_id: str) -> bool:
        """Cancel a subscription; returns False when it was already gone."""
        response = self._call("DELETE", f"/subscriptions/{subscription_id}")
        if response.status_code == 404:
            logger.info(
                "Provider subscription already cancelled: subscription_id=%s",
                subscription_id,
            )
            return False
        logger.info("Provider subscription cancelled: subscription_id=%s", subscription_id)
        return True

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        response = self._call(
            "GET", f"/subscriptions/{subscription_id}", http=self._read_http
        )
        if response.status_code == 404:
            raise PaymentProviderError(
                f"subscription {subscription_id} not found", status_code=404
            )
        return _snapshot_from_payload(response.json())

    def update_subscription(self, subscription_id: str, new_price_id: str) -> SubscriptionSnapshot:
        """Move a subscription onto a new price, prorating the change."""
        current = self.retrieve_subscription(subscription_id)
        response = self._call(
            "POST",
            f"/subscriptions/{subscription_id}",
            data={
                "items[0][price]": new_price_id,
                "proration_behavior": "create_prorations",
            },
        )
        if response.status_code == 404:
            raise PaymentProviderError(
                f"subscription {subscription_id} not found", status_code=404
            )
        updated = _snapshot_from_payload(response.json())
        logger.info(
            "Provider subscription repriced: subscription_id=%s from=%s to=%s",
            subscription_id,
            current.price_id,
            updated.price_id,
        )
        return updated

    def _call(
        self, method: str, path: str, *, http: HttpClient | None = None, **kwargs: Any
    ) -> httpx.Response:
        try:
            response = (http or self._http).request(method, path, **kwargs)
        except httpx.HTTPStatusError as exc:
            raise PaymentProviderError(
                f"{method} {path} failed with status {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise PaymentProviderError(f"{method} {path} failed: {exc}") from exc
        if response is None:
            raise PaymentProviderError(f"{method} {path} returned no response")
        return response


def _build_http_client(retry_config: RetryConfig | None = None) -> HttpClient:
    config = settings.payment_provider
    headers = {}
    if config.api_key:
        headers["Authorization"] = f"Bearer {config.api_key}"
    return HttpClient(
        base_url=config.base_url,
        headers=headers,
        timeout=config.timeout,
        connect_timeout=config.connect_timeout,
        error_config=ErrorConfig(
            strategy=ErrorStrategy.RAISE,
            passthrough_status_codes=frozenset({404}),
        ),
        retry_config=retry_config,
    )


def _read_retry_config() -> RetryConfig | None:
    attempts = settings.payment_provider.read_retry_attempts
    if attempts <= 1:
        return None
    return RetryConfig(max_attempts=attempts, retry_status_codes={429, 500, 502, 503, 504})


def _snapshot_from_payload(payload: dict[str, Any]) -> SubscriptionSnapshot:
    items = (payload.get("items") or {}).get("data") or []
    price_id = None
    if items:
        price_id = (items[0].get("price") or {}).get("id")
    return SubscriptionSnapshot(
        subscription_id=str(payload.get("id")),
        status=str(payload.get("status")),
        price_id=price_id,
        current_period_end=payload.get("current_period_end"),
    )
