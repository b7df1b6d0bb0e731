"""Transactional email delivery through an HTTP relay."""

from __future__ import annotations

import logging
from typing import Any, Callable

from config import settings
from services.http_client import ErrorConfig, ErrorStrategy, HttpClient

logger = logging.getLogger(__name__)


class EmailClient:
    """Send templated emails; failures are logged and never raised."""

    def __init__(
        self,
        endpoint_url: str | None = None,
        http_client: HttpClient | None = None,
    ) -> None:
        config = settings.email
        self.endpoint_url = endpoint_url if endpoint_url is not None else config.endpoint_url
        self.from_address = config.from_address
        headers = {}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        self._http = http_client or HttpClient(
            headers=headers,
            timeout=config.timeout,
            connect_timeout=config.connect_timeout,
            error_config=ErrorConfig(strategy=ErrorStrategy.LOG_AND_SUPPRESS),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint_url)

    def send_specific_email(self, template: str, to: str, context: dict[str, Any]) -> bool:
        """Send one templated email; returns whether the relay accepted it."""
        if not self.enabled:
            logger.debug("Email disabled; skipping template=%s to=%s", template, to)
            return False
        if not to:
            logger.warning("Email skipped: missing recipient for template=%s", template)
            return False
        response = self._http.post(
            self.endpoint_url,
            json={
                "template": template,
                "to": to,
                "from": self.from_address,
                "context": context,
            },
        )
        if response is None:
            return False
        logger.info("Email sent: template=%s to=%s", template, to)
        return True


def deferred_email(
    client: EmailClient, template: str, to: str, context: dict[str, Any]
) -> Callable[[], None]:
    """Bind an email send for execution after the surrounding transaction commits."""

    def send() -> None:
        client.send_specific_email(template, to, context)

    return send
