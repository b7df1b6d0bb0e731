"""Preference and good-standing gate in front of in-app notification writes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Iterable

from sqlalchemy.orm import Session

from models import Notification, NotificationPreference, NotificationTemplate
from notifications.standing import check_good_standing
from notifications.types import NotificationPriority, is_band_activity, type_value
from time_utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Notification"


@dataclass(frozen=True)
class NotificationRequest:
    """Inputs for a single in-app notification."""

    type: str
    user_id: int | None = None
    band_id: int | None = None
    title: str | None = None
    message: str | None = None
    priority: str | None = None
    related_type: str | None = None
    related_id: int | None = None
    action_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class NotificationGate:
    """Create notifications unless the recipient's preferences or standing suppress them.

    Writes go through the caller's session so notifications commit or roll back
    together with the state change that produced them.
    """

    def __init__(self, now_provider: Callable[[], datetime] | None = None) -> None:
        self._now_provider = now_provider or utc_now

    def create(self, session: Session, request: NotificationRequest) -> Notification | None:
        """Create one notification, returning None when it is suppressed."""
        if request.user_id is None:
            raise ValueError("NotificationRequest.user_id is required.")
        preference = (
            session.query(NotificationPreference)
            .filter_by(user_id=request.user_id, notification_type=type_value(request.type))
            .one_or_none()
        )
        if preference is not None and not preference.in_app:
            logger.debug(
                "Notification suppressed by preference: user_id=%s type=%s",
                request.user_id,
                request.type,
            )
            return None

        if request.band_id is not None and is_band_activity(request.type):
            standing = check_good_standing(
                session, request.band_id, request.user_id, self._now_provider()
            )
            if not standing.in_good_standing:
                logger.debug(
                    "Notification suppressed by standing: user_id=%s band_id=%s type=%s",
                    request.user_id,
                    request.band_id,
                    request.type,
                )
                return None

        title, message, priority = _resolve_content(session, request)
        notification = Notification(
            user_id=request.user_id,
            band_id=request.band_id,
            type=type_value(request.type),
            priority=priority,
            title=title,
            message=message,
            related_type=request.related_type,
            related_id=request.related_id,
            action_url=request.action_url,
            metadata_json=request.metadata or None,
            created_at=self._now_provider(),
        )
        session.add(notification)
        session.flush()
        return notification

    def create_many(
        self,
        session: Session,
        user_ids: Iterable[int],
        request: NotificationRequest,
    ) -> list[Notification]:
        """Fan one request out to several recipients, skipping duplicates."""
        created: list[Notification] = []
        seen: set[int] = set()
        for user_id in user_ids:
            if user_id is None or user_id in seen:
                continue
            seen.add(user_id)
            notification = self.create(session, replace(request, user_id=user_id))
            if notification is not None:
                created.append(notification)
        return created


def _resolve_content(
    session: Session, request: NotificationRequest
) -> tuple[str, str, str]:
    title = request.title
    message = request.message
    priority = request.priority
    if not title or not message or not priority:
        template = (
            session.query(NotificationTemplate)
            .filter_by(notification_type=type_value(request.type))
            .one_or_none()
        )
        if template is not None:
            title = title or _render(template.title_template, request.metadata)
            message = message or _render(template.message_template, request.metadata)
            priority = priority or template.default_priority
    return (
        title or DEFAULT_TITLE,
        message or "",
        type_value(priority or NotificationPriority.MEDIUM),
    )


def _render(template: str, values: dict[str, Any]) -> str:
    rendered = template
    for key, value in values.items():
        rendered = rendered.replace(f"{{{key}}}", str(value))
    return rendered


def format_amount(amount_cents: int) -> str:
    """Render an amount in cents as a dollar string for messages."""
    return f"${amount_cents / 100:.2f}"
