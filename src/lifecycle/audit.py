"""Append-only audit records for lifecycle mutations."""

from __future__ import annotations

from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping

from sqlalchemy.orm import Session

from models import AuditLog
from notifications.types import type_value
from time_utils import ensure_utc, utc_now

ACTOR_SYSTEM = "system"
ACTOR_USER = "user"


@dataclass(frozen=True)
class AuditEntryInput:
    """Input payload for creating an audit record."""

    action: str
    entity_type: str
    entity_id: int
    band_id: int | None = None
    actor_type: str = ACTOR_SYSTEM
    actor_id: int | None = None
    changes: Mapping[str, Any] | None = None
    occurred_at: datetime | None = None


def record_audit_entry(
    session: Session,
    payload: AuditEntryInput,
    *,
    now: datetime | None = None,
) -> AuditLog:
    """Create an audit record using an existing session."""
    if payload.actor_type not in (ACTOR_SYSTEM, ACTOR_USER):
        raise ValueError(f"Unsupported audit actor type: {payload.actor_type}")
    entry = AuditLog(
        band_id=payload.band_id,
        actor_type=payload.actor_type,
        actor_id=payload.actor_id,
        action=payload.action,
        entity_type=payload.entity_type,
        entity_id=payload.entity_id,
        changes=_jsonable(payload.changes) if payload.changes else None,
        occurred_at=ensure_utc(payload.occurred_at or now or utc_now()),
    )
    session.add(entry)
    session.flush()
    return entry


class AuditRecorder:
    """Session-factory backed access to the audit trail."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def record(self, payload: AuditEntryInput, *, now: datetime | None = None) -> AuditLog:
        def handler(session: Session) -> AuditLog:
            return record_audit_entry(session, payload, now=now)

        return self._execute(handler)

    def list_for_entity(self, entity_type: str, entity_id: int) -> list[AuditLog]:
        """Return audit history for an entity, oldest first."""

        def handler(session: Session) -> list[AuditLog]:
            return list(
                session.query(AuditLog)
                .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
                .order_by(AuditLog.occurred_at.asc(), AuditLog.id.asc())
                .all()
            )

        return self._execute(handler)

    def _execute(self, handler):
        """Execute audit work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


def _jsonable(changes: Mapping[str, Any]) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    for key, value in changes.items():
        if isinstance(value, datetime):
            normalized[key] = ensure_utc(value).isoformat()
        elif isinstance(value, (list, tuple)):
            normalized[key] = [type_value(item) if item is not None else None for item in value]
        elif value is None or isinstance(value, (bool, int, float)):
            normalized[key] = value
        else:
            normalized[key] = type_value(value)
    return normalized
