"""Generic sweep engine: one guarded transaction per candidate row."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Literal, Mapping

from sqlalchemy.orm import Session

from config import settings
from lifecycle.audit import AuditEntryInput, record_audit_entry
from lifecycle.ladder import Ladder
from models import Notification
from notifications.gate import NotificationGate, NotificationRequest
from scheduler.retry import is_transient_error
from services.database import guarded_update, session_scope
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

RowStatus = Literal["succeeded", "skipped", "failed"]
CandidateQuery = Callable[[Session, datetime], Iterable[int]]


@dataclass
class SweepContext:
    """Per-row state handed to a tier action.

    Everything done through ``session`` commits atomically with the claim.
    Callables added to ``after_commit`` run only once the row has committed.
    """

    session: Session
    row: Any
    now: datetime
    gate: NotificationGate
    sweep_name: str
    after_commit: list[Callable[[], None]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def claim(self, expected: Mapping[str, Any], values: Mapping[str, Any]) -> bool:
        """Apply a guarded update to the current row."""
        return guarded_update(self.session, type(self.row), self.row.id, expected, values)

    def notify(self, request: NotificationRequest) -> Notification | None:
        return self.gate.create(self.session, request)

    def notify_many(self, user_ids: Iterable[int], request: NotificationRequest) -> list[Notification]:
        return self.gate.create_many(self.session, user_ids, request)

    def audit(self, payload: AuditEntryInput) -> None:
        record_audit_entry(self.session, payload, now=self.now)


@dataclass(frozen=True)
class RowResult:
    """Outcome of processing one candidate row."""

    row_id: int
    status: RowStatus
    tier: str | None = None
    errors: tuple[str, ...] = ()
    transient: BaseException | None = None


class Sweep:
    """Run a ladder over the candidate rows of one commitment kind."""

    def __init__(
        self,
        name: str,
        model: type,
        ladder: Ladder,
        candidates: CandidateQuery,
        *,
        session_factory: Callable[[], Session],
        gate: NotificationGate | None = None,
        max_workers: int | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.name = name
        self.model = model
        self.ladder = ladder
        self._candidates = candidates
        self._session_factory = session_factory
        self._now_provider = now_provider or utc_now
        self._gate = gate or NotificationGate(now_provider=self._now_provider)
        self._max_workers = max(
            1, max_workers if max_workers is not None else settings.lifecycle.sweep_workers
        )

    def run(self, now: datetime | None = None) -> dict[str, Any]:
        """Process every candidate row and return the run summary."""
        now = ensure_utc(now or self._now_provider())
        with session_scope(self._session_factory) as session:
            row_ids = list(self._candidates(session, now))

        if self._max_workers == 1 or len(row_ids) <= 1:
            results = [self._process_row(row_id, now) for row_id in row_ids]
        else:
            with ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix=f"sweep-{self.name}"
            ) as pool:
                results = list(pool.map(lambda row_id: self._process_row(row_id, now), row_ids))

        summary = _summarize(self.name, row_ids, results)
        logger.info(
            "Sweep completed: job=%s found=%s processed=%s succeeded=%s failed=%s skipped=%s",
            self.name,
            summary["found"],
            summary["processed"],
            summary["succeeded"],
            summary["failed"],
            summary["skipped"],
        )
        transient = next((result.transient for result in results if result.transient), None)
        if transient is not None:
            # Lets callers report failed rows before the job is retried.
            transient.sweep_summary = summary
            raise transient
        return summary

    def _process_row(self, row_id: int, now: datetime) -> RowResult:
        tier_name: str | None = None
        try:
            with session_scope(self._session_factory) as session:
                row = session.get(self.model, row_id)
                if row is None:
                    return RowResult(row_id=row_id, status="skipped")
                tier = self.ladder.select(row, now)
                if tier is None:
                    return RowResult(row_id=row_id, status="skipped")
                tier_name = tier.name
                context = SweepContext(
                    session=session,
                    row=row,
                    now=now,
                    gate=self._gate,
                    sweep_name=self.name,
                )
                applied = tier.action(context)
                if not applied:
                    session.rollback()
                    return RowResult(row_id=row_id, status="skipped", tier=tier_name)
        except Exception as exc:
            logger.exception(
                "Sweep row failed: job=%s row_id=%s tier=%s", self.name, row_id, tier_name
            )
            return RowResult(
                row_id=row_id,
                status="failed",
                tier=tier_name,
                errors=(f"{self.model.__tablename__} {row_id}: {exc}",),
                transient=exc if is_transient_error(exc) else None,
            )

        for effect in context.after_commit:
            try:
                effect()
            except Exception:
                logger.exception(
                    "Post-commit effect failed: job=%s row_id=%s tier=%s",
                    self.name,
                    row_id,
                    tier_name,
                )
        return RowResult(
            row_id=row_id,
            status="succeeded",
            tier=tier_name,
            errors=tuple(context.errors),
        )


def interrupted_summary(exc: BaseException) -> dict[str, Any] | None:
    """Return the summary attached to a transient error raised by ``Sweep.run``."""
    return getattr(exc, "sweep_summary", None)


def _summarize(name: str, row_ids: list[int], results: list[RowResult]) -> dict[str, Any]:
    actions: dict[str, int] = {}
    errors: list[str] = []
    counts = {"succeeded": 0, "skipped": 0, "failed": 0}
    for result in results:
        counts[result.status] += 1
        if result.status == "succeeded" and result.tier:
            actions[result.tier] = actions.get(result.tier, 0) + 1
        errors.extend(result.errors)
    return {
        "job": name,
        "found": len(row_ids),
        "processed": len(results),
        "succeeded": counts["succeeded"],
        "failed": counts["failed"],
        "skipped": counts["skipped"],
        "actions": actions,
        "errors": errors,
    }
