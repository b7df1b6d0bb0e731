"""Checklist-item expense reimbursements and their auto-confirm lifecycle."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import LifecycleConfig, settings
from lifecycle.audit import ACTOR_USER, AuditEntryInput, record_audit_entry
from lifecycle.auto_confirm import (
    auto_confirm_deadline,
    auto_confirm_ladder,
    days_until,
    warning_bounds,
)
from lifecycle.errors import CommitmentNotFoundError, InvalidTransitionError, PermissionDeniedError
from lifecycle.ladder import Ladder
from lifecycle.recipients import is_treasurer, user_email
from lifecycle.stages import ReimbursementStatus
from lifecycle.sweep import Sweep, SweepContext
from models import ChecklistItem, Task
from notifications.email import EmailClient, deferred_email
from notifications.gate import NotificationGate, NotificationRequest, format_amount
from notifications.types import NotificationPriority, NotificationType
from services.database import guarded_update, session_scope
from time_utils import utc_now

logger = logging.getLogger(__name__)

ENTITY_TYPE = "CHECKLIST_ITEM"
AUTO_CONFIRM_JOB = "reimbursement.auto_confirm"
WARNING_JOB = "reimbursement.auto_confirm_warning"


class ReimbursementLifecycle:
    """Counterparty actions and sweeps for checklist-item reimbursements.

    The item's assignee is the counterparty: a treasurer marks the expense as
    reimbursed and the assignee confirms or disputes receipt. Silence for the
    auto-confirm window resolves the claim as AUTO_CONFIRMED.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        gate: NotificationGate | None = None,
        email_client: EmailClient | None = None,
        config: LifecycleConfig | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._now_provider = now_provider or utc_now
        self._gate = gate or NotificationGate(now_provider=self._now_provider)
        self._email_client = email_client or EmailClient()
        self._config = config or settings.lifecycle

    def request_reimbursement(self, item_id: int, user_id: int, amount_cents: int) -> ChecklistItem:
        """Attach an expense claim to a checklist item as its assignee."""
        if amount_cents <= 0:
            raise ValueError("amount_cents must be positive.")
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            item, _task = self._load(session, item_id)
            if item.assignee_id != user_id:
                raise PermissionDeniedError("Only the assignee can request a reimbursement")
            if item.reimbursement_status is not None:
                raise InvalidTransitionError(
                    ENTITY_TYPE, item_id, item.reimbursement_status, "request reimbursement for"
                )
            item.expense_amount_cents = amount_cents
            item.reimbursement_status = ReimbursementStatus.PENDING.value
            item.reimbursement_auto_confirm_warned = False
            session.flush()
        return item

    def mark_reimbursed(self, item_id: int, user_id: int) -> ChecklistItem:
        """Record that a treasurer paid the expense and start the confirm timer."""
        now = self._now_provider()
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            item, task = self._load(session, item_id)
            if not is_treasurer(session, task.band_id, user_id):
                raise PermissionDeniedError("Only treasurers can mark reimbursements as paid")
            if item.reimbursement_status != ReimbursementStatus.PENDING:
                raise InvalidTransitionError(
                    ENTITY_TYPE, item_id, item.reimbursement_status, "mark reimbursed"
                )
            applied = guarded_update(
                session,
                ChecklistItem,
                item.id,
                {"reimbursement_status": ReimbursementStatus.PENDING.value},
                {
                    "reimbursement_status": ReimbursementStatus.REIMBURSED.value,
                    "reimbursed_at": now,
                    "reimbursed_by_id": user_id,
                    "reimbursement_auto_confirm_at": auto_confirm_deadline(now, self._config),
                    "reimbursement_auto_confirm_warned": False,
                },
            )
            if not applied:
                raise InvalidTransitionError(ENTITY_TYPE, item_id, "changed", "mark reimbursed")
            if item.assignee_id is not None:
                self._gate.create(
                    session,
                    NotificationRequest(
                        user_id=item.assignee_id,
                        type=NotificationType.REIMBURSEMENT_MARKED,
                        band_id=task.band_id,
                        title="Reimbursement Sent",
                        message=(
                            f"Your reimbursement of {format_amount(item.expense_amount_cents or 0)} "
                            f'for "{item.description}" was marked as paid. Please confirm receipt.'
                        ),
                        priority=NotificationPriority.MEDIUM.value,
                        related_type="checklist_item",
                        related_id=item.id,
                    ),
                )
            self._audit(session, item, task, "CHECKLIST_REIMBURSEMENT_MARKED", user_id, now)
        return item

    def confirm(self, item_id: int, user_id: int) -> ChecklistItem:
        return self._resolve(item_id, user_id, ReimbursementStatus.CONFIRMED, None)

    def dispute(self, item_id: int, user_id: int, reason: str) -> ChecklistItem:
        if not reason or not reason.strip():
            raise ValueError("A dispute reason is required.")
        return self._resolve(item_id, user_id, ReimbursementStatus.DISPUTED, reason.strip())

    def _resolve(
        self,
        item_id: int,
        user_id: int,
        target: ReimbursementStatus,
        reason: str | None,
    ) -> ChecklistItem:
        action = "confirm" if target == ReimbursementStatus.CONFIRMED else "dispute"
        now = self._now_provider()
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            item, task = self._load(session, item_id)
            if item.reimbursement_status != ReimbursementStatus.REIMBURSED:
                raise InvalidTransitionError(
                    ENTITY_TYPE, item_id, item.reimbursement_status, action
                )
            if item.assignee_id != user_id:
                raise PermissionDeniedError(f"Only the assignee can {action} this reimbursement")
            applied = guarded_update(
                session,
                ChecklistItem,
                item.id,
                {"reimbursement_status": ReimbursementStatus.REIMBURSED.value},
                {
                    "reimbursement_status": target.value,
                    "reimbursement_resolved_at": now,
                    "reimbursement_dispute_reason": reason,
                },
            )
            if not applied:
                raise InvalidTransitionError(ENTITY_TYPE, item_id, "resolved", action)
            notification_type = (
                NotificationType.REIMBURSEMENT_CONFIRMED
                if target == ReimbursementStatus.CONFIRMED
                else NotificationType.REIMBURSEMENT_DISPUTED
            )
            if item.reimbursed_by_id is not None:
                self._gate.create(
                    session,
                    NotificationRequest(
                        user_id=item.reimbursed_by_id,
                        type=notification_type,
                        band_id=task.band_id,
                        title=f"Reimbursement {target.value.title()}",
                        message=reason or f'The reimbursement for "{item.description}" was confirmed.',
                        priority=(
                            NotificationPriority.LOW.value
                            if target == ReimbursementStatus.CONFIRMED
                            else NotificationPriority.HIGH.value
                        ),
                        related_type="checklist_item",
                        related_id=item.id,
                    ),
                )
            self._audit(
                session,
                item,
                task,
                f"CHECKLIST_REIMBURSEMENT_{target.value}",
                user_id,
                now,
            )
        return item

    # Sweeps

    def ladder(self) -> Ladder:
        return auto_confirm_ladder(
            lambda item: item.reimbursement_auto_confirm_at,
            resolve=self._auto_confirm,
            warn=self._warn,
            warned_flag="reimbursement_auto_confirm_warned",
            config=self._config,
        )

    def auto_confirm_sweep(self, max_workers: int | None = None) -> Sweep:
        def candidates(session: Session, now: datetime) -> list[int]:
            statement = (
                select(ChecklistItem.id)
                .where(
                    ChecklistItem.reimbursement_status == ReimbursementStatus.REIMBURSED.value,
                    ChecklistItem.reimbursement_auto_confirm_at <= now,
                )
                .order_by(ChecklistItem.id.asc())
            )
            return list(session.scalars(statement))

        return self._sweep(AUTO_CONFIRM_JOB, "auto_confirm", candidates, max_workers)

    def warning_sweep(self, max_workers: int | None = None) -> Sweep:
        config = self._config

        def candidates(session: Session, now: datetime) -> list[int]:
            lower, upper = warning_bounds(now, config)
            statement = (
                select(ChecklistItem.id)
                .where(
                    ChecklistItem.reimbursement_status == ReimbursementStatus.REIMBURSED.value,
                    ChecklistItem.reimbursement_auto_confirm_warned.is_(False),
                    ChecklistItem.reimbursement_auto_confirm_at >= lower,
                    ChecklistItem.reimbursement_auto_confirm_at <= upper,
                )
                .order_by(ChecklistItem.id.asc())
            )
            return list(session.scalars(statement))

        return self._sweep(WARNING_JOB, "auto_confirm_warning", candidates, max_workers)

    def _sweep(self, name, tier, candidates, max_workers) -> Sweep:
        return Sweep(
            name,
            ChecklistItem,
            self.ladder().only(tier),
            candidates,
            session_factory=self._session_factory,
            gate=self._gate,
            max_workers=max_workers,
            now_provider=self._now_provider,
        )

    def _auto_confirm(self, context: SweepContext) -> bool:
        item: ChecklistItem = context.row
        if not context.claim(
            {"reimbursement_status": ReimbursementStatus.REIMBURSED.value},
            {
                "reimbursement_status": ReimbursementStatus.AUTO_CONFIRMED.value,
                "reimbursement_resolved_at": context.now,
            },
        ):
            return False
        task = context.session.get(Task, item.task_id)
        context.notify_many(
            [item.assignee_id, item.reimbursed_by_id],
            NotificationRequest(
                type=NotificationType.REIMBURSEMENT_AUTO_CONFIRMED,
                band_id=task.band_id,
                title="Reimbursement Auto-Confirmed",
                message=(
                    f"The reimbursement of {format_amount(item.expense_amount_cents or 0)} "
                    f'for "{item.description}" was automatically confirmed after '
                    f"{self._config.auto_confirm_days} days."
                ),
                priority=NotificationPriority.LOW.value,
                related_type="checklist_item",
                related_id=item.id,
            ),
        )
        context.audit(
            AuditEntryInput(
                action="CHECKLIST_REIMBURSEMENT_AUTO_CONFIRMED",
                entity_type=ENTITY_TYPE,
                entity_id=item.id,
                band_id=task.band_id,
                changes={
                    "task_id": item.task_id,
                    "expense_amount_cents": item.expense_amount_cents,
                    "auto_confirmed_after_days": self._config.auto_confirm_days,
                },
            )
        )
        return True

    def _warn(self, context: SweepContext) -> bool:
        item: ChecklistItem = context.row
        if item.assignee_id is None:
            return False
        if not context.claim(
            {
                "reimbursement_status": ReimbursementStatus.REIMBURSED.value,
                "reimbursement_auto_confirm_warned": False,
            },
            {"reimbursement_auto_confirm_warned": True},
        ):
            return False
        task = context.session.get(Task, item.task_id)
        days_left = days_until(item.reimbursement_auto_confirm_at, context.now)
        context.notify(
            NotificationRequest(
                user_id=item.assignee_id,
                type=NotificationType.REIMBURSEMENT_AUTO_CONFIRM_WARNING,
                band_id=task.band_id,
                title="Reimbursement Auto-Confirm Warning",
                message=(
                    f"Your reimbursement of {format_amount(item.expense_amount_cents or 0)} "
                    f'for "{item.description}" will auto-confirm in {days_left} days. '
                    "Please confirm or dispute if there's an issue."
                ),
                priority=NotificationPriority.MEDIUM.value,
                related_type="checklist_item",
                related_id=item.id,
                metadata={"daysLeft": days_left},
            ),
        )
        address = user_email(context.session, item.assignee_id)
        if address:
            context.after_commit.append(
                deferred_email(
                    self._email_client,
                    "reimbursement_auto_confirm_warning",
                    address,
                    {"itemId": item.id, "description": item.description, "daysLeft": days_left},
                )
            )
        return True

    def _load(self, session: Session, item_id: int) -> tuple[ChecklistItem, Task]:
        item = session.get(ChecklistItem, item_id)
        if item is None:
            raise CommitmentNotFoundError(ENTITY_TYPE, item_id)
        return item, session.get(Task, item.task_id)

    def _audit(
        self,
        session: Session,
        item: ChecklistItem,
        task: Task,
        action: str,
        user_id: int,
        now: datetime,
    ) -> None:
        record_audit_entry(
            session,
            AuditEntryInput(
                action=action,
                entity_type=ENTITY_TYPE,
                entity_id=item.id,
                band_id=task.band_id,
                actor_type=ACTOR_USER,
                actor_id=user_id,
                changes={"reimbursement_status": item.reimbursement_status},
            ),
            now=now,
        )
