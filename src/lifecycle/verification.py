"""Verification escalation ladder for submitted tasks and checklist items.

Work submitted for review climbs a three-rung ladder keyed on ``completed_at``:
a reminder to verifiers, an escalation to leadership, and finally an automatic
approval. Each pass applies at most one rung per row, highest rung first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import LifecycleConfig, settings
from lifecycle.audit import ACTOR_USER, AuditEntryInput, record_audit_entry
from lifecycle.errors import CommitmentNotFoundError, InvalidTransitionError, PermissionDeniedError
from lifecycle.ladder import Ladder, Tier, days
from lifecycle.recipients import member_role, role_user_ids
from lifecycle.stages import (
    LEADERSHIP_ROLES,
    VERIFIER_ROLES,
    TaskStatus,
    VerificationStatus,
)
from lifecycle.sweep import Sweep, SweepContext
from models import Band, ChecklistItem, Project, Task
from notifications.gate import NotificationGate, NotificationRequest
from notifications.standing import check_good_standing
from notifications.types import NotificationPriority, NotificationType
from services.database import guarded_update, session_scope
from time_utils import utc_now

logger = logging.getLogger(__name__)

TASKS_JOB = "verification.tasks"
CHECKLIST_ITEMS_JOB = "verification.checklist_items"

AUTO_CONFIRM_TIER = "auto_confirm"
ESCALATE_TIER = "escalate"
REMIND_TIER = "remind"

AUTO_CONFIRM_NOTE = "Auto-confirmed after {days} days without review"


@dataclass(frozen=True)
class _VerificationKind:
    """Per-model wiring for the shared ladder."""

    model: type
    entity_type: str
    label: str
    reminder_type: NotificationType
    escalated_type: NotificationType
    needed_type: NotificationType
    verified_type: NotificationType
    rejected_type: NotificationType
    audit_prefix: str


_TASK = _VerificationKind(
    model=Task,
    entity_type="TASK",
    label="Task",
    reminder_type=NotificationType.TASK_VERIFICATION_REMINDER,
    escalated_type=NotificationType.TASK_VERIFICATION_ESCALATED,
    needed_type=NotificationType.TASK_VERIFICATION_NEEDED,
    verified_type=NotificationType.TASK_VERIFIED,
    rejected_type=NotificationType.TASK_REJECTED,
    audit_prefix="TASK",
)
_CHECKLIST_ITEM = _VerificationKind(
    model=ChecklistItem,
    entity_type="CHECKLIST_ITEM",
    label="Checklist item",
    reminder_type=NotificationType.CHECKLIST_ITEM_VERIFICATION_REMINDER,
    escalated_type=NotificationType.CHECKLIST_ITEM_VERIFICATION_ESCALATED,
    needed_type=NotificationType.CHECKLIST_ITEM_VERIFICATION_NEEDED,
    verified_type=NotificationType.CHECKLIST_ITEM_VERIFIED,
    rejected_type=NotificationType.CHECKLIST_ITEM_REJECTED,
    audit_prefix="CHECKLIST_ITEM",
)


class VerificationLifecycle:
    """Submission, review and escalation of work awaiting verification."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        gate: NotificationGate | None = None,
        config: LifecycleConfig | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._now_provider = now_provider or utc_now
        self._gate = gate or NotificationGate(now_provider=self._now_provider)
        self._config = config or settings.lifecycle

    # Counterparty actions

    def submit_task_for_review(self, task_id: int, user_id: int) -> Task:
        """Mark a task done by its assignee and open verification."""
        now = self._now_provider()
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            task = session.get(Task, task_id)
            if task is None:
                raise CommitmentNotFoundError(_TASK.entity_type, task_id)
            if task.assignee_id != user_id:
                raise PermissionDeniedError("Only the assignee can submit this task for review")
            if task.status in (TaskStatus.COMPLETED, TaskStatus.IN_REVIEW):
                raise InvalidTransitionError(_TASK.entity_type, task_id, task.status, "submit")
            if not task.requires_verification:
                _complete_task(session, task, now, VerificationStatus.APPROVED, None, None)
                return task
            task.status = TaskStatus.IN_REVIEW.value
            task.verification_status = VerificationStatus.PENDING.value
            task.completed_at = now
            task.reminder_sent_at = None
            task.escalated_at = None
            session.flush()
            self._notify_verifiers(session, _TASK, task, task.band_id, now)
        return task

    def verify_task(
        self, task_id: int, user_id: int, *, approved: bool, notes: str | None = None
    ) -> Task:
        """Approve or reject a task awaiting verification."""
        now = self._now_provider()
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            task = session.get(Task, task_id)
            if task is None:
                raise CommitmentNotFoundError(_TASK.entity_type, task_id)
            self._check_verifier(session, task.band_id, user_id, task.assignee_id)
            if approved:
                applied = guarded_update(
                    session,
                    Task,
                    task.id,
                    {
                        "status": TaskStatus.IN_REVIEW.value,
                        "verification_status": VerificationStatus.PENDING.value,
                    },
                    {
                        "status": TaskStatus.COMPLETED.value,
                        "verification_status": VerificationStatus.APPROVED.value,
                        "verified_at": now,
                        "verified_by_id": user_id,
                        "verification_notes": notes,
                    },
                )
                if applied:
                    _increment_completed_tasks(session, task.project_id)
            else:
                applied = guarded_update(
                    session,
                    Task,
                    task.id,
                    {
                        "status": TaskStatus.IN_REVIEW.value,
                        "verification_status": VerificationStatus.PENDING.value,
                    },
                    {
                        "status": TaskStatus.IN_PROGRESS.value,
                        "verification_status": VerificationStatus.REJECTED.value,
                        "verified_at": now,
                        "verified_by_id": user_id,
                        "verification_notes": notes,
                    },
                )
            if not applied:
                raise InvalidTransitionError(
                    _TASK.entity_type, task_id, task.verification_status, "verify"
                )
            self._record_review(session, _TASK, task, task.band_id, approved, user_id, now)
        return task

    def claim_checklist_item(self, item_id: int, user_id: int) -> ChecklistItem:
        """Take an open checklist item; only one member can hold it at a time."""
        now = self._now_provider()
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            item = session.get(ChecklistItem, item_id)
            if item is None:
                raise CommitmentNotFoundError(_CHECKLIST_ITEM.entity_type, item_id)
            band_id = session.get(Task, item.task_id).band_id
            if session.get(Band, band_id).dissolved_at is not None:
                raise InvalidTransitionError(
                    _CHECKLIST_ITEM.entity_type, item_id, "dissolved", "claim"
                )
            if member_role(session, band_id, user_id) is None:
                raise PermissionDeniedError("Only active band members can claim checklist items")
            standing = check_good_standing(session, band_id, user_id, now)
            if not standing.in_good_standing:
                raise PermissionDeniedError(
                    standing.reason or "Dues must be current to claim checklist items"
                )
            if item.assignee_id == user_id:
                return item
            applied = guarded_update(
                session,
                ChecklistItem,
                item.id,
                {"assignee_id": None, "is_completed": False},
                {
                    "assignee_id": user_id,
                    "verification_status": None,
                    "verification_notes": None,
                    "reminder_sent_at": None,
                    "escalated_at": None,
                },
            )
            if not applied:
                current = "completed" if item.is_completed else "claimed"
                raise InvalidTransitionError(_CHECKLIST_ITEM.entity_type, item_id, current, "claim")
            record_audit_entry(
                session,
                AuditEntryInput(
                    action="CHECKLIST_ITEM_CLAIMED",
                    entity_type=_CHECKLIST_ITEM.entity_type,
                    entity_id=item.id,
                    band_id=band_id,
                    actor_type=ACTOR_USER,
                    actor_id=user_id,
                    changes={"taskId": item.task_id},
                ),
                now=now,
            )
        logger.info("Checklist item claimed: item_id=%s user_id=%s", item_id, user_id)
        return item

    def unclaim_checklist_item(
        self, item_id: int, user_id: int, reason: str | None = None
    ) -> ChecklistItem:
        """Release a claimed item back to the band, discarding any progress on it."""
        now = self._now_provider()
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            item = session.get(ChecklistItem, item_id)
            if item is None:
                raise CommitmentNotFoundError(_CHECKLIST_ITEM.entity_type, item_id)
            if item.assignee_id != user_id:
                raise PermissionDeniedError("You have not claimed this item")
            if item.verification_status == VerificationStatus.APPROVED.value:
                raise InvalidTransitionError(
                    _CHECKLIST_ITEM.entity_type, item_id, item.verification_status, "unclaim"
                )
            applied = guarded_update(
                session,
                ChecklistItem,
                item.id,
                {"assignee_id": user_id},
                {
                    "assignee_id": None,
                    "is_completed": False,
                    "completed_at": None,
                    "verification_status": None,
                    "verification_notes": None,
                    "reminder_sent_at": None,
                    "escalated_at": None,
                },
            )
            if not applied:
                raise InvalidTransitionError(
                    _CHECKLIST_ITEM.entity_type, item_id, "unclaimed", "unclaim"
                )
            record_audit_entry(
                session,
                AuditEntryInput(
                    action="CHECKLIST_ITEM_UNCLAIMED",
                    entity_type=_CHECKLIST_ITEM.entity_type,
                    entity_id=item.id,
                    band_id=session.get(Task, item.task_id).band_id,
                    actor_type=ACTOR_USER,
                    actor_id=user_id,
                    changes={"taskId": item.task_id, "reason": reason},
                ),
                now=now,
            )
        logger.info("Checklist item released: item_id=%s user_id=%s", item_id, user_id)
        return item

    def submit_checklist_item(self, item_id: int, user_id: int) -> ChecklistItem:
        """Mark a checklist item complete, opening verification when required."""
        now = self._now_provider()
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            item = session.get(ChecklistItem, item_id)
            if item is None:
                raise CommitmentNotFoundError(_CHECKLIST_ITEM.entity_type, item_id)
            if item.assignee_id is not None and item.assignee_id != user_id:
                raise PermissionDeniedError("Only the assignee can complete this item")
            if item.is_completed:
                raise InvalidTransitionError(
                    _CHECKLIST_ITEM.entity_type, item_id, "completed", "submit"
                )
            item.is_completed = True
            item.completed_at = now
            item.reminder_sent_at = None
            item.escalated_at = None
            if item.requires_verification:
                item.verification_status = VerificationStatus.PENDING.value
            session.flush()
            if item.requires_verification:
                band_id = session.get(Task, item.task_id).band_id
                self._notify_verifiers(session, _CHECKLIST_ITEM, item, band_id, now)
        return item

    def verify_checklist_item(
        self, item_id: int, user_id: int, *, approved: bool, notes: str | None = None
    ) -> ChecklistItem:
        """Approve or reject a completed checklist item."""
        now = self._now_provider()
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            item = session.get(ChecklistItem, item_id)
            if item is None:
                raise CommitmentNotFoundError(_CHECKLIST_ITEM.entity_type, item_id)
            band_id = session.get(Task, item.task_id).band_id
            self._check_verifier(session, band_id, user_id, item.assignee_id)
            values: dict[str, Any] = {
                "verification_status": (
                    VerificationStatus.APPROVED.value
                    if approved
                    else VerificationStatus.REJECTED.value
                ),
                "verified_at": now,
                "verified_by_id": user_id,
                "verification_notes": notes,
            }
            if not approved:
                values.update(is_completed=False, completed_at=None)
            applied = guarded_update(
                session,
                ChecklistItem,
                item.id,
                {"verification_status": VerificationStatus.PENDING.value},
                values,
            )
            if not applied:
                raise InvalidTransitionError(
                    _CHECKLIST_ITEM.entity_type, item_id, item.verification_status, "verify"
                )
            self._record_review(session, _CHECKLIST_ITEM, item, band_id, approved, user_id, now)
        return item

    # Sweeps

    def ladder(self, kind: str = "task") -> Ladder:
        """Return the escalation ladder for ``task`` or ``checklist_item`` rows."""
        wiring = _TASK if kind == "task" else _CHECKLIST_ITEM
        config = self._config
        return Ladder(
            lambda row: row.completed_at,
            [
                Tier(
                    name=AUTO_CONFIRM_TIER,
                    action=lambda context: self._auto_confirm(wiring, context),
                    start=days(config.verification_auto_confirm_days),
                ),
                Tier(
                    name=ESCALATE_TIER,
                    action=lambda context: self._escalate(wiring, context),
                    start=days(config.verification_escalation_days),
                    guard=lambda row: row.escalated_at is None,
                ),
                Tier(
                    name=REMIND_TIER,
                    action=lambda context: self._remind(wiring, context),
                    start=days(config.verification_reminder_days),
                    guard=lambda row: row.reminder_sent_at is None,
                ),
            ],
        )

    def task_sweep(self, max_workers: int | None = None) -> Sweep:
        config = self._config

        def candidates(session: Session, now: datetime) -> list[int]:
            statement = (
                select(Task.id)
                .join(Band, Band.id == Task.band_id)
                .where(
                    Task.status == TaskStatus.IN_REVIEW.value,
                    Task.verification_status == VerificationStatus.PENDING.value,
                    Task.completed_at.is_not(None),
                    Task.completed_at <= now - days(config.verification_reminder_days),
                    Band.dissolved_at.is_(None),
                )
                .order_by(Task.id.asc())
            )
            return list(session.scalars(statement))

        return self._sweep(TASKS_JOB, Task, "task", candidates, max_workers)

    def checklist_item_sweep(self, max_workers: int | None = None) -> Sweep:
        config = self._config

        def candidates(session: Session, now: datetime) -> list[int]:
            statement = (
                select(ChecklistItem.id)
                .join(Task, Task.id == ChecklistItem.task_id)
                .join(Band, Band.id == Task.band_id)
                .where(
                    ChecklistItem.is_completed.is_(True),
                    ChecklistItem.requires_verification.is_(True),
                    ChecklistItem.verification_status == VerificationStatus.PENDING.value,
                    ChecklistItem.completed_at.is_not(None),
                    ChecklistItem.completed_at <= now - days(config.verification_reminder_days),
                    Band.dissolved_at.is_(None),
                )
                .order_by(ChecklistItem.id.asc())
            )
            return list(session.scalars(statement))

        return self._sweep(
            CHECKLIST_ITEMS_JOB, ChecklistItem, "checklist_item", candidates, max_workers
        )

    def _sweep(self, name, model, kind, candidates, max_workers) -> Sweep:
        return Sweep(
            name,
            model,
            self.ladder(kind),
            candidates,
            session_factory=self._session_factory,
            gate=self._gate,
            max_workers=max_workers,
            now_provider=self._now_provider,
        )

    def _auto_confirm(self, wiring: _VerificationKind, context: SweepContext) -> bool:
        row = context.row
        note = AUTO_CONFIRM_NOTE.format(days=self._config.verification_auto_confirm_days)
        expected: dict[str, Any] = {"verification_status": VerificationStatus.PENDING.value}
        values: dict[str, Any] = {
            "verification_status": VerificationStatus.APPROVED.value,
            "verified_at": context.now,
            "verification_notes": note,
        }
        if wiring is _TASK:
            expected["status"] = TaskStatus.IN_REVIEW.value
            values["status"] = TaskStatus.COMPLETED.value
        if not context.claim(expected, values):
            return False
        band_id = _band_id_for(context.session, row)
        if wiring is _TASK:
            _increment_completed_tasks(context.session, row.project_id)
        if row.assignee_id is not None:
            context.notify(
                NotificationRequest(
                    user_id=row.assignee_id,
                    type=wiring.verified_type,
                    band_id=band_id,
                    title=f"{wiring.label} Auto-Approved",
                    message=f'"{_describe(row)}" was automatically approved. {note}.',
                    priority=NotificationPriority.MEDIUM.value,
                    related_type=wiring.entity_type.lower(),
                    related_id=row.id,
                )
            )
        context.audit(
            AuditEntryInput(
                action=f"{wiring.audit_prefix}_AUTO_CONFIRMED",
                entity_type=wiring.entity_type,
                entity_id=row.id,
                band_id=band_id,
                changes={
                    "verification_status": [
                        VerificationStatus.PENDING,
                        VerificationStatus.APPROVED,
                    ],
                    "auto_confirmed_after_days": self._config.verification_auto_confirm_days,
                },
            )
        )
        return True

    def _escalate(self, wiring: _VerificationKind, context: SweepContext) -> bool:
        row = context.row
        if not context.claim(
            {"verification_status": VerificationStatus.PENDING.value, "escalated_at": None},
            {"escalated_at": context.now},
        ):
            return False
        band_id = _band_id_for(context.session, row)
        leaders = [
            user_id
            for user_id in role_user_ids(context.session, band_id, LEADERSHIP_ROLES)
            if user_id != row.assignee_id
        ]
        context.notify_many(
            leaders,
            NotificationRequest(
                type=wiring.escalated_type,
                band_id=band_id,
                title=f"{wiring.label} Escalated",
                message=(
                    f'"{_describe(row)}" has been awaiting verification for '
                    f"{self._config.verification_escalation_days} days."
                ),
                priority=NotificationPriority.HIGH.value,
                related_type=wiring.entity_type.lower(),
                related_id=row.id,
            ),
        )
        context.audit(
            AuditEntryInput(
                action=f"{wiring.audit_prefix}_ESCALATED",
                entity_type=wiring.entity_type,
                entity_id=row.id,
                band_id=band_id,
                changes={"escalated_to": leaders},
            )
        )
        return True

    def _remind(self, wiring: _VerificationKind, context: SweepContext) -> bool:
        row = context.row
        if not context.claim(
            {"verification_status": VerificationStatus.PENDING.value, "reminder_sent_at": None},
            {"reminder_sent_at": context.now},
        ):
            return False
        band_id = _band_id_for(context.session, row)
        verifiers = [
            user_id
            for user_id in role_user_ids(context.session, band_id, VERIFIER_ROLES)
            if user_id != row.assignee_id
        ]
        context.notify_many(
            verifiers,
            NotificationRequest(
                type=wiring.reminder_type,
                band_id=band_id,
                title=f"{wiring.label} Awaiting Verification",
                message=(
                    f'"{_describe(row)}" has been awaiting verification for '
                    f"{self._config.verification_reminder_days} days."
                ),
                priority=NotificationPriority.HIGH.value,
                related_type=wiring.entity_type.lower(),
                related_id=row.id,
            ),
        )
        return True

    def _notify_verifiers(
        self,
        session: Session,
        wiring: _VerificationKind,
        row: Any,
        band_id: int,
        now: datetime,
    ) -> None:
        verifiers = [
            user_id
            for user_id in role_user_ids(session, band_id, VERIFIER_ROLES)
            if user_id != row.assignee_id
        ]
        self._gate.create_many(
            session,
            verifiers,
            NotificationRequest(
                type=wiring.needed_type,
                band_id=band_id,
                title=f"{wiring.label} Needs Verification",
                message=f'"{_describe(row)}" was submitted for review.',
                priority=NotificationPriority.MEDIUM.value,
                related_type=wiring.entity_type.lower(),
                related_id=row.id,
            ),
        )

    def _check_verifier(
        self, session: Session, band_id: int, user_id: int, assignee_id: int | None
    ) -> None:
        role = member_role(session, band_id, user_id)
        if role not in {verifier.value for verifier in VERIFIER_ROLES}:
            raise PermissionDeniedError("Only founders, governors or moderators can verify work")
        if assignee_id is not None and assignee_id == user_id:
            raise PermissionDeniedError("You cannot verify your own work")

    def _record_review(
        self,
        session: Session,
        wiring: _VerificationKind,
        row: Any,
        band_id: int,
        approved: bool,
        user_id: int,
        now: datetime,
    ) -> None:
        if row.assignee_id is not None:
            self._gate.create(
                session,
                NotificationRequest(
                    user_id=row.assignee_id,
                    type=wiring.verified_type if approved else wiring.rejected_type,
                    band_id=band_id,
                    title=f"{wiring.label} {'Approved' if approved else 'Rejected'}",
                    message=row.verification_notes or f'"{_describe(row)}" was reviewed.',
                    priority=NotificationPriority.MEDIUM.value,
                    related_type=wiring.entity_type.lower(),
                    related_id=row.id,
                ),
            )
        record_audit_entry(
            session,
            AuditEntryInput(
                action=f"{wiring.audit_prefix}_{'VERIFIED' if approved else 'REJECTED'}",
                entity_type=wiring.entity_type,
                entity_id=row.id,
                band_id=band_id,
                actor_type=ACTOR_USER,
                actor_id=user_id,
                changes={"verification_status": row.verification_status},
            ),
            now=now,
        )


def _complete_task(
    session: Session,
    task: Task,
    now: datetime,
    verification: VerificationStatus,
    verified_by_id: int | None,
    notes: str | None,
) -> None:
    task.status = TaskStatus.COMPLETED.value
    task.verification_status = verification.value
    task.completed_at = now
    task.verified_at = now
    task.verified_by_id = verified_by_id
    task.verification_notes = notes
    session.flush()
    _increment_completed_tasks(session, task.project_id)


def _increment_completed_tasks(session: Session, project_id: int) -> None:
    session.execute(
        update(Project)
        .where(Project.id == project_id)
        .values(completed_tasks=Project.completed_tasks + 1)
        .execution_options(synchronize_session=False)
    )


def _band_id_for(session: Session, row: Any) -> int:
    if isinstance(row, Task):
        return row.band_id
    return session.get(Task, row.task_id).band_id


def _describe(row: Any) -> str:
    if isinstance(row, Task):
        return row.title
    return row.description
