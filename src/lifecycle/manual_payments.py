"""Manual (off-platform) dues payments and their auto-confirm lifecycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass
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
from lifecycle.recipients import (
    is_treasurer,
    member_role,
    role_user_ids,
    treasurer_user_ids,
    user_email,
)
from lifecycle.stages import (
    LEADERSHIP_ROLES,
    ManualPaymentInitiator,
    ManualPaymentStatus,
    MemberBillingStatus,
)
from lifecycle.sweep import Sweep, SweepContext
from models import ManualPayment, MemberBilling
from notifications.email import EmailClient, deferred_email
from notifications.gate import NotificationGate, NotificationRequest, format_amount
from notifications.types import NotificationPriority, NotificationType
from services.database import guarded_update, session_scope
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

ENTITY_TYPE = "ManualPayment"
AUTO_CONFIRM_JOB = "manual_payment.auto_confirm"
WARNING_JOB = "manual_payment.auto_confirm_warning"


@dataclass(frozen=True)
class ManualPaymentInput:
    """Input payload for recording a manual payment."""

    band_id: int
    member_user_id: int
    actor_user_id: int
    amount_cents: int
    payment_method: str
    payment_date: datetime
    note: str | None = None


def upsert_member_billing(
    session: Session,
    band_id: int,
    user_id: int,
    last_payment_at: datetime,
    now: datetime,
) -> MemberBilling:
    """Mark a payer's dues standing ACTIVE as of ``last_payment_at``."""
    billing = (
        session.query(MemberBilling).filter_by(band_id=band_id, user_id=user_id).one_or_none()
    )
    if billing is None:
        billing = MemberBilling(band_id=band_id, user_id=user_id)
        session.add(billing)
    billing.status = MemberBillingStatus.ACTIVE.value
    billing.last_payment_at = last_payment_at
    billing.updated_at = now
    session.flush()
    return billing


def counterparty_user_ids(session: Session, payment: ManualPayment) -> list[int]:
    """Users expected to confirm or dispute the payment."""
    if payment.initiated_by_role == ManualPaymentInitiator.MEMBER:
        return treasurer_user_ids(session, payment.band_id)
    return [payment.member_user_id]


class ManualPaymentLifecycle:
    """Counterparty actions and sweeps for manual payments."""

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

    # Counterparty actions

    def record(self, payload: ManualPaymentInput) -> ManualPayment:
        """Record a payment and start its auto-confirm timer."""
        if payload.amount_cents <= 0:
            raise ValueError("amount_cents must be positive.")
        now = self._now_provider()
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            if member_role(session, payload.band_id, payload.member_user_id) is None:
                raise CommitmentNotFoundError("Member", payload.member_user_id)
            if member_role(session, payload.band_id, payload.actor_user_id) is None:
                raise PermissionDeniedError("You must be an active member of this band")
            actor_is_treasurer = is_treasurer(session, payload.band_id, payload.actor_user_id)
            if payload.member_user_id != payload.actor_user_id and not actor_is_treasurer:
                raise PermissionDeniedError(
                    "Only treasurers can record payments for other members"
                )
            payment = ManualPayment(
                band_id=payload.band_id,
                member_user_id=payload.member_user_id,
                initiated_by_id=payload.actor_user_id,
                initiated_by_role=(
                    ManualPaymentInitiator.TREASURER.value
                    if actor_is_treasurer
                    else ManualPaymentInitiator.MEMBER.value
                ),
                amount_cents=payload.amount_cents,
                payment_method=payload.payment_method,
                payment_date=ensure_utc(payload.payment_date),
                note=payload.note,
                status=ManualPaymentStatus.PENDING.value,
                submitted_at=now,
                auto_confirm_at=auto_confirm_deadline(now, self._config),
                auto_confirm_warned=False,
            )
            session.add(payment)
            session.flush()
            self._gate.create_many(
                session,
                counterparty_user_ids(session, payment),
                NotificationRequest(
                    type=NotificationType.MANUAL_PAYMENT_RECORDED,
                    band_id=payment.band_id,
                    title="Payment Recorded",
                    message=(
                        f"A payment of {format_amount(payment.amount_cents)} was recorded. "
                        "Please review and confirm."
                    ),
                    priority=NotificationPriority.MEDIUM.value,
                    related_type=ENTITY_TYPE,
                    related_id=payment.id,
                    metadata={"paymentId": payment.id, "amount": payment.amount_cents},
                ),
            )
            record_audit_entry(
                session,
                AuditEntryInput(
                    action="MANUAL_PAYMENT_RECORDED",
                    entity_type=ENTITY_TYPE,
                    entity_id=payment.id,
                    band_id=payment.band_id,
                    actor_type=ACTOR_USER,
                    actor_id=payload.actor_user_id,
                    changes={"status": payment.status, "auto_confirm_at": payment.auto_confirm_at},
                ),
                now=now,
            )
        logger.info(
            "Manual payment recorded: payment_id=%s band_id=%s role=%s",
            payment.id,
            payment.band_id,
            payment.initiated_by_role,
        )
        return payment

    def confirm(self, payment_id: int, user_id: int) -> ManualPayment:
        """Confirm a pending payment as its counterparty."""
        now = self._now_provider()
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            payment = self._load_pending(session, payment_id, user_id, "confirm")
            self._claim(session, payment, ManualPaymentStatus.CONFIRMED, user_id, now, "confirm")
            upsert_member_billing(
                session, payment.band_id, payment.member_user_id, payment.payment_date, now
            )
            self._gate.create(
                session,
                NotificationRequest(
                    user_id=payment.initiated_by_id,
                    type=NotificationType.MANUAL_PAYMENT_CONFIRMED,
                    band_id=payment.band_id,
                    title="Payment Confirmed",
                    message=(
                        f"Your recorded payment of {format_amount(payment.amount_cents)} "
                        "has been confirmed."
                    ),
                    priority=NotificationPriority.LOW.value,
                    related_type=ENTITY_TYPE,
                    related_id=payment.id,
                ),
            )
            self._audit(session, payment, "MANUAL_PAYMENT_CONFIRMED", user_id, now)
        return payment

    def dispute(self, payment_id: int, user_id: int, reason: str) -> ManualPayment:
        """Dispute a pending payment as its counterparty."""
        if not reason or not reason.strip():
            raise ValueError("A dispute reason is required.")
        now = self._now_provider()
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            payment = self._load_pending(session, payment_id, user_id, "dispute")
            self._claim(
                session,
                payment,
                ManualPaymentStatus.DISPUTED,
                user_id,
                now,
                "dispute",
                dispute_reason=reason.strip(),
            )
            request = NotificationRequest(
                user_id=payment.initiated_by_id,
                type=NotificationType.MANUAL_PAYMENT_DISPUTED,
                band_id=payment.band_id,
                title="Payment Disputed",
                message=(
                    f"A recorded payment of {format_amount(payment.amount_cents)} "
                    f"was disputed: {reason.strip()}"
                ),
                priority=NotificationPriority.HIGH.value,
                related_type=ENTITY_TYPE,
                related_id=payment.id,
            )
            self._gate.create_many(
                session,
                [payment.initiated_by_id]
                + role_user_ids(session, payment.band_id, LEADERSHIP_ROLES),
                request,
            )
            self._audit(
                session, payment, "MANUAL_PAYMENT_DISPUTED", user_id, now, reason=reason.strip()
            )
        return payment

    def resolve(
        self,
        payment_id: int,
        user_id: int,
        outcome: ManualPaymentStatus | str,
        note: str | None = None,
    ) -> ManualPayment:
        """Settle a disputed payment as CONFIRMED or REJECTED.

        Only founders and governors may resolve. A confirmed outcome marks the
        member's dues ACTIVE as of the payment date.
        """
        outcome = ManualPaymentStatus(outcome)
        if outcome not in (ManualPaymentStatus.CONFIRMED, ManualPaymentStatus.REJECTED):
            raise ValueError("A dispute resolves to CONFIRMED or REJECTED.")
        note = note.strip() if note and note.strip() else None
        now = self._now_provider()
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            payment = session.get(ManualPayment, payment_id)
            if payment is None:
                raise CommitmentNotFoundError(ENTITY_TYPE, payment_id)
            if payment.status != ManualPaymentStatus.DISPUTED:
                raise InvalidTransitionError(ENTITY_TYPE, payment_id, payment.status, "resolve")
            if member_role(session, payment.band_id, user_id) not in {
                role.value for role in LEADERSHIP_ROLES
            }:
                raise PermissionDeniedError("Only governors or founders can resolve disputes")
            applied = guarded_update(
                session,
                ManualPayment,
                payment.id,
                {"status": ManualPaymentStatus.DISPUTED.value},
                {
                    "status": outcome.value,
                    "resolved_at": now,
                    "resolved_by_id": user_id,
                    "resolution_note": note,
                },
            )
            if not applied:
                raise InvalidTransitionError(ENTITY_TYPE, payment.id, "resolved", "resolve")
            if outcome is ManualPaymentStatus.CONFIRMED:
                upsert_member_billing(
                    session, payment.band_id, payment.member_user_id, payment.payment_date, now
                )
            self._gate.create_many(
                session,
                [payment.initiated_by_id, payment.member_user_id],
                NotificationRequest(
                    type=NotificationType.MANUAL_PAYMENT_RESOLVED,
                    band_id=payment.band_id,
                    title="Payment Dispute Resolved",
                    message=(
                        f"The disputed payment of {format_amount(payment.amount_cents)} "
                        f"has been {outcome.value.lower()}."
                    ),
                    priority=NotificationPriority.MEDIUM.value,
                    related_type=ENTITY_TYPE,
                    related_id=payment.id,
                    metadata={
                        "paymentId": payment.id,
                        "amount": payment.amount_cents,
                        "outcome": outcome.value,
                    },
                ),
            )
            self._audit(
                session,
                payment,
                "MANUAL_PAYMENT_RESOLVED",
                user_id,
                now,
                outcome=outcome,
                note=note,
            )
        logger.info(
            "Manual payment dispute resolved: payment_id=%s outcome=%s",
            payment.id,
            outcome.value,
        )
        return payment

    # Sweeps

    def ladder(self) -> Ladder:
        return auto_confirm_ladder(
            lambda payment: payment.auto_confirm_at,
            resolve=self._auto_confirm,
            warn=self._warn,
            warned_flag="auto_confirm_warned",
            config=self._config,
        )

    def auto_confirm_sweep(self, max_workers: int | None = None) -> Sweep:
        return Sweep(
            AUTO_CONFIRM_JOB,
            ManualPayment,
            self.ladder().only("auto_confirm"),
            _due_for_auto_confirm,
            session_factory=self._session_factory,
            gate=self._gate,
            max_workers=max_workers,
            now_provider=self._now_provider,
        )

    def warning_sweep(self, max_workers: int | None = None) -> Sweep:
        config = self._config

        def candidates(session: Session, now: datetime) -> list[int]:
            lower, upper = warning_bounds(now, config)
            statement = (
                select(ManualPayment.id)
                .where(
                    ManualPayment.status == ManualPaymentStatus.PENDING.value,
                    ManualPayment.auto_confirm_warned.is_(False),
                    ManualPayment.auto_confirm_at >= lower,
                    ManualPayment.auto_confirm_at <= upper,
                )
                .order_by(ManualPayment.id.asc())
            )
            return list(session.scalars(statement))

        return Sweep(
            WARNING_JOB,
            ManualPayment,
            self.ladder().only("auto_confirm_warning"),
            candidates,
            session_factory=self._session_factory,
            gate=self._gate,
            max_workers=max_workers,
            now_provider=self._now_provider,
        )

    def _auto_confirm(self, context: SweepContext) -> bool:
        payment: ManualPayment = context.row
        if not context.claim(
            {"status": ManualPaymentStatus.PENDING.value},
            {"status": ManualPaymentStatus.AUTO_CONFIRMED.value, "resolved_at": context.now},
        ):
            return False
        upsert_member_billing(
            context.session,
            payment.band_id,
            payment.member_user_id,
            payment.payment_date,
            context.now,
        )
        recipients = [payment.member_user_id, payment.initiated_by_id] + counterparty_user_ids(
            context.session, payment
        )
        context.notify_many(
            recipients,
            NotificationRequest(
                type=NotificationType.MANUAL_PAYMENT_AUTO_CONFIRMED,
                band_id=payment.band_id,
                title="Payment Auto-Confirmed",
                message=(
                    f"The payment of {format_amount(payment.amount_cents)} was automatically "
                    "confirmed after no response within the review window."
                ),
                priority=NotificationPriority.MEDIUM.value,
                related_type=ENTITY_TYPE,
                related_id=payment.id,
            ),
        )
        context.audit(
            AuditEntryInput(
                action="MANUAL_PAYMENT_AUTO_CONFIRMED",
                entity_type=ENTITY_TYPE,
                entity_id=payment.id,
                band_id=payment.band_id,
                changes={
                    "status": [ManualPaymentStatus.PENDING, ManualPaymentStatus.AUTO_CONFIRMED],
                },
            )
        )
        return True

    def _warn(self, context: SweepContext) -> bool:
        payment: ManualPayment = context.row
        if not context.claim(
            {"status": ManualPaymentStatus.PENDING.value, "auto_confirm_warned": False},
            {"auto_confirm_warned": True},
        ):
            return False
        days_left = days_until(payment.auto_confirm_at, context.now)
        counterparties = counterparty_user_ids(context.session, payment)
        context.notify_many(
            counterparties,
            NotificationRequest(
                type=NotificationType.MANUAL_PAYMENT_AUTO_CONFIRM_WARNING,
                band_id=payment.band_id,
                title="Payment Will Auto-Confirm Soon",
                message=(
                    f"A payment of {format_amount(payment.amount_cents)} will be automatically "
                    f"confirmed in {days_left} days unless you confirm or dispute it."
                ),
                priority=NotificationPriority.HIGH.value,
                related_type=ENTITY_TYPE,
                related_id=payment.id,
                metadata={"daysLeft": days_left},
            ),
        )
        emails = [user_email(context.session, user_id) for user_id in counterparties]
        email_context = {
            "paymentId": payment.id,
            "amount": payment.amount_cents,
            "daysLeft": days_left,
        }
        for address in emails:
            if address:
                context.after_commit.append(
                    deferred_email(
                        self._email_client,
                        "manual_payment_auto_confirm_warning",
                        address,
                        email_context,
                    )
                )
        return True

    def _load_pending(
        self, session: Session, payment_id: int, user_id: int, action: str
    ) -> ManualPayment:
        payment = session.get(ManualPayment, payment_id)
        if payment is None:
            raise CommitmentNotFoundError(ENTITY_TYPE, payment_id)
        if payment.status != ManualPaymentStatus.PENDING:
            raise InvalidTransitionError(ENTITY_TYPE, payment_id, payment.status, action)
        if user_id not in counterparty_user_ids(session, payment):
            raise PermissionDeniedError(f"You are not authorized to {action} this payment")
        return payment

    def _claim(
        self,
        session: Session,
        payment: ManualPayment,
        target: ManualPaymentStatus,
        user_id: int,
        now: datetime,
        action: str,
        **extra,
    ) -> None:
        applied = guarded_update(
            session,
            ManualPayment,
            payment.id,
            {"status": ManualPaymentStatus.PENDING.value},
            {"status": target.value, "resolved_at": now, "resolved_by_id": user_id, **extra},
        )
        if not applied:
            raise InvalidTransitionError(ENTITY_TYPE, payment.id, "resolved", action)

    def _audit(
        self,
        session: Session,
        payment: ManualPayment,
        action: str,
        user_id: int,
        now: datetime,
        **changes,
    ) -> None:
        record_audit_entry(
            session,
            AuditEntryInput(
                action=action,
                entity_type=ENTITY_TYPE,
                entity_id=payment.id,
                band_id=payment.band_id,
                actor_type=ACTOR_USER,
                actor_id=user_id,
                changes={"status": payment.status, **changes},
            ),
            now=now,
        )


def _due_for_auto_confirm(session: Session, now: datetime) -> list[int]:
    statement = (
        select(ManualPayment.id)
        .where(
            ManualPayment.status == ManualPaymentStatus.PENDING.value,
            ManualPayment.auto_confirm_at <= now,
        )
        .order_by(ManualPayment.id.asc())
    )
    return list(session.scalars(statement))
