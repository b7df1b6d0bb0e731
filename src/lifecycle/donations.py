"""Donation due, overdue and missed cycles with recurring auto-cancellation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import LifecycleConfig, settings
from lifecycle.audit import ACTOR_USER, AuditEntryInput, record_audit_entry
from lifecycle.errors import CommitmentNotFoundError, InvalidTransitionError, PermissionDeniedError
from lifecycle.ladder import Ladder, Tier, days
from lifecycle.recipients import finance_contact_user_ids, is_treasurer, member_role
from lifecycle.recurrence import (
    advance_series,
    compute_next_due_date,
    has_outstanding_instance,
    schedule_instance,
)
from lifecycle.stages import DonationFrequency, DonationStatus, RecurringDonationStatus
from lifecycle.sweep import Sweep, SweepContext
from models import Donation, RecurringDonation
from notifications.gate import NotificationGate, NotificationRequest, format_amount
from notifications.types import NotificationPriority, NotificationType
from services.database import guarded_update, session_scope
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

ENTITY_TYPE = "Donation"
RECURRING_ENTITY_TYPE = "RecurringDonation"

DUE_REMINDER_JOB = "donation.due_reminder"
OVERDUE_REMINDER_JOB = "donation.overdue_reminder"
MISSED_CHECK_JOB = "donation.missed_check"

MISSED_TIER = "missed"
OVERDUE_TIER = "overdue_reminder"
DUE_TIER = "due_reminder"


def _window(donation: Donation) -> timedelta:
    return days(donation.due_window_days)


@dataclass(frozen=True)
class RecurringDonationInput:
    """Input payload for starting a recurring donation."""

    band_id: int
    donor_user_id: int
    amount_cents: int
    frequency: DonationFrequency
    start_date: datetime
    day_of_month: int | None = None


class DonationLifecycle:
    """Donor and treasurer actions plus the three donation sweeps."""

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

    # Donor and treasurer actions

    def create_recurring_donation(self, payload: RecurringDonationInput) -> RecurringDonation:
        """Start a series and create its first EXPECTED instance."""
        if payload.amount_cents <= 0:
            raise ValueError("amount_cents must be positive.")
        if payload.day_of_month is not None and not 1 <= payload.day_of_month <= 31:
            raise ValueError("day_of_month must be between 1 and 31.")
        now = self._now_provider()
        start = ensure_utc(payload.start_date)
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            if member_role(session, payload.band_id, payload.donor_user_id) is None:
                raise PermissionDeniedError("You must be an active member of this band")
            recurring = RecurringDonation(
                band_id=payload.band_id,
                donor_user_id=payload.donor_user_id,
                amount_cents=payload.amount_cents,
                frequency=DonationFrequency(payload.frequency).value,
                day_of_month=payload.day_of_month,
                status=RecurringDonationStatus.ACTIVE.value,
                missed_count=0,
                next_due_date=start,
                created_at=now,
            )
            session.add(recurring)
            session.flush()
            schedule_instance(session, recurring, start, now)
            record_audit_entry(
                session,
                AuditEntryInput(
                    action="RECURRING_DONATION_CREATED",
                    entity_type=RECURRING_ENTITY_TYPE,
                    entity_id=recurring.id,
                    band_id=recurring.band_id,
                    actor_type=ACTOR_USER,
                    actor_id=recurring.donor_user_id,
                    changes={
                        "frequency": recurring.frequency,
                        "amount_cents": recurring.amount_cents,
                        "next_due_date": start,
                    },
                ),
                now=now,
            )
        return recurring

    def submit_donation_payment(self, donation_id: int, user_id: int) -> Donation:
        """Donor reports having paid an EXPECTED donation."""
        now = self._now_provider()
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            donation = self._load(session, donation_id)
            if donation.donor_user_id != user_id:
                raise PermissionDeniedError("Only the donor can submit this payment")
            self._transition(
                session,
                donation,
                DonationStatus.EXPECTED,
                {"status": DonationStatus.PENDING.value, "submitted_at": now},
                "submit",
            )
            self._gate.create_many(
                session,
                finance_contact_user_ids(
                    session, donation.band_id, limit=self._config.treasurer_notification_limit
                ),
                NotificationRequest(
                    type=NotificationType.DONATION_SUBMITTED,
                    band_id=donation.band_id,
                    title="Donation Submitted",
                    message=(
                        f"A donation of {format_amount(donation.amount_cents)} was submitted "
                        "and is awaiting confirmation."
                    ),
                    priority=NotificationPriority.MEDIUM.value,
                    related_type=ENTITY_TYPE,
                    related_id=donation.id,
                ),
            )
        return donation

    def confirm_donation(self, donation_id: int, user_id: int) -> Donation:
        """Treasurer confirms receipt; a recurring series advances and resets its misses."""
        now = self._now_provider()
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            donation = self._load(session, donation_id)
            self._require_treasurer(session, donation, user_id, "confirm")
            self._transition(
                session,
                donation,
                DonationStatus.PENDING,
                {
                    "status": DonationStatus.CONFIRMED.value,
                    "resolved_at": now,
                    "resolved_by_id": user_id,
                },
                "confirm",
            )
            if donation.recurring_donation_id is not None:
                recurring = session.get(RecurringDonation, donation.recurring_donation_id)
                if recurring is not None and recurring.status == RecurringDonationStatus.ACTIVE:
                    advance_series(session, recurring, now, reset_missed=True)
            self._gate.create(
                session,
                NotificationRequest(
                    user_id=donation.donor_user_id,
                    type=NotificationType.DONATION_CONFIRMED,
                    band_id=donation.band_id,
                    title="Donation Confirmed",
                    message=(
                        f"Your donation of {format_amount(donation.amount_cents)} "
                        "has been confirmed. Thank you!"
                    ),
                    priority=NotificationPriority.LOW.value,
                    related_type=ENTITY_TYPE,
                    related_id=donation.id,
                ),
            )
            self._audit(session, donation, "DONATION_CONFIRMED", user_id, now)
        return donation

    def reject_donation(self, donation_id: int, user_id: int, reason: str) -> Donation:
        """Treasurer rejects a submitted donation; the series is not advanced."""
        if not reason or not reason.strip():
            raise ValueError("A rejection reason is required.")
        now = self._now_provider()
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            donation = self._load(session, donation_id)
            self._require_treasurer(session, donation, user_id, "reject")
            self._transition(
                session,
                donation,
                DonationStatus.PENDING,
                {
                    "status": DonationStatus.REJECTED.value,
                    "resolved_at": now,
                    "resolved_by_id": user_id,
                    "rejection_reason": reason.strip(),
                },
                "reject",
            )
            self._gate.create(
                session,
                NotificationRequest(
                    user_id=donation.donor_user_id,
                    type=NotificationType.DONATION_REJECTED,
                    band_id=donation.band_id,
                    title="Donation Not Confirmed",
                    message=(
                        f"Your donation of {format_amount(donation.amount_cents)} could not "
                        f"be confirmed. Reason: {reason.strip()}"
                    ),
                    priority=NotificationPriority.HIGH.value,
                    related_type=ENTITY_TYPE,
                    related_id=donation.id,
                ),
            )
            self._audit(session, donation, "DONATION_REJECTED", user_id, now, reason=reason.strip())
        return donation

    def cancel_recurring_donation(self, recurring_id: int, user_id: int) -> RecurringDonation:
        """Donor cancels a series; outstanding EXPECTED instances are cancelled too."""
        now = self._now_provider()
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            recurring = self._load_recurring(session, recurring_id, user_id, "cancel")
            previous = recurring.status
            applied = previous not in (
                RecurringDonationStatus.CANCELLED,
                RecurringDonationStatus.AUTO_CANCELLED,
            ) and guarded_update(
                session,
                RecurringDonation,
                recurring.id,
                {"status": previous},
                {"status": RecurringDonationStatus.CANCELLED.value, "cancelled_at": now},
            )
            if not applied:
                raise InvalidTransitionError(
                    RECURRING_ENTITY_TYPE, recurring_id, str(previous), "cancel"
                )
            session.execute(
                update(Donation)
                .where(
                    Donation.recurring_donation_id == recurring.id,
                    Donation.status == DonationStatus.EXPECTED.value,
                )
                .values(status=DonationStatus.CANCELLED.value, resolved_at=now)
                .execution_options(synchronize_session="fetch")
            )
            record_audit_entry(
                session,
                AuditEntryInput(
                    action="RECURRING_DONATION_CANCELLED",
                    entity_type=RECURRING_ENTITY_TYPE,
                    entity_id=recurring.id,
                    band_id=recurring.band_id,
                    actor_type=ACTOR_USER,
                    actor_id=user_id,
                    changes={"status": [previous, RecurringDonationStatus.CANCELLED]},
                ),
                now=now,
            )
        return recurring

    def pause_recurring_donation(self, recurring_id: int, user_id: int) -> RecurringDonation:
        """Donor pauses an ACTIVE series.

        Outstanding instances stay in place; a miss while paused does not count
        toward auto-cancellation and no further instances are scheduled.
        """
        now = self._now_provider()
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            recurring = self._load_recurring(session, recurring_id, user_id, "pause")
            if not guarded_update(
                session,
                RecurringDonation,
                recurring.id,
                {"status": RecurringDonationStatus.ACTIVE.value},
                {"status": RecurringDonationStatus.PAUSED.value, "paused_at": now},
            ):
                raise InvalidTransitionError(
                    RECURRING_ENTITY_TYPE, recurring_id, recurring.status, "pause"
                )
            self._audit_recurring(
                session,
                recurring,
                "RECURRING_DONATION_PAUSED",
                user_id,
                now,
                status=[RecurringDonationStatus.ACTIVE, RecurringDonationStatus.PAUSED],
            )
        return recurring

    def resume_recurring_donation(self, recurring_id: int, user_id: int) -> RecurringDonation:
        """Donor resumes a PAUSED series, scheduling from today."""
        now = self._now_provider()
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            recurring = self._load_recurring(session, recurring_id, user_id, "resume")
            if not guarded_update(
                session,
                RecurringDonation,
                recurring.id,
                {"status": RecurringDonationStatus.PAUSED.value},
                {"status": RecurringDonationStatus.ACTIVE.value, "paused_at": None},
            ):
                raise InvalidTransitionError(
                    RECURRING_ENTITY_TYPE, recurring_id, recurring.status, "resume"
                )
            next_due = compute_next_due_date(now, recurring.frequency, recurring.day_of_month)
            if has_outstanding_instance(session, recurring.id):
                logger.info(
                    "Resumed series keeps its outstanding donation: recurring_donation_id=%s",
                    recurring.id,
                )
            else:
                schedule_instance(session, recurring, next_due, now)
            self._audit_recurring(
                session,
                recurring,
                "RECURRING_DONATION_RESUMED",
                user_id,
                now,
                status=[RecurringDonationStatus.PAUSED, RecurringDonationStatus.ACTIVE],
                next_due_date=recurring.next_due_date,
            )
        return recurring

    # Sweeps

    def ladder(self) -> Ladder:
        """Missed, overdue and due tiers keyed on the expected date."""
        return Ladder(
            lambda donation: donation.expected_date,
            [
                Tier(name=MISSED_TIER, action=self._mark_missed, start=_window),
                Tier(
                    name=OVERDUE_TIER,
                    action=self._remind_overdue,
                    start=timedelta(0),
                    start_inclusive=False,
                    end=_window,
                    guard=lambda donation: donation.overdue_reminder_sent_at is None,
                ),
                Tier(
                    name=DUE_TIER,
                    action=self._remind_due,
                    start=-days(self._config.donation_due_reminder_days),
                    end=timedelta(0),
                    end_inclusive=True,
                    guard=lambda donation: donation.reminder_sent_at is None,
                ),
            ],
        )

    def due_reminder_sweep(self, max_workers: int | None = None) -> Sweep:
        reminder_days = self._config.donation_due_reminder_days

        def candidates(session: Session, now: datetime) -> list[int]:
            statement = (
                select(Donation.id)
                .where(
                    Donation.status == DonationStatus.EXPECTED.value,
                    Donation.expected_date >= now,
                    Donation.expected_date <= now + days(reminder_days),
                    Donation.reminder_sent_at.is_(None),
                )
                .order_by(Donation.id.asc())
            )
            return list(session.scalars(statement))

        return self._sweep(DUE_REMINDER_JOB, DUE_TIER, candidates, max_workers)

    def overdue_reminder_sweep(self, max_workers: int | None = None) -> Sweep:
        def candidates(session: Session, now: datetime) -> list[int]:
            statement = (
                select(Donation.id)
                .where(
                    Donation.status == DonationStatus.EXPECTED.value,
                    Donation.expected_date < now,
                    Donation.overdue_reminder_sent_at.is_(None),
                )
                .order_by(Donation.id.asc())
            )
            return list(session.scalars(statement))

        return self._sweep(OVERDUE_REMINDER_JOB, OVERDUE_TIER, candidates, max_workers)

    def missed_check_sweep(self, max_workers: int | None = None) -> Sweep:
        # The per-row due window is applied by the ladder.
        def candidates(session: Session, now: datetime) -> list[int]:
            statement = (
                select(Donation.id)
                .where(
                    Donation.status == DonationStatus.EXPECTED.value,
                    Donation.expected_date < now,
                )
                .order_by(Donation.id.asc())
            )
            return list(session.scalars(statement))

        return self._sweep(MISSED_CHECK_JOB, MISSED_TIER, candidates, max_workers)

    def _sweep(self, name: str, tier: str, candidates, max_workers: int | None) -> Sweep:
        return Sweep(
            name,
            Donation,
            self.ladder().only(tier),
            candidates,
            session_factory=self._session_factory,
            gate=self._gate,
            max_workers=max_workers,
            now_provider=self._now_provider,
        )

    def _remind_due(self, context: SweepContext) -> bool:
        donation: Donation = context.row
        if not context.claim(
            {"status": DonationStatus.EXPECTED.value, "reminder_sent_at": None},
            {"reminder_sent_at": context.now},
        ):
            return False
        context.notify(
            NotificationRequest(
                user_id=donation.donor_user_id,
                type=NotificationType.DONATION_DUE,
                band_id=donation.band_id,
                title="Donation Due Soon",
                message=(
                    f"Your donation of {format_amount(donation.amount_cents)} is due on "
                    f"{donation.expected_date.date().isoformat()}."
                ),
                priority=NotificationPriority.MEDIUM.value,
                related_type=ENTITY_TYPE,
                related_id=donation.id,
                metadata={"expectedDate": donation.expected_date.isoformat()},
            )
        )
        return True

    def _remind_overdue(self, context: SweepContext) -> bool:
        donation: Donation = context.row
        if not context.claim(
            {"status": DonationStatus.EXPECTED.value, "overdue_reminder_sent_at": None},
            {"overdue_reminder_sent_at": context.now},
        ):
            return False
        context.notify(
            NotificationRequest(
                user_id=donation.donor_user_id,
                type=NotificationType.DONATION_OVERDUE,
                band_id=donation.band_id,
                title="Donation Overdue",
                message=(
                    f"Your donation of {format_amount(donation.amount_cents)} is overdue. "
                    "Please submit payment soon."
                ),
                priority=NotificationPriority.HIGH.value,
                related_type=ENTITY_TYPE,
                related_id=donation.id,
            )
        )
        return True

    def _mark_missed(self, context: SweepContext) -> bool:
        donation: Donation = context.row
        if not context.claim(
            {"status": DonationStatus.EXPECTED.value},
            {"status": DonationStatus.MISSED.value, "missed_at": context.now},
        ):
            return False
        context.notify(
            NotificationRequest(
                user_id=donation.donor_user_id,
                type=NotificationType.DONATION_MISSED,
                band_id=donation.band_id,
                title="Donation Marked as Missed",
                message=(
                    f"Your donation of {format_amount(donation.amount_cents)} was not received "
                    "and has been marked as missed."
                ),
                priority=NotificationPriority.HIGH.value,
                related_type=ENTITY_TYPE,
                related_id=donation.id,
            )
        )
        context.audit(
            AuditEntryInput(
                action="DONATION_MISSED",
                entity_type=ENTITY_TYPE,
                entity_id=donation.id,
                band_id=donation.band_id,
                changes={"status": [DonationStatus.EXPECTED, DonationStatus.MISSED]},
            )
        )
        if donation.recurring_donation_id is not None:
            self._record_series_miss(context, donation)
        return True

    def _record_series_miss(self, context: SweepContext, donation: Donation) -> None:
        session = context.session
        recurring = session.get(RecurringDonation, donation.recurring_donation_id)
        if recurring is None or recurring.status != RecurringDonationStatus.ACTIVE:
            return
        missed_count = recurring.missed_count + 1
        if missed_count < self._config.recurring_max_missed:
            recurring.missed_count = missed_count
            advance_series(session, recurring, context.now)
            return

        applied = guarded_update(
            session,
            RecurringDonation,
            recurring.id,
            {
                "status": RecurringDonationStatus.ACTIVE.value,
                "missed_count": recurring.missed_count,
            },
            {
                "status": RecurringDonationStatus.AUTO_CANCELLED.value,
                "missed_count": missed_count,
                "auto_cancelled_at": context.now,
            },
        )
        if not applied:
            return
        amount = format_amount(recurring.amount_cents)
        context.notify(
            NotificationRequest(
                user_id=recurring.donor_user_id,
                type=NotificationType.RECURRING_DONATION_AUTO_CANCELLED,
                band_id=recurring.band_id,
                title="Recurring Donation Auto-Cancelled",
                message=(
                    "Your recurring donation has been automatically cancelled after "
                    f"{missed_count} consecutive missed payments."
                ),
                priority=NotificationPriority.HIGH.value,
                related_type=RECURRING_ENTITY_TYPE,
                related_id=recurring.id,
                metadata={"amount": recurring.amount_cents},
            )
        )
        context.notify_many(
            finance_contact_user_ids(
                session, recurring.band_id, limit=self._config.treasurer_notification_limit
            ),
            NotificationRequest(
                type=NotificationType.RECURRING_DONATION_AUTO_CANCELLED,
                band_id=recurring.band_id,
                title="Recurring Donation Auto-Cancelled",
                message=(
                    f"A recurring donation of {amount} has been auto-cancelled after "
                    f"{missed_count} missed payments."
                ),
                priority=NotificationPriority.MEDIUM.value,
                related_type=RECURRING_ENTITY_TYPE,
                related_id=recurring.id,
                metadata={"amount": recurring.amount_cents, "donorId": recurring.donor_user_id},
            ),
        )
        context.audit(
            AuditEntryInput(
                action="RECURRING_DONATION_AUTO_CANCELLED",
                entity_type=RECURRING_ENTITY_TYPE,
                entity_id=recurring.id,
                band_id=recurring.band_id,
                changes={
                    "status": [
                        RecurringDonationStatus.ACTIVE,
                        RecurringDonationStatus.AUTO_CANCELLED,
                    ],
                    "missed_count": missed_count,
                },
            )
        )
        logger.info(
            "Recurring donation auto-cancelled: recurring_donation_id=%s missed_count=%s",
            recurring.id,
            missed_count,
        )

    def _load(self, session: Session, donation_id: int) -> Donation:
        donation = session.get(Donation, donation_id)
        if donation is None:
            raise CommitmentNotFoundError(ENTITY_TYPE, donation_id)
        return donation

    def _load_recurring(
        self, session: Session, recurring_id: int, user_id: int, action: str
    ) -> RecurringDonation:
        recurring = session.get(RecurringDonation, recurring_id)
        if recurring is None:
            raise CommitmentNotFoundError(RECURRING_ENTITY_TYPE, recurring_id)
        if recurring.donor_user_id != user_id:
            raise PermissionDeniedError(f"Only the donor can {action} this recurring donation")
        return recurring

    def _audit_recurring(
        self,
        session: Session,
        recurring: RecurringDonation,
        action: str,
        user_id: int,
        now: datetime,
        **changes,
    ) -> None:
        record_audit_entry(
            session,
            AuditEntryInput(
                action=action,
                entity_type=RECURRING_ENTITY_TYPE,
                entity_id=recurring.id,
                band_id=recurring.band_id,
                actor_type=ACTOR_USER,
                actor_id=user_id,
                changes=changes,
            ),
            now=now,
        )

    def _require_treasurer(
        self, session: Session, donation: Donation, user_id: int, action: str
    ) -> None:
        if not is_treasurer(session, donation.band_id, user_id):
            raise PermissionDeniedError(f"Only treasurers can {action} donations")

    def _transition(
        self,
        session: Session,
        donation: Donation,
        expected: DonationStatus,
        values: dict,
        action: str,
    ) -> None:
        applied = guarded_update(
            session, Donation, donation.id, {"status": expected.value}, values
        )
        if not applied:
            raise InvalidTransitionError(ENTITY_TYPE, donation.id, donation.status, action)

    def _audit(
        self,
        session: Session,
        donation: Donation,
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
                entity_id=donation.id,
                band_id=donation.band_id,
                actor_type=ACTOR_USER,
                actor_id=user_id,
                changes={"status": donation.status, **changes},
            ),
            now=now,
        )
