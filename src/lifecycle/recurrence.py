"""Recurring donation schedule arithmetic and series advancement."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from lifecycle.stages import DonationFrequency, DonationStatus
from models import Donation, FinanceSettings, RecurringDonation
from time_utils import add_months, add_years

logger = logging.getLogger(__name__)

DEFAULT_DUE_WINDOW_DAYS = 7

_OUTSTANDING = (DonationStatus.EXPECTED.value, DonationStatus.PENDING.value)


def compute_next_due_date(
    current: datetime,
    frequency: DonationFrequency | str,
    day_of_month: int | None = None,
) -> datetime:
    """Return the due date following ``current`` for a donation frequency.

    Monthly and quarterly schedules land on ``day_of_month`` (or the current
    day) clamped to the length of the target month.
    """
    frequency = DonationFrequency(frequency)
    if frequency is DonationFrequency.WEEKLY:
        return current + timedelta(days=7)
    if frequency is DonationFrequency.MONTHLY:
        return add_months(current, 1, day_of_month)
    if frequency is DonationFrequency.QUARTERLY:
        return add_months(current, 3, day_of_month)
    return add_years(current, 1)


def due_window_days(session: Session, band_id: int) -> int:
    finance = session.query(FinanceSettings).filter_by(band_id=band_id).one_or_none()
    if finance is None or finance.donation_due_window_days is None:
        return DEFAULT_DUE_WINDOW_DAYS
    return finance.donation_due_window_days


def has_outstanding_instance(session: Session, recurring_id: int) -> bool:
    statement = (
        select(Donation.id)
        .where(
            Donation.recurring_donation_id == recurring_id,
            Donation.status.in_(_OUTSTANDING),
        )
        .limit(1)
    )
    return session.scalar(statement) is not None


def advance_series(
    session: Session,
    recurring: RecurringDonation,
    now: datetime,
    *,
    reset_missed: bool = False,
) -> Donation | None:
    """Move a series to its next due date and create the next EXPECTED instance.

    Returns None without changes when the series already has an outstanding
    EXPECTED or PENDING instance, which keeps re-runs from stacking instances.
    The caller must have resolved the previous instance in the same session.
    """
    session.flush()
    if has_outstanding_instance(session, recurring.id):
        logger.info(
            "Series already has an outstanding donation: recurring_donation_id=%s",
            recurring.id,
        )
        return None
    next_due = compute_next_due_date(
        recurring.next_due_date, recurring.frequency, recurring.day_of_month
    )
    if reset_missed:
        recurring.missed_count = 0
    return schedule_instance(session, recurring, next_due, now)


def schedule_instance(
    session: Session,
    recurring: RecurringDonation,
    due_date: datetime,
    now: datetime,
) -> Donation:
    """Point the series at ``due_date`` and create its EXPECTED instance."""
    recurring.next_due_date = due_date
    donation = Donation(
        band_id=recurring.band_id,
        donor_user_id=recurring.donor_user_id,
        recurring_donation_id=recurring.id,
        amount_cents=recurring.amount_cents,
        status=DonationStatus.EXPECTED.value,
        expected_date=due_date,
        due_window_days=due_window_days(session, recurring.band_id),
        created_at=now,
    )
    session.add(donation)
    session.flush()
    return donation
