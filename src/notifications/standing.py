"""Dues good-standing evaluation for band members."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from lifecycle.stages import MemberBillingStatus, MemberStatus
from models import Band, DuesPlan, FinanceSettings, Member, MemberBilling
from time_utils import ensure_utc, utc_now

DEFAULT_NEW_MEMBER_GRACE_DAYS = 7
DEFAULT_LAPSED_MEMBER_GRACE_DAYS = 3

_NOT_IN_GOOD_STANDING_REASONS = {
    MemberBillingStatus.PAST_DUE.value: (
        "Your dues payment is past due. Please update your payment to continue participating."
    ),
    MemberBillingStatus.CANCELED.value: (
        "Your dues subscription has been canceled. Please renew to continue participating."
    ),
    MemberBillingStatus.UNPAID.value: "Please pay your dues to participate in band activities.",
}


@dataclass(frozen=True)
class StandingResult:
    """Outcome of a good-standing check."""

    in_good_standing: bool
    exempt: bool = False
    reason: str | None = None


def check_good_standing(
    session: Session,
    band_id: int,
    user_id: int,
    now: datetime | None = None,
) -> StandingResult:
    """Evaluate whether a member's dues allow routine band engagement."""
    now = now or utc_now()
    dues_plan = session.query(DuesPlan).filter_by(band_id=band_id, is_active=True).first()
    if dues_plan is None or not dues_plan.amount_cents:
        return StandingResult(in_good_standing=True)

    finance = session.query(FinanceSettings).filter_by(band_id=band_id).one_or_none()
    if finance is not None and not finance.dues_enforcement_enabled:
        return StandingResult(in_good_standing=True)

    member = session.query(Member).filter_by(band_id=band_id, user_id=user_id).one_or_none()
    if member is None:
        return StandingResult(
            in_good_standing=False,
            reason="You are not a member of this band.",
        )

    band = session.get(Band, band_id)
    is_exempt = (band is not None and band.billing_owner_id == user_id) or member.is_treasurer

    if member.status == MemberStatus.ACTIVE:
        grace_days = (
            finance.new_member_grace_days if finance is not None else DEFAULT_NEW_MEMBER_GRACE_DAYS
        )
        activated_at = ensure_utc(member.activated_at or member.created_at)
        if now < activated_at + timedelta(days=grace_days):
            return StandingResult(in_good_standing=True)

    billing = (
        session.query(MemberBilling).filter_by(band_id=band_id, user_id=user_id).one_or_none()
    )
    if billing is None:
        if is_exempt:
            return StandingResult(in_good_standing=True, exempt=True)
        return StandingResult(
            in_good_standing=False,
            reason="You have not paid your dues yet.",
        )

    if billing.status == MemberBillingStatus.ACTIVE:
        return StandingResult(in_good_standing=True)

    if billing.status == MemberBillingStatus.PAST_DUE:
        lapsed_days = (
            finance.lapsed_member_grace_days
            if finance is not None
            else DEFAULT_LAPSED_MEMBER_GRACE_DAYS
        )
        if now < ensure_utc(billing.updated_at) + timedelta(days=lapsed_days):
            return StandingResult(in_good_standing=True)

    if is_exempt:
        return StandingResult(in_good_standing=True, exempt=True)

    return StandingResult(
        in_good_standing=False,
        reason=_NOT_IN_GOOD_STANDING_REASONS.get(
            billing.status, _NOT_IN_GOOD_STANDING_REASONS[MemberBillingStatus.UNPAID.value]
        ),
    )


def is_in_good_standing(
    session: Session, band_id: int, user_id: int, now: datetime | None = None
) -> bool:
    return check_good_standing(session, band_id, user_id, now).in_good_standing
