"""Unit tests for dues good-standing evaluation."""

from __future__ import annotations

from datetime import timedelta

from lifecycle.stages import MemberBillingStatus, MemberStatus
from models import DuesPlan, FinanceSettings, MemberBilling
from notifications.standing import check_good_standing, is_in_good_standing


def _with_dues(session, band_id, amount_cents=1000) -> None:
    session.add(DuesPlan(band_id=band_id, amount_cents=amount_cents, is_active=True))


def _billing(session, band_id, user_id, status, updated_at) -> None:
    session.add(
        MemberBilling(
            band_id=band_id,
            user_id=user_id,
            status=status.value,
            updated_at=updated_at,
        )
    )


def test_no_dues_plan_means_good_standing(sqlite_session_factory, seed, clock) -> None:
    band_id = seed.band()
    member = seed.member(band_id)
    with sqlite_session_factory() as session:
        assert is_in_good_standing(session, band_id, member, clock.now)


def test_zero_amount_plan_means_good_standing(sqlite_session_factory, seed, clock) -> None:
    band_id = seed.band()
    member = seed.member(band_id)
    with sqlite_session_factory() as session:
        _with_dues(session, band_id, amount_cents=0)
        session.flush()
        assert is_in_good_standing(session, band_id, member, clock.now)


def test_enforcement_disabled(sqlite_session_factory, seed, clock) -> None:
    band_id = seed.band()
    member = seed.member(band_id)
    with sqlite_session_factory() as session:
        _with_dues(session, band_id)
        session.add(FinanceSettings(band_id=band_id, dues_enforcement_enabled=False))
        session.flush()
        assert is_in_good_standing(session, band_id, member, clock.now)


def test_non_member_is_not_in_good_standing(sqlite_session_factory, seed, clock) -> None:
    band_id = seed.band()
    outsider = seed.user()
    with sqlite_session_factory() as session:
        _with_dues(session, band_id)
        session.flush()
        result = check_good_standing(session, band_id, outsider, clock.now)
    assert result.in_good_standing is False
    assert result.reason == "You are not a member of this band."


def test_new_member_grace_uses_finance_settings(sqlite_session_factory, seed, clock) -> None:
    """New members get the configured grace period before dues are required."""
    band_id = seed.band()
    member = seed.member(band_id, activated_at=clock.now - timedelta(days=10))
    with sqlite_session_factory() as session:
        _with_dues(session, band_id)
        session.add(FinanceSettings(band_id=band_id, new_member_grace_days=14))
        session.flush()
        assert is_in_good_standing(session, band_id, member, clock.now)
        assert not is_in_good_standing(session, band_id, member, clock.now + timedelta(days=5))


def test_unpaid_member_needs_dues(sqlite_session_factory, seed, clock) -> None:
    band_id = seed.band()
    member = seed.member(band_id)
    with sqlite_session_factory() as session:
        _with_dues(session, band_id)
        session.flush()
        result = check_good_standing(session, band_id, member, clock.now)
    assert result.in_good_standing is False
    assert result.reason == "You have not paid your dues yet."


def test_active_billing_is_good_standing(sqlite_session_factory, seed, clock) -> None:
    band_id = seed.band()
    member = seed.member(band_id)
    with sqlite_session_factory() as session:
        _with_dues(session, band_id)
        _billing(session, band_id, member, MemberBillingStatus.ACTIVE, clock.now)
        session.flush()
        assert is_in_good_standing(session, band_id, member, clock.now)


def test_past_due_lapsed_grace(sqlite_session_factory, seed, clock) -> None:
    """PAST_DUE members keep standing for three days after the lapse."""
    band_id = seed.band()
    member = seed.member(band_id)
    with sqlite_session_factory() as session:
        _with_dues(session, band_id)
        _billing(
            session, band_id, member, MemberBillingStatus.PAST_DUE, clock.now - timedelta(days=2)
        )
        session.flush()
        assert is_in_good_standing(session, band_id, member, clock.now)
        later = check_good_standing(session, band_id, member, clock.now + timedelta(days=2))
    assert later.in_good_standing is False
    assert "past due" in later.reason


def test_billing_owner_and_treasurer_are_exempt(sqlite_session_factory, seed, clock) -> None:
    owner = seed.user()
    band_id = seed.band(billing_owner_id=owner)
    seed.member(band_id, owner)
    treasurer = seed.member(band_id, is_treasurer=True)
    with sqlite_session_factory() as session:
        _with_dues(session, band_id)
        _billing(session, band_id, treasurer, MemberBillingStatus.CANCELED, clock.now)
        session.flush()
        owner_result = check_good_standing(session, band_id, owner, clock.now)
        treasurer_result = check_good_standing(session, band_id, treasurer, clock.now)
    assert owner_result.in_good_standing and owner_result.exempt
    assert treasurer_result.in_good_standing and treasurer_result.exempt


def test_inactive_member_gets_no_new_member_grace(sqlite_session_factory, seed, clock) -> None:
    band_id = seed.band()
    member = seed.member(
        band_id, status=MemberStatus.INACTIVE, activated_at=clock.now - timedelta(days=1)
    )
    with sqlite_session_factory() as session:
        _with_dues(session, band_id)
        session.flush()
        assert not is_in_good_standing(session, band_id, member, clock.now)
