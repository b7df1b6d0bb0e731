"""Recipient lookups shared by lifecycle notifications."""

from __future__ import annotations

from typing import Iterable

from sqlalchemy.orm import Session

from lifecycle.stages import MemberRole, MemberStatus
from models import Member, User


def active_member_user_ids(
    session: Session, band_id: int, *, exclude: Iterable[int] = ()
) -> list[int]:
    excluded = set(exclude)
    rows = (
        session.query(Member.user_id)
        .filter(Member.band_id == band_id, Member.status == MemberStatus.ACTIVE.value)
        .order_by(Member.id.asc())
        .all()
    )
    return [user_id for (user_id,) in rows if user_id not in excluded]


def role_user_ids(
    session: Session,
    band_id: int,
    roles: Iterable[MemberRole],
    *,
    limit: int | None = None,
) -> list[int]:
    """Return active members holding any of ``roles``, in membership order."""
    query = (
        session.query(Member.user_id)
        .filter(
            Member.band_id == band_id,
            Member.status == MemberStatus.ACTIVE.value,
            Member.role.in_([role.value for role in roles]),
        )
        .order_by(Member.id.asc())
    )
    if limit is not None:
        query = query.limit(limit)
    return [user_id for (user_id,) in query.all()]


def treasurer_user_ids(session: Session, band_id: int) -> list[int]:
    rows = (
        session.query(Member.user_id)
        .filter(
            Member.band_id == band_id,
            Member.status == MemberStatus.ACTIVE.value,
            Member.is_treasurer.is_(True),
        )
        .order_by(Member.id.asc())
        .all()
    )
    return [user_id for (user_id,) in rows]


def finance_contact_user_ids(session: Session, band_id: int, *, limit: int) -> list[int]:
    """Treasurers first, then founders, capped at ``limit`` distinct users."""
    ordered: list[int] = []
    for user_id in treasurer_user_ids(session, band_id) + role_user_ids(
        session, band_id, (MemberRole.FOUNDER,)
    ):
        if user_id not in ordered:
            ordered.append(user_id)
    return ordered[:limit]


def is_treasurer(session: Session, band_id: int, user_id: int) -> bool:
    member = session.query(Member).filter_by(band_id=band_id, user_id=user_id).one_or_none()
    return bool(
        member is not None and member.status == MemberStatus.ACTIVE and member.is_treasurer
    )


def member_role(session: Session, band_id: int, user_id: int) -> str | None:
    """Return the active member's role, or None for non-members."""
    member = session.query(Member).filter_by(band_id=band_id, user_id=user_id).one_or_none()
    if member is None or member.status != MemberStatus.ACTIVE:
        return None
    return member.role


def platform_admin_user_ids(session: Session) -> list[int]:
    rows = (
        session.query(User.id)
        .filter(User.is_platform_admin.is_(True))
        .order_by(User.id.asc())
        .all()
    )
    return [user_id for (user_id,) in rows]


def user_email(session: Session, user_id: int | None) -> str | None:
    if user_id is None:
        return None
    user = session.get(User, user_id)
    return user.email if user is not None else None
