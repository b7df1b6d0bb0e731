"""Unit tests for the verification reminder, escalation and auto-approve ladder."""

from __future__ import annotations

from datetime import timedelta

import pytest

from lifecycle.errors import InvalidTransitionError, PermissionDeniedError
from lifecycle.stages import MemberRole, TaskStatus, VerificationStatus
from lifecycle.verification import AUTO_CONFIRM_NOTE, VerificationLifecycle
from models import AuditLog, ChecklistItem, Notification, Project, Task
from notifications.types import NotificationType


@pytest.fixture()
def band(seed):
    band_id = seed.band()
    founder = seed.member(band_id, role=MemberRole.FOUNDER)
    moderator = seed.member(band_id, role=MemberRole.MODERATOR)
    assignee = seed.member(band_id)
    return {"id": band_id, "founder": founder, "moderator": moderator, "assignee": assignee}


def _in_review_task(seed, band, clock, *, completed_days_ago: float, **fields) -> int:
    return seed.task(
        band["id"],
        assignee_id=band["assignee"],
        status=TaskStatus.IN_REVIEW,
        verification_status=VerificationStatus.PENDING.value,
        completed_at=clock.now - timedelta(days=completed_days_ago),
        **fields,
    )


def _notified(session_factory, notification_type) -> list[int]:
    with session_factory() as session:
        rows = (
            session.query(Notification.user_id)
            .filter_by(type=notification_type.value)
            .order_by(Notification.id)
            .all()
        )
    return [user_id for (user_id,) in rows]


def test_overdue_task_jumps_straight_to_auto_approve(
    sqlite_session_factory, seed, band, clock
) -> None:
    """A task pending 7.5 days is auto-approved without reminder or escalation."""
    task_id = _in_review_task(seed, band, clock, completed_days_ago=7.5)
    lifecycle = VerificationLifecycle(sqlite_session_factory, now_provider=clock)

    summary = lifecycle.task_sweep().run()

    assert summary["actions"] == {"auto_confirm": 1}
    with sqlite_session_factory() as session:
        task = session.get(Task, task_id)
        project = session.get(Project, task.project_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.verification_status == VerificationStatus.APPROVED
        assert task.verification_notes == AUTO_CONFIRM_NOTE.format(days=7)
        assert task.reminder_sent_at is None
        assert task.escalated_at is None
        assert project.completed_tasks == 1
        assert session.query(AuditLog).filter_by(action="TASK_AUTO_CONFIRMED").count() == 1
    assert _notified(sqlite_session_factory, NotificationType.TASK_VERIFIED) == [band["assignee"]]
    assert _notified(sqlite_session_factory, NotificationType.TASK_VERIFICATION_REMINDER) == []
    assert _notified(sqlite_session_factory, NotificationType.TASK_VERIFICATION_ESCALATED) == []


def test_reminder_goes_to_verifiers_once(sqlite_session_factory, seed, band, clock) -> None:
    """After three days verifiers are reminded, and only once."""
    task_id = _in_review_task(seed, band, clock, completed_days_ago=4)
    lifecycle = VerificationLifecycle(sqlite_session_factory, now_provider=clock)

    first = lifecycle.task_sweep().run()
    second = lifecycle.task_sweep().run()

    assert first["actions"] == {"remind": 1}
    assert second["actions"] == {}
    assert second["skipped"] == 1
    assert _notified(sqlite_session_factory, NotificationType.TASK_VERIFICATION_REMINDER) == [
        band["founder"],
        band["moderator"],
    ]
    with sqlite_session_factory() as session:
        assert session.get(Task, task_id).reminder_sent_at == clock.now


def test_escalation_goes_to_leadership(sqlite_session_factory, seed, band, clock) -> None:
    """After five days founders and governors are alerted and an audit entry is written."""
    _in_review_task(
        seed,
        band,
        clock,
        completed_days_ago=6,
        reminder_sent_at=clock.now - timedelta(days=3),
    )
    lifecycle = VerificationLifecycle(sqlite_session_factory, now_provider=clock)

    summary = lifecycle.task_sweep().run()

    assert summary["actions"] == {"escalate": 1}
    assert _notified(sqlite_session_factory, NotificationType.TASK_VERIFICATION_ESCALATED) == [
        band["founder"]
    ]
    with sqlite_session_factory() as session:
        assert session.query(AuditLog).filter_by(action="TASK_ESCALATED").count() == 1


def test_recent_submissions_are_not_candidates(sqlite_session_factory, seed, band, clock) -> None:
    """Tasks pending fewer than three days are left alone."""
    _in_review_task(seed, band, clock, completed_days_ago=1)
    lifecycle = VerificationLifecycle(sqlite_session_factory, now_provider=clock)

    assert lifecycle.task_sweep().run()["found"] == 0


def test_checklist_item_auto_approves(sqlite_session_factory, seed, band, clock) -> None:
    """Checklist items climb the same ladder and keep their completed flag."""
    task_id = seed.task(band["id"], assignee_id=band["assignee"])
    item_id = seed.checklist_item(
        task_id,
        assignee_id=band["assignee"],
        is_completed=True,
        requires_verification=True,
        verification_status=VerificationStatus.PENDING.value,
        completed_at=clock.now - timedelta(days=8),
    )
    lifecycle = VerificationLifecycle(sqlite_session_factory, now_provider=clock)

    summary = lifecycle.checklist_item_sweep().run()

    assert summary["actions"] == {"auto_confirm": 1}
    with sqlite_session_factory() as session:
        item = session.get(ChecklistItem, item_id)
        assert item.verification_status == VerificationStatus.APPROVED
        assert item.is_completed is True
        assert (
            session.query(AuditLog).filter_by(action="CHECKLIST_ITEM_AUTO_CONFIRMED").count() == 1
        )
    assert _notified(sqlite_session_factory, NotificationType.CHECKLIST_ITEM_VERIFIED) == [
        band["assignee"]
    ]


def test_submit_and_verify_task(sqlite_session_factory, seed, band, clock) -> None:
    """Submitting opens review for verifiers and approval completes the task."""
    task_id = seed.task(band["id"], assignee_id=band["assignee"], status=TaskStatus.IN_PROGRESS)
    lifecycle = VerificationLifecycle(sqlite_session_factory, now_provider=clock)

    submitted = lifecycle.submit_task_for_review(task_id, band["assignee"])
    assert submitted.status == TaskStatus.IN_REVIEW
    assert _notified(sqlite_session_factory, NotificationType.TASK_VERIFICATION_NEEDED) == [
        band["founder"],
        band["moderator"],
    ]

    lifecycle.verify_task(task_id, band["moderator"], approved=True, notes="Looks good")

    with sqlite_session_factory() as session:
        task = session.get(Task, task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.verified_by_id == band["moderator"]
        assert session.get(Project, task.project_id).completed_tasks == 1
    with pytest.raises(InvalidTransitionError):
        lifecycle.verify_task(task_id, band["founder"], approved=False)


def test_rejected_task_returns_to_progress(sqlite_session_factory, seed, band, clock) -> None:
    """Rejection sends the task back to the assignee."""
    task_id = _in_review_task(seed, band, clock, completed_days_ago=1)
    lifecycle = VerificationLifecycle(sqlite_session_factory, now_provider=clock)

    lifecycle.verify_task(task_id, band["founder"], approved=False, notes="Missing receipts")

    with sqlite_session_factory() as session:
        task = session.get(Task, task_id)
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.verification_status == VerificationStatus.REJECTED
    assert _notified(sqlite_session_factory, NotificationType.TASK_REJECTED) == [band["assignee"]]


def test_members_cannot_verify(sqlite_session_factory, seed, band, clock) -> None:
    """Plain members and assignees cannot review work."""
    task_id = _in_review_task(seed, band, clock, completed_days_ago=1)
    other = seed.member(band["id"])
    lifecycle = VerificationLifecycle(sqlite_session_factory, now_provider=clock)

    with pytest.raises(PermissionDeniedError):
        lifecycle.verify_task(task_id, other, approved=True)
    with pytest.raises(PermissionDeniedError):
        lifecycle.verify_task(task_id, band["assignee"], approved=True)


def test_checklist_item_submit_and_reject(sqlite_session_factory, seed, band, clock) -> None:
    """Rejecting a checklist item reopens it for the assignee."""
    task_id = seed.task(band["id"], assignee_id=band["assignee"])
    item_id = seed.checklist_item(
        task_id, assignee_id=band["assignee"], requires_verification=True
    )
    lifecycle = VerificationLifecycle(sqlite_session_factory, now_provider=clock)

    submitted = lifecycle.submit_checklist_item(item_id, band["assignee"])
    assert submitted.is_completed is True
    assert submitted.verification_status == VerificationStatus.PENDING
    needed = NotificationType.CHECKLIST_ITEM_VERIFICATION_NEEDED
    assert _notified(sqlite_session_factory, needed) == [band["founder"], band["moderator"]]

    with pytest.raises(PermissionDeniedError):
        lifecycle.verify_checklist_item(item_id, band["assignee"], approved=True)

    lifecycle.verify_checklist_item(item_id, band["founder"], approved=False, notes="Redo it")

    with sqlite_session_factory() as session:
        item = session.get(ChecklistItem, item_id)
        assert item.verification_status == VerificationStatus.REJECTED
        assert item.is_completed is False
        assert item.completed_at is None
    assert _notified(sqlite_session_factory, NotificationType.CHECKLIST_ITEM_REJECTED) == [
        band["assignee"]
    ]
    with pytest.raises(InvalidTransitionError, match="in state REJECTED"):
        lifecycle.verify_checklist_item(item_id, band["founder"], approved=True)


def test_checklist_item_without_verification_just_completes(
    sqlite_session_factory, seed, band, clock
) -> None:
    task_id = seed.task(band["id"], assignee_id=band["assignee"])
    item_id = seed.checklist_item(task_id, assignee_id=band["assignee"])
    lifecycle = VerificationLifecycle(sqlite_session_factory, now_provider=clock)

    item = lifecycle.submit_checklist_item(item_id, band["assignee"])

    assert item.is_completed is True
    assert item.verification_status is None
    needed = NotificationType.CHECKLIST_ITEM_VERIFICATION_NEEDED
    assert _notified(sqlite_session_factory, needed) == []
    with pytest.raises(InvalidTransitionError):
        lifecycle.submit_checklist_item(item_id, band["assignee"])


def test_claim_checklist_item_is_first_come(sqlite_session_factory, seed, band, clock) -> None:
    """The first member to claim an open item holds it; others are refused."""
    task_id = seed.task(band["id"], assignee_id=band["assignee"])
    item_id = seed.checklist_item(
        task_id,
        assignee_id=None,
        verification_status=VerificationStatus.REJECTED.value,
        verification_notes="Wrong venue",
    )
    lifecycle = VerificationLifecycle(sqlite_session_factory, now_provider=clock)

    item = lifecycle.claim_checklist_item(item_id, band["assignee"])

    assert item.assignee_id == band["assignee"]
    assert item.verification_status is None
    assert item.verification_notes is None
    assert lifecycle.claim_checklist_item(item_id, band["assignee"]).assignee_id == band["assignee"]
    with pytest.raises(InvalidTransitionError, match="in state claimed"):
        lifecycle.claim_checklist_item(item_id, band["moderator"])
    with sqlite_session_factory() as session:
        assert session.query(AuditLog).filter_by(action="CHECKLIST_ITEM_CLAIMED").count() == 1


def test_claim_requires_active_membership(sqlite_session_factory, seed, band, clock) -> None:
    task_id = seed.task(band["id"], assignee_id=band["assignee"])
    item_id = seed.checklist_item(task_id, assignee_id=None)
    outsider = seed.user()
    lifecycle = VerificationLifecycle(sqlite_session_factory, now_provider=clock)

    with pytest.raises(PermissionDeniedError, match="active band members"):
        lifecycle.claim_checklist_item(item_id, outsider)


def test_completed_items_cannot_be_claimed(sqlite_session_factory, seed, band, clock) -> None:
    task_id = seed.task(band["id"], assignee_id=band["assignee"])
    item_id = seed.checklist_item(task_id, assignee_id=None, is_completed=True)
    lifecycle = VerificationLifecycle(sqlite_session_factory, now_provider=clock)

    with pytest.raises(InvalidTransitionError, match="in state completed"):
        lifecycle.claim_checklist_item(item_id, band["assignee"])


def test_unclaim_resets_progress(sqlite_session_factory, seed, band, clock) -> None:
    """Releasing a submitted item drops it out of review and reopens it."""
    task_id = seed.task(band["id"], assignee_id=band["assignee"])
    item_id = seed.checklist_item(
        task_id, assignee_id=band["assignee"], requires_verification=True
    )
    lifecycle = VerificationLifecycle(sqlite_session_factory, now_provider=clock)
    lifecycle.submit_checklist_item(item_id, band["assignee"])

    with pytest.raises(PermissionDeniedError, match="not claimed"):
        lifecycle.unclaim_checklist_item(item_id, band["moderator"])

    item = lifecycle.unclaim_checklist_item(item_id, band["assignee"], reason="Out of town")

    assert item.assignee_id is None
    assert item.is_completed is False
    assert item.completed_at is None
    assert item.verification_status is None
    with sqlite_session_factory() as session:
        entry = session.query(AuditLog).filter_by(action="CHECKLIST_ITEM_UNCLAIMED").one()
        assert entry.changes["reason"] == "Out of town"
    assert lifecycle.claim_checklist_item(item_id, band["moderator"]).assignee_id == band["moderator"]


def test_approved_items_cannot_be_unclaimed(sqlite_session_factory, seed, band, clock) -> None:
    task_id = seed.task(band["id"], assignee_id=band["assignee"])
    item_id = seed.checklist_item(
        task_id,
        assignee_id=band["assignee"],
        is_completed=True,
        verification_status=VerificationStatus.APPROVED.value,
    )
    lifecycle = VerificationLifecycle(sqlite_session_factory, now_provider=clock)

    with pytest.raises(InvalidTransitionError, match="in state APPROVED"):
        lifecycle.unclaim_checklist_item(item_id, band["assignee"])
