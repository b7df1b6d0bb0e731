"""Notification type and priority vocabulary."""

from __future__ import annotations

import enum
from typing import Any


class NotificationPriority(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class NotificationType(str, enum.Enum):
    """Notification types emitted by the lifecycle sweeps and actions."""

    # Billing
    BILLING_PAYMENT_FAILED = "BILLING_PAYMENT_FAILED"
    BILLING_GRACE_PERIOD_WARNING = "BILLING_GRACE_PERIOD_WARNING"
    BILLING_BAND_DEACTIVATED = "BILLING_BAND_DEACTIVATED"
    BILLING_OWNER_LEFT = "BILLING_OWNER_LEFT"
    BAND_STATUS_CHANGED = "BAND_STATUS_CHANGED"

    # Manual payments
    MANUAL_PAYMENT_RECORDED = "MANUAL_PAYMENT_RECORDED"
    MANUAL_PAYMENT_CONFIRMED = "MANUAL_PAYMENT_CONFIRMED"
    MANUAL_PAYMENT_DISPUTED = "MANUAL_PAYMENT_DISPUTED"
    MANUAL_PAYMENT_AUTO_CONFIRMED = "MANUAL_PAYMENT_AUTO_CONFIRMED"
    MANUAL_PAYMENT_AUTO_CONFIRM_WARNING = "MANUAL_PAYMENT_AUTO_CONFIRM_WARNING"
    MANUAL_PAYMENT_RESOLVED = "MANUAL_PAYMENT_RESOLVED"

    # Donations
    DONATION_DUE = "DONATION_DUE"
    DONATION_OVERDUE = "DONATION_OVERDUE"
    DONATION_MISSED = "DONATION_MISSED"
    DONATION_SUBMITTED = "DONATION_SUBMITTED"
    DONATION_CONFIRMED = "DONATION_CONFIRMED"
    DONATION_REJECTED = "DONATION_REJECTED"
    RECURRING_DONATION_AUTO_CANCELLED = "RECURRING_DONATION_AUTO_CANCELLED"

    # Reimbursements
    REIMBURSEMENT_MARKED = "REIMBURSEMENT_MARKED"
    REIMBURSEMENT_CONFIRMED = "REIMBURSEMENT_CONFIRMED"
    REIMBURSEMENT_DISPUTED = "REIMBURSEMENT_DISPUTED"
    REIMBURSEMENT_AUTO_CONFIRMED = "REIMBURSEMENT_AUTO_CONFIRMED"
    REIMBURSEMENT_AUTO_CONFIRM_WARNING = "REIMBURSEMENT_AUTO_CONFIRM_WARNING"

    # Tasks and checklist items
    TASK_VERIFICATION_NEEDED = "TASK_VERIFICATION_NEEDED"
    TASK_VERIFIED = "TASK_VERIFIED"
    TASK_REJECTED = "TASK_REJECTED"
    TASK_VERIFICATION_REMINDER = "TASK_VERIFICATION_REMINDER"
    TASK_VERIFICATION_ESCALATED = "TASK_VERIFICATION_ESCALATED"
    CHECKLIST_ITEM_VERIFICATION_NEEDED = "CHECKLIST_ITEM_VERIFICATION_NEEDED"
    CHECKLIST_ITEM_VERIFIED = "CHECKLIST_ITEM_VERIFIED"
    CHECKLIST_ITEM_REJECTED = "CHECKLIST_ITEM_REJECTED"
    CHECKLIST_ITEM_VERIFICATION_REMINDER = "CHECKLIST_ITEM_VERIFICATION_REMINDER"
    CHECKLIST_ITEM_VERIFICATION_ESCALATED = "CHECKLIST_ITEM_VERIFICATION_ESCALATED"

    # Band activity
    PROPOSAL_CREATED = "PROPOSAL_CREATED"
    PROPOSAL_VOTE_NEEDED = "PROPOSAL_VOTE_NEEDED"
    PROPOSAL_APPROVED = "PROPOSAL_APPROVED"
    PROPOSAL_REJECTED = "PROPOSAL_REJECTED"
    PROJECT_CREATED = "PROJECT_CREATED"
    PROJECT_UPDATED = "PROJECT_UPDATED"
    PROJECT_COMPLETED = "PROJECT_COMPLETED"
    TASK_CREATED = "TASK_CREATED"
    TASK_ASSIGNED = "TASK_ASSIGNED"
    TASK_STATUS_CHANGED = "TASK_STATUS_CHANGED"
    TASK_COMPLETED = "TASK_COMPLETED"
    EVENT_CREATED = "EVENT_CREATED"
    EVENT_UPDATED = "EVENT_UPDATED"
    EVENT_CANCELLED = "EVENT_CANCELLED"
    EVENT_REMINDER = "EVENT_REMINDER"
    BAND_DETAILS_UPDATED = "BAND_DETAILS_UPDATED"

    # Platform
    SYSTEM_ALERT = "SYSTEM_ALERT"


# Routine engagement types that are withheld from members not in good standing.
BAND_ACTIVITY_TYPES = frozenset(
    {
        NotificationType.PROPOSAL_CREATED,
        NotificationType.PROPOSAL_VOTE_NEEDED,
        NotificationType.PROPOSAL_APPROVED,
        NotificationType.PROPOSAL_REJECTED,
        NotificationType.PROJECT_CREATED,
        NotificationType.PROJECT_UPDATED,
        NotificationType.PROJECT_COMPLETED,
        NotificationType.TASK_CREATED,
        NotificationType.TASK_ASSIGNED,
        NotificationType.TASK_STATUS_CHANGED,
        NotificationType.TASK_COMPLETED,
        NotificationType.TASK_VERIFICATION_NEEDED,
        NotificationType.TASK_VERIFIED,
        NotificationType.TASK_REJECTED,
        NotificationType.EVENT_CREATED,
        NotificationType.EVENT_UPDATED,
        NotificationType.EVENT_CANCELLED,
        NotificationType.EVENT_REMINDER,
        NotificationType.BAND_DETAILS_UPDATED,
    }
)
_BAND_ACTIVITY_VALUES = frozenset(member.value for member in BAND_ACTIVITY_TYPES)


def is_band_activity(notification_type: Any) -> bool:
    """Return whether a notification type is gated on good standing."""
    return type_value(notification_type) in _BAND_ACTIVITY_VALUES


def type_value(value: Any) -> str:
    """Return the stored string for an enum member or plain string."""
    if isinstance(value, enum.Enum):
        return str(value.value)
    return str(value)
