"""Stage enums for every commitment kind tracked by the lifecycle sweeps."""

from __future__ import annotations

import enum


class BandBillingStatus(str, enum.Enum):
    """Subscription stage of a band."""

    NONE = "NONE"
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    INACTIVE = "INACTIVE"


class ManualPaymentStatus(str, enum.Enum):
    """Stage of an off-platform dues payment awaiting counterparty review."""

    PENDING = "PENDING"
    AUTO_CONFIRMED = "AUTO_CONFIRMED"
    CONFIRMED = "CONFIRMED"
    DISPUTED = "DISPUTED"
    REJECTED = "REJECTED"


class ManualPaymentInitiator(str, enum.Enum):
    """Who recorded a manual payment; the other side must confirm it."""

    MEMBER = "MEMBER"
    TREASURER = "TREASURER"


class DonationStatus(str, enum.Enum):
    """Stage of a single donation instance."""

    EXPECTED = "EXPECTED"
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    MISSED = "MISSED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class RecurringDonationStatus(str, enum.Enum):
    """Stage of a recurring donation series."""

    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"
    AUTO_CANCELLED = "AUTO_CANCELLED"


class DonationFrequency(str, enum.Enum):
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"


class ReimbursementStatus(str, enum.Enum):
    """Stage of an expense reimbursement attached to a checklist item."""

    PENDING = "PENDING"
    REIMBURSED = "REIMBURSED"
    CONFIRMED = "CONFIRMED"
    AUTO_CONFIRMED = "AUTO_CONFIRMED"
    DISPUTED = "DISPUTED"


class VerificationStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class TaskStatus(str, enum.Enum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    IN_REVIEW = "IN_REVIEW"
    COMPLETED = "COMPLETED"
    BLOCKED = "BLOCKED"


class MemberRole(str, enum.Enum):
    FOUNDER = "FOUNDER"
    GOVERNOR = "GOVERNOR"
    MODERATOR = "MODERATOR"
    MEMBER = "MEMBER"


class MemberStatus(str, enum.Enum):
    INVITED = "INVITED"
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    BANNED = "BANNED"


class MemberBillingStatus(str, enum.Enum):
    """Payer standing for dues within one band."""

    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    UNPAID = "UNPAID"


# Terminal stages: sweeps never mutate rows in these states.
TERMINAL_MANUAL_PAYMENT = frozenset(
    {
        ManualPaymentStatus.AUTO_CONFIRMED,
        ManualPaymentStatus.CONFIRMED,
        ManualPaymentStatus.DISPUTED,
        ManualPaymentStatus.REJECTED,
    }
)
TERMINAL_DONATION = frozenset(
    {
        DonationStatus.CONFIRMED,
        DonationStatus.MISSED,
        DonationStatus.REJECTED,
        DonationStatus.CANCELLED,
    }
)
TERMINAL_RECURRING_DONATION = frozenset(
    {RecurringDonationStatus.CANCELLED, RecurringDonationStatus.AUTO_CANCELLED}
)
TERMINAL_REIMBURSEMENT = frozenset(
    {
        ReimbursementStatus.CONFIRMED,
        ReimbursementStatus.AUTO_CONFIRMED,
        ReimbursementStatus.DISPUTED,
    }
)
TERMINAL_VERIFICATION = frozenset({VerificationStatus.APPROVED, VerificationStatus.REJECTED})

VERIFIER_ROLES = (MemberRole.FOUNDER, MemberRole.GOVERNOR, MemberRole.MODERATOR)
LEADERSHIP_ROLES = (MemberRole.FOUNDER, MemberRole.GOVERNOR)


def stage_values(stage_enum: type[enum.Enum]) -> tuple[str, ...]:
    """Return the stored string values of a stage enum."""
    return tuple(member.value for member in stage_enum)
