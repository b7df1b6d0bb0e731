"""Data models for the band commitment lifecycle engine."""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from lifecycle.stages import (
    BandBillingStatus,
    DonationFrequency,
    DonationStatus,
    ManualPaymentInitiator,
    ManualPaymentStatus,
    MemberBillingStatus,
    MemberRole,
    MemberStatus,
    RecurringDonationStatus,
    ReimbursementStatus,
    TaskStatus,
    VerificationStatus,
    stage_values,
)
from notifications.types import NotificationPriority

# SQLAlchemy base
Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Timestamp column stored in UTC and always loaded as an aware datetime."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            # SQLite stores naive text; comparisons require a uniform offset.
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Stage enums
BandBillingStatusEnum = Enum(
    *stage_values(BandBillingStatus), name="band_billing_status", native_enum=False
)
ManualPaymentStatusEnum = Enum(
    *stage_values(ManualPaymentStatus), name="manual_payment_status", native_enum=False
)
ManualPaymentInitiatorEnum = Enum(
    *stage_values(ManualPaymentInitiator), name="manual_payment_initiator", native_enum=False
)
DonationStatusEnum = Enum(*stage_values(DonationStatus), name="donation_status", native_enum=False)
RecurringDonationStatusEnum = Enum(
    *stage_values(RecurringDonationStatus),
    name="recurring_donation_status",
    native_enum=False,
)
DonationFrequencyEnum = Enum(
    *stage_values(DonationFrequency), name="donation_frequency", native_enum=False
)
ReimbursementStatusEnum = Enum(
    *stage_values(ReimbursementStatus), name="reimbursement_status", native_enum=False
)
VerificationStatusEnum = Enum(
    *stage_values(VerificationStatus), name="verification_status", native_enum=False
)
TaskStatusEnum = Enum(*stage_values(TaskStatus), name="task_status", native_enum=False)
MemberRoleEnum = Enum(*stage_values(MemberRole), name="member_role", native_enum=False)
MemberStatusEnum = Enum(*stage_values(MemberStatus), name="member_status", native_enum=False)
MemberBillingStatusEnum = Enum(
    *stage_values(MemberBillingStatus), name="member_billing_status", native_enum=False
)
NotificationPriorityEnum = Enum(
    *stage_values(NotificationPriority), name="notification_priority", native_enum=False
)
AuditActorTypeEnum = Enum("system", "user", name="audit_actor_type", native_enum=False)


# Database models
class User(Base):
    """Platform user account."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(320), nullable=False, unique=True)
    name = Column(String(200), nullable=True)
    is_platform_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)


class Band(Base):
    """A band and its platform subscription."""

    __tablename__ = "bands"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    billing_status = Column(
        BandBillingStatusEnum, nullable=False, default=BandBillingStatus.NONE.value
    )
    billing_owner_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    provider_subscription_id = Column(String(200), nullable=True, unique=True)
    provider_price_id = Column(String(200), nullable=True)
    payment_failed_at = Column(UTCDateTime, nullable=True)
    grace_period_ends_at = Column(UTCDateTime, nullable=True)
    dissolved_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)


class Member(Base):
    """Membership of a user in a band."""

    __tablename__ = "members"
    __table_args__ = (UniqueConstraint("band_id", "user_id", name="uq_members_band_user"),)

    id = Column(Integer, primary_key=True)
    band_id = Column(Integer, ForeignKey("bands.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    role = Column(MemberRoleEnum, nullable=False, default=MemberRole.MEMBER.value)
    status = Column(MemberStatusEnum, nullable=False, default=MemberStatus.ACTIVE.value)
    is_treasurer = Column(Boolean, nullable=False, default=False)
    activated_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)


class MemberBilling(Base):
    """Dues standing of one payer within one band."""

    __tablename__ = "member_billing"
    __table_args__ = (
        UniqueConstraint("band_id", "user_id", name="uq_member_billing_band_user"),
    )

    id = Column(Integer, primary_key=True)
    band_id = Column(Integer, ForeignKey("bands.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    status = Column(MemberBillingStatusEnum, nullable=False)
    last_payment_at = Column(UTCDateTime, nullable=True)
    updated_at = Column(UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class DuesPlan(Base):
    """Recurring dues plan of a band."""

    __tablename__ = "dues_plans"

    id = Column(Integer, primary_key=True)
    band_id = Column(Integer, ForeignKey("bands.id"), nullable=False)
    amount_cents = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)


class FinanceSettings(Base):
    """Per-band finance knobs; missing rows fall back to configured defaults."""

    __tablename__ = "finance_settings"

    id = Column(Integer, primary_key=True)
    band_id = Column(Integer, ForeignKey("bands.id"), nullable=False, unique=True)
    donation_due_window_days = Column(Integer, nullable=False, default=7)
    dues_enforcement_enabled = Column(Boolean, nullable=False, default=True)
    new_member_grace_days = Column(Integer, nullable=False, default=7)
    lapsed_member_grace_days = Column(Integer, nullable=False, default=3)


class ManualPayment(Base):
    """Off-platform dues payment that the counterparty must confirm."""

    __tablename__ = "manual_payments"

    id = Column(Integer, primary_key=True)
    band_id = Column(Integer, ForeignKey("bands.id"), nullable=False)
    member_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    initiated_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    initiated_by_role = Column(ManualPaymentInitiatorEnum, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    payment_method = Column(String(50), nullable=False)
    payment_date = Column(UTCDateTime, nullable=False)
    note = Column(Text, nullable=True)
    status = Column(
        ManualPaymentStatusEnum, nullable=False, default=ManualPaymentStatus.PENDING.value
    )
    submitted_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    auto_confirm_at = Column(UTCDateTime, nullable=False)
    auto_confirm_warned = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(UTCDateTime, nullable=True)
    resolved_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    dispute_reason = Column(Text, nullable=True)
    resolution_note = Column(Text, nullable=True)


class RecurringDonation(Base):
    """A donor's recurring pledge to a band."""

    __tablename__ = "recurring_donations"

    id = Column(Integer, primary_key=True)
    band_id = Column(Integer, ForeignKey("bands.id"), nullable=False)
    donor_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount_cents = Column(Integer, nullable=False)
    frequency = Column(DonationFrequencyEnum, nullable=False)
    day_of_month = Column(Integer, nullable=True)
    status = Column(
        RecurringDonationStatusEnum,
        nullable=False,
        default=RecurringDonationStatus.ACTIVE.value,
    )
    missed_count = Column(Integer, nullable=False, default=0)
    next_due_date = Column(UTCDateTime, nullable=False)
    auto_cancelled_at = Column(UTCDateTime, nullable=True)
    paused_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)


class Donation(Base):
    """A single expected or reported donation."""

    __tablename__ = "donations"

    id = Column(Integer, primary_key=True)
    band_id = Column(Integer, ForeignKey("bands.id"), nullable=False)
    donor_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    recurring_donation_id = Column(
        Integer, ForeignKey("recurring_donations.id"), nullable=True
    )
    amount_cents = Column(Integer, nullable=False)
    status = Column(DonationStatusEnum, nullable=False, default=DonationStatus.EXPECTED.value)
    expected_date = Column(UTCDateTime, nullable=False)
    due_window_days = Column(Integer, nullable=False, default=7)
    reminder_sent_at = Column(UTCDateTime, nullable=True)
    overdue_reminder_sent_at = Column(UTCDateTime, nullable=True)
    missed_at = Column(UTCDateTime, nullable=True)
    submitted_at = Column(UTCDateTime, nullable=True)
    resolved_at = Column(UTCDateTime, nullable=True)
    resolved_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)


class Project(Base):
    """A band project grouping tasks."""

    __tablename__ = "projects"

    id = Column(Integer, primary_key=True)
    band_id = Column(Integer, ForeignKey("bands.id"), nullable=False)
    name = Column(String(200), nullable=False)
    completed_tasks = Column(Integer, nullable=False, default=0)


class Task(Base):
    """Project task whose completion may require verification."""

    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True)
    band_id = Column(Integer, ForeignKey("bands.id"), nullable=False)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    title = Column(String(300), nullable=False)
    assignee_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    status = Column(TaskStatusEnum, nullable=False, default=TaskStatus.TODO.value)
    requires_verification = Column(Boolean, nullable=False, default=True)
    verification_status = Column(VerificationStatusEnum, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    reminder_sent_at = Column(UTCDateTime, nullable=True)
    escalated_at = Column(UTCDateTime, nullable=True)
    verified_at = Column(UTCDateTime, nullable=True)
    verified_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    verification_notes = Column(Text, nullable=True)


class ChecklistItem(Base):
    """Checklist entry on a task, optionally carrying an expense reimbursement."""

    __tablename__ = "checklist_items"

    id = Column(Integer, primary_key=True)
    task_id = Column(Integer, ForeignKey("tasks.id"), nullable=False)
    description = Column(Text, nullable=False)
    assignee_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    is_completed = Column(Boolean, nullable=False, default=False)
    requires_verification = Column(Boolean, nullable=False, default=False)
    verification_status = Column(VerificationStatusEnum, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    reminder_sent_at = Column(UTCDateTime, nullable=True)
    escalated_at = Column(UTCDateTime, nullable=True)
    verified_at = Column(UTCDateTime, nullable=True)
    verified_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    verification_notes = Column(Text, nullable=True)
    expense_amount_cents = Column(Integer, nullable=True)
    reimbursement_status = Column(ReimbursementStatusEnum, nullable=True)
    reimbursed_at = Column(UTCDateTime, nullable=True)
    reimbursed_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    reimbursement_auto_confirm_at = Column(UTCDateTime, nullable=True)
    reimbursement_auto_confirm_warned = Column(Boolean, nullable=False, default=False)
    reimbursement_resolved_at = Column(UTCDateTime, nullable=True)
    reimbursement_dispute_reason = Column(Text, nullable=True)


class Notification(Base):
    """In-app notification delivered to a user."""

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    band_id = Column(Integer, ForeignKey("bands.id"), nullable=True)
    type = Column(String(100), nullable=False)
    priority = Column(
        NotificationPriorityEnum, nullable=False, default=NotificationPriority.MEDIUM.value
    )
    title = Column(String(300), nullable=False)
    message = Column(Text, nullable=False)
    related_type = Column(String(100), nullable=True)
    related_id = Column(Integer, nullable=True)
    action_url = Column(Text, nullable=True)
    metadata_json = Column(JSON, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)


class NotificationPreference(Base):
    """Per-user channel preference for one notification type."""

    __tablename__ = "notification_preferences"
    __table_args__ = (
        UniqueConstraint("user_id", "notification_type", name="uq_notification_pref_user_type"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    notification_type = Column(String(100), nullable=False)
    in_app = Column(Boolean, nullable=False, default=True)
    email = Column(Boolean, nullable=False, default=True)


class NotificationTemplate(Base):
    """Title and message templates with ``{key}`` placeholders."""

    __tablename__ = "notification_templates"

    id = Column(Integer, primary_key=True)
    notification_type = Column(String(100), nullable=False, unique=True)
    title_template = Column(String(300), nullable=False)
    message_template = Column(Text, nullable=False)
    default_priority = Column(NotificationPriorityEnum, nullable=True)


class AuditLog(Base):
    """Append-only record of lifecycle mutations."""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True)
    band_id = Column(Integer, ForeignKey("bands.id"), nullable=True)
    actor_type = Column(AuditActorTypeEnum, nullable=False)
    actor_id = Column(Integer, nullable=True)
    action = Column(String(100), nullable=False)
    entity_type = Column(String(100), nullable=False)
    entity_id = Column(Integer, nullable=False)
    changes = Column(JSON, nullable=True)
    occurred_at = Column(UTCDateTime, nullable=False, default=_utcnow)
