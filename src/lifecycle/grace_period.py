"""Band subscription grace periods and the daily billing health checks."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import LifecycleConfig, settings
from lifecycle.audit import AuditEntryInput, record_audit_entry
from lifecycle.errors import CommitmentNotFoundError, InvalidTransitionError
from lifecycle.ladder import Ladder, Tier, days
from lifecycle.recipients import active_member_user_ids, platform_admin_user_ids, user_email
from lifecycle.stages import BandBillingStatus, MemberStatus
from lifecycle.sweep import Sweep, SweepContext, interrupted_summary
from models import Band, Member, Notification
from notifications.email import EmailClient, deferred_email
from notifications.gate import NotificationGate, NotificationRequest
from notifications.types import NotificationPriority, NotificationType
from services.database import guarded_update, session_scope
from services.payment_provider import PaymentProviderClient
from time_utils import utc_now

logger = logging.getLogger(__name__)

ENTITY_TYPE = "Band"
GRACE_PERIOD_JOB = "billing.grace_period"
OWNER_NEEDED_JOB = "billing.owner_needed"
LOW_MEMBER_COUNT_JOB = "billing.low_member_count"

DEACTIVATE_TIER = "deactivate"


class BillingLifecycle:
    """Grace-period transitions for band subscriptions."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        payment_provider: PaymentProviderClient | None = None,
        gate: NotificationGate | None = None,
        email_client: EmailClient | None = None,
        config: LifecycleConfig | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._now_provider = now_provider or utc_now
        self._payment_provider = payment_provider or PaymentProviderClient()
        self._gate = gate or NotificationGate(now_provider=self._now_provider)
        self._email_client = email_client or EmailClient()
        self._config = config or settings.lifecycle

    def start_grace_period(self, band_id: int) -> Band:
        """Move an ACTIVE band to PAST_DUE and start the grace clock.

        A band already PAST_DUE keeps its original deadline so redelivered
        payment failures do not extend the grace period.
        """
        now = self._now_provider()
        ends_at = now + days(self._config.grace_period_days)
        after_commit: list[Callable[[], None]] = []
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            band = session.get(Band, band_id)
            if band is None:
                raise CommitmentNotFoundError(ENTITY_TYPE, band_id)
            if band.billing_status == BandBillingStatus.PAST_DUE:
                logger.info("Grace period already running: band_id=%s", band_id)
                return band
            applied = guarded_update(
                session,
                Band,
                band.id,
                {"billing_status": BandBillingStatus.ACTIVE.value},
                {
                    "billing_status": BandBillingStatus.PAST_DUE.value,
                    "payment_failed_at": now,
                    "grace_period_ends_at": ends_at,
                },
            )
            if not applied:
                raise InvalidTransitionError(
                    ENTITY_TYPE, band_id, band.billing_status, "start grace period"
                )
            metadata = {
                "bandId": band.id,
                "bandName": band.name,
                "gracePeriodEndsAt": ends_at.isoformat(),
            }
            if band.billing_owner_id is not None:
                self._gate.create(
                    session,
                    NotificationRequest(
                        user_id=band.billing_owner_id,
                        type=NotificationType.BILLING_PAYMENT_FAILED,
                        band_id=band.id,
                        title="Payment Failed",
                        message=(
                            f"The subscription payment for {band.name} failed. Update the "
                            f"payment method within {self._config.grace_period_days} days to "
                            "keep the band active."
                        ),
                        priority=NotificationPriority.URGENT.value,
                        related_type=ENTITY_TYPE,
                        related_id=band.id,
                        metadata=metadata,
                    ),
                )
                address = user_email(session, band.billing_owner_id)
                if address:
                    after_commit.append(
                        deferred_email(
                            self._email_client, "billing_payment_failed", address, metadata
                        )
                    )
            self._gate.create_many(
                session,
                active_member_user_ids(session, band.id, exclude=[band.billing_owner_id]),
                NotificationRequest(
                    type=NotificationType.BILLING_GRACE_PERIOD_WARNING,
                    band_id=band.id,
                    title="Band Payment Issue",
                    message=(
                        f"{band.name} has a billing problem. The band will be deactivated "
                        f"in {self._config.grace_period_days} days unless payment is updated."
                    ),
                    priority=NotificationPriority.HIGH.value,
                    related_type=ENTITY_TYPE,
                    related_id=band.id,
                    metadata=metadata,
                ),
            )
            record_audit_entry(
                session,
                AuditEntryInput(
                    action="BILLING_GRACE_PERIOD_STARTED",
                    entity_type=ENTITY_TYPE,
                    entity_id=band.id,
                    band_id=band.id,
                    changes={
                        "billing_status": [BandBillingStatus.ACTIVE, BandBillingStatus.PAST_DUE],
                        "grace_period_ends_at": ends_at,
                    },
                ),
                now=now,
            )
        for effect in after_commit:
            effect()
        logger.info("Grace period started: band_id=%s ends_at=%s", band_id, ends_at.isoformat())
        return band

    def handle_payment_failed(self, provider_subscription_id: str) -> Band | None:
        """Start the grace period for the band owning a failed subscription."""
        with session_scope(self._session_factory) as session:
            band_id = session.scalar(
                select(Band.id).where(Band.provider_subscription_id == provider_subscription_id)
            )
        if band_id is None:
            logger.warning(
                "Payment failure for unknown subscription: subscription_id=%s",
                provider_subscription_id,
            )
            return None
        return self.start_grace_period(band_id)

    def clear_grace_period(self, band_id: int) -> Band:
        """Return a band to ACTIVE after a successful payment."""
        with session_scope(self._session_factory, expire_on_commit=False) as session:
            band = session.get(Band, band_id)
            if band is None:
                raise CommitmentNotFoundError(ENTITY_TYPE, band_id)
            previous = band.billing_status
            band.billing_status = BandBillingStatus.ACTIVE.value
            band.payment_failed_at = None
            band.grace_period_ends_at = None
            session.flush()
            if previous != BandBillingStatus.ACTIVE:
                record_audit_entry(
                    session,
                    AuditEntryInput(
                        action="BILLING_GRACE_PERIOD_CLEARED",
                        entity_type=ENTITY_TYPE,
                        entity_id=band.id,
                        band_id=band.id,
                        changes={"billing_status": [previous, BandBillingStatus.ACTIVE]},
                    ),
                    now=self._now_provider(),
                )
        return band

    # Sweeps

    def ladder(self) -> Ladder:
        return Ladder(
            lambda band: band.grace_period_ends_at,
            [
                Tier(
                    name=DEACTIVATE_TIER,
                    action=self._deactivate,
                    start=timedelta(0),
                    start_inclusive=False,
                )
            ],
        )

    def grace_period_sweep(self, max_workers: int | None = None) -> Sweep:
        def candidates(session: Session, now: datetime) -> list[int]:
            statement = (
                select(Band.id)
                .where(
                    Band.billing_status == BandBillingStatus.PAST_DUE.value,
                    Band.grace_period_ends_at < now,
                )
                .order_by(Band.id.asc())
            )
            return list(session.scalars(statement))

        return Sweep(
            GRACE_PERIOD_JOB,
            Band,
            self.ladder(),
            candidates,
            session_factory=self._session_factory,
            gate=self._gate,
            max_workers=max_workers,
            now_provider=self._now_provider,
        )

    def run_grace_period_sweep(self, now: datetime | None = None) -> dict[str, Any]:
        """Deactivate expired bands and alert administrators about failures.

        A transient failure still alerts before it propagates to the retry
        wrapper, so every interrupted attempt is reported.
        """
        try:
            summary = self.grace_period_sweep().run(now)
        except Exception as exc:
            partial = interrupted_summary(exc)
            if partial and partial["errors"]:
                self._alert_admins(partial["errors"])
            raise
        if summary["errors"]:
            self._alert_admins(summary["errors"])
        return summary

    def owner_needed_sweep(self, max_workers: int | None = None) -> Sweep:
        def candidates(session: Session, now: datetime) -> list[int]:
            statement = (
                select(Band.id)
                .where(
                    Band.billing_status == BandBillingStatus.ACTIVE.value,
                    Band.billing_owner_id.is_(None),
                    Band.dissolved_at.is_(None),
                )
                .order_by(Band.id.asc())
            )
            return list(session.scalars(statement))

        return self._daily_check(
            OWNER_NEEDED_JOB, "owner_needed", self._notify_owner_needed, candidates, max_workers
        )

    def low_member_count_sweep(self, max_workers: int | None = None) -> Sweep:
        def candidates(session: Session, now: datetime) -> list[int]:
            statement = (
                select(Band.id)
                .where(
                    Band.billing_status == BandBillingStatus.ACTIVE.value,
                    Band.provider_subscription_id.is_not(None),
                    Band.dissolved_at.is_(None),
                )
                .order_by(Band.id.asc())
            )
            return list(session.scalars(statement))

        return self._daily_check(
            LOW_MEMBER_COUNT_JOB,
            "low_member_count",
            self._notify_low_member_count,
            candidates,
            max_workers,
        )

    def _daily_check(self, name, tier_name, action, candidates, max_workers) -> Sweep:
        ladder = Ladder(
            lambda band: band.created_at,
            [Tier(name=tier_name, action=action, start=timedelta(0))],
        )
        return Sweep(
            name,
            Band,
            ladder,
            candidates,
            session_factory=self._session_factory,
            gate=self._gate,
            max_workers=max_workers,
            now_provider=self._now_provider,
        )

    def _deactivate(self, context: SweepContext) -> bool:
        band: Band = context.row
        subscription_id = band.provider_subscription_id
        if not context.claim(
            {
                "billing_status": BandBillingStatus.PAST_DUE.value,
                "provider_subscription_id": subscription_id,
            },
            {
                "billing_status": BandBillingStatus.INACTIVE.value,
                "provider_subscription_id": None,
                "provider_price_id": None,
            },
        ):
            return False
        # Cancel inside the row transaction; a provider error rolls the flip back.
        if subscription_id:
            self._payment_provider.cancel_subscription(subscription_id)
        context.notify_many(
            active_member_user_ids(context.session, band.id),
            NotificationRequest(
                type=NotificationType.BILLING_BAND_DEACTIVATED,
                band_id=band.id,
                title="Band Deactivated",
                message=(
                    f"{band.name} has been deactivated due to payment failure. "
                    "Please update payment to reactivate."
                ),
                priority=NotificationPriority.URGENT.value,
                related_type=ENTITY_TYPE,
                related_id=band.id,
                metadata={"bandId": band.id, "bandName": band.name},
            ),
        )
        context.audit(
            AuditEntryInput(
                action="BILLING_BAND_DEACTIVATED",
                entity_type=ENTITY_TYPE,
                entity_id=band.id,
                band_id=band.id,
                changes={
                    "billing_status": [BandBillingStatus.PAST_DUE, BandBillingStatus.INACTIVE],
                    "provider_subscription_id": [subscription_id, None],
                },
            )
        )
        logger.info(
            "Band deactivated after grace period: band_id=%s subscription_id=%s",
            band.id,
            subscription_id,
        )
        return True

    def _notify_owner_needed(self, context: SweepContext) -> bool:
        band: Band = context.row
        if band.billing_owner_id is not None or band.billing_status != BandBillingStatus.ACTIVE:
            return False
        if _notified_since(
            context.session, band.id, NotificationType.BILLING_OWNER_LEFT, _day_start(context.now)
        ):
            return False
        created = context.notify_many(
            active_member_user_ids(context.session, band.id),
            NotificationRequest(
                type=NotificationType.BILLING_OWNER_LEFT,
                band_id=band.id,
                title="Billing Owner Needed",
                message=(
                    f"{band.name} needs a billing owner. Please claim ownership to "
                    "manage payments."
                ),
                priority=NotificationPriority.HIGH.value,
                related_type=ENTITY_TYPE,
                related_id=band.id,
                metadata={"bandId": band.id, "bandName": band.name},
            ),
        )
        return bool(created)

    def _notify_low_member_count(self, context: SweepContext) -> bool:
        band: Band = context.row
        if band.billing_owner_id is None:
            return False
        member_count = context.session.scalar(
            select(func.count(Member.id)).where(
                Member.band_id == band.id, Member.status == MemberStatus.ACTIVE.value
            )
        )
        if member_count >= self._config.min_active_members:
            return False
        if _notified_since(
            context.session, band.id, NotificationType.BAND_STATUS_CHANGED, _day_start(context.now)
        ):
            return False
        created = context.notify(
            NotificationRequest(
                user_id=band.billing_owner_id,
                type=NotificationType.BAND_STATUS_CHANGED,
                band_id=band.id,
                title="Low Member Count Warning",
                message=(
                    f"{band.name} has fewer than {self._config.min_active_members} members. "
                    "The band will be deactivated at the end of the billing cycle unless "
                    "more members join."
                ),
                priority=NotificationPriority.HIGH.value,
                related_type=ENTITY_TYPE,
                related_id=band.id,
                metadata={"bandId": band.id, "memberCount": member_count},
            )
        )
        return created is not None

    def _alert_admins(self, errors: list[str]) -> None:
        with session_scope(self._session_factory) as session:
            admins = platform_admin_user_ids(session)
            if not admins:
                logger.warning("Grace period errors with no platform admins: %s", errors)
                return
            self._gate.create_many(
                session,
                admins,
                NotificationRequest(
                    type=NotificationType.SYSTEM_ALERT,
                    title="Grace Period Sweep Errors",
                    message="\n".join(errors),
                    priority=NotificationPriority.HIGH.value,
                    metadata={"job": GRACE_PERIOD_JOB, "errorCount": len(errors)},
                ),
            )


def _day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _notified_since(
    session: Session, band_id: int, notification_type: NotificationType, since: datetime
) -> bool:
    statement = (
        select(Notification.id)
        .where(
            Notification.band_id == band_id,
            Notification.type == notification_type.value,
            Notification.related_type == ENTITY_TYPE,
            Notification.created_at >= since,
        )
        .limit(1)
    )
    return session.scalar(statement) is not None
