"""Registry of scheduled lifecycle sweeps and their retrying job runner."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from config import JobCadence, settings
from lifecycle.donations import DonationLifecycle
from lifecycle.grace_period import BillingLifecycle
from lifecycle.manual_payments import ManualPaymentLifecycle
from lifecycle.reimbursements import ReimbursementLifecycle
from lifecycle.verification import VerificationLifecycle
from notifications.email import EmailClient
from notifications.gate import NotificationGate
from scheduler.retry import RetryExecutor
from services.database import get_session_factory, reset_connection_pool
from services.payment_provider import PaymentProviderClient
from time_utils import utc_now

logger = logging.getLogger(__name__)


class UnknownSweepJobError(LookupError):
    """Raised when a sweep job name is not registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"unknown sweep job: {name}")
        self.name = name


@dataclass(frozen=True)
class LifecycleServices:
    """The lifecycle components a sweep job body may call."""

    billing: BillingLifecycle
    manual_payments: ManualPaymentLifecycle
    donations: DonationLifecycle
    reimbursements: ReimbursementLifecycle
    verification: VerificationLifecycle

    @classmethod
    def build(
        cls,
        session_factory: Callable[[], Session],
        *,
        payment_provider: PaymentProviderClient | None = None,
        email_client: EmailClient | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> "LifecycleServices":
        now_provider = now_provider or utc_now
        gate = NotificationGate(now_provider=now_provider)
        email_client = email_client or EmailClient()
        return cls(
            billing=BillingLifecycle(
                session_factory,
                payment_provider=payment_provider,
                gate=gate,
                email_client=email_client,
                now_provider=now_provider,
            ),
            manual_payments=ManualPaymentLifecycle(
                session_factory, gate=gate, email_client=email_client, now_provider=now_provider
            ),
            donations=DonationLifecycle(session_factory, gate=gate, now_provider=now_provider),
            reimbursements=ReimbursementLifecycle(
                session_factory, gate=gate, email_client=email_client, now_provider=now_provider
            ),
            verification=VerificationLifecycle(
                session_factory, gate=gate, now_provider=now_provider
            ),
        )


@dataclass(frozen=True)
class SweepJob:
    """A named sweep body run once per scheduled firing."""

    name: str
    body: Callable[[LifecycleServices], dict[str, Any]]
    description: str = ""


SWEEP_JOBS: dict[str, SweepJob] = {
    job.name: job
    for job in (
        SweepJob(
            "billing.grace_period",
            lambda services: services.billing.run_grace_period_sweep(),
            "Deactivate bands whose payment grace period has ended.",
        ),
        SweepJob(
            "billing.owner_needed",
            lambda services: services.billing.owner_needed_sweep().run(),
            "Ask members of active bands without a billing owner to claim it.",
        ),
        SweepJob(
            "billing.low_member_count",
            lambda services: services.billing.low_member_count_sweep().run(),
            "Warn billing owners of subscribed bands below the member minimum.",
        ),
        SweepJob(
            "manual_payment.auto_confirm",
            lambda services: services.manual_payments.auto_confirm_sweep().run(),
        ),
        SweepJob(
            "manual_payment.auto_confirm_warning",
            lambda services: services.manual_payments.warning_sweep().run(),
        ),
        SweepJob(
            "reimbursement.auto_confirm",
            lambda services: services.reimbursements.auto_confirm_sweep().run(),
        ),
        SweepJob(
            "reimbursement.auto_confirm_warning",
            lambda services: services.reimbursements.warning_sweep().run(),
        ),
        SweepJob(
            "donation.due_reminder",
            lambda services: services.donations.due_reminder_sweep().run(),
        ),
        SweepJob(
            "donation.overdue_reminder",
            lambda services: services.donations.overdue_reminder_sweep().run(),
        ),
        SweepJob(
            "donation.missed_check",
            lambda services: services.donations.missed_check_sweep().run(),
            "Mark donations past their due window missed and advance or cancel series.",
        ),
        SweepJob(
            "verification.tasks",
            lambda services: services.verification.task_sweep().run(),
        ),
        SweepJob(
            "verification.checklist_items",
            lambda services: services.verification.checklist_item_sweep().run(),
        ),
    )
}

_default_services: LifecycleServices | None = None
_default_services_lock = threading.Lock()


def default_services() -> LifecycleServices:
    """Return the process-wide lifecycle services bound to the main database."""
    global _default_services
    with _default_services_lock:
        if _default_services is None:
            _default_services = LifecycleServices.build(get_session_factory())
    return _default_services


def get_job(name: str) -> SweepJob:
    job = SWEEP_JOBS.get(name)
    if job is None:
        raise UnknownSweepJobError(name)
    return job


def job_cadences() -> dict[str, JobCadence]:
    """Return the configured cadence for every registered job."""
    configured = settings.scheduler.jobs
    return {name: configured[name] for name in SWEEP_JOBS if name in configured}


def run_sweep_job(
    name: str,
    *,
    services: LifecycleServices | None = None,
    executor: RetryExecutor | None = None,
) -> dict[str, Any] | None:
    """Run one sweep job with retries; returns its summary or None on failure."""
    job = get_job(name)
    services = services or default_services()
    executor = executor or RetryExecutor(reset_hook=reset_connection_pool)
    logger.info("Sweep job starting: job=%s", name)
    return executor.run_job(name, lambda: job.body(services))


def trigger_sweep(
    name: str,
    *,
    services: LifecycleServices | None = None,
    executor: RetryExecutor | None = None,
) -> dict[str, Any] | None:
    """Run a sweep on demand, exactly as its scheduled firing would."""
    logger.info("Manual sweep trigger: job=%s", name)
    return run_sweep_job(name, services=services, executor=executor)
