"""Unit tests for the sweep job registry, runner and Celery beat wiring."""

from __future__ import annotations

from datetime import timedelta

import pytest
from celery.schedules import crontab

from config import JobCadence, settings
from lifecycle.stages import BandBillingStatus
from models import Band
from scheduler import celery_app as celery_module
from scheduler.jobs import (
    SWEEP_JOBS,
    LifecycleServices,
    UnknownSweepJobError,
    get_job,
    job_cadences,
    run_sweep_job,
    trigger_sweep,
)
from scheduler.retry import RetryExecutor, RetryPolicy

EXPECTED_JOBS = {
    "billing.grace_period",
    "billing.owner_needed",
    "billing.low_member_count",
    "manual_payment.auto_confirm",
    "manual_payment.auto_confirm_warning",
    "reimbursement.auto_confirm",
    "reimbursement.auto_confirm_warning",
    "donation.due_reminder",
    "donation.overdue_reminder",
    "donation.missed_check",
    "verification.tasks",
    "verification.checklist_items",
}


class StubPaymentProvider:
    def __init__(self) -> None:
        self.cancelled: list[str] = []

    def cancel_subscription(self, subscription_id: str) -> bool:
        self.cancelled.append(subscription_id)
        return True


@pytest.fixture()
def services(sqlite_session_factory, clock, email_client) -> LifecycleServices:
    return LifecycleServices.build(
        sqlite_session_factory,
        payment_provider=StubPaymentProvider(),
        email_client=email_client,
        now_provider=clock,
    )


def _executor(sleeps: list[float] | None = None) -> RetryExecutor:
    return RetryExecutor(
        RetryPolicy(max_attempts=3, initial_delay_seconds=5, max_delay_seconds=60, multiplier=2),
        sleep=(sleeps.append if sleeps is not None else lambda delay: None),
    )


def test_registry_lists_every_sweep() -> None:
    assert set(SWEEP_JOBS) == EXPECTED_JOBS
    assert set(job_cadences()) == EXPECTED_JOBS


def test_unknown_job_raises() -> None:
    with pytest.raises(UnknownSweepJobError, match="unknown sweep job: nope"):
        get_job("nope")


@pytest.mark.parametrize("name", sorted(EXPECTED_JOBS))
def test_every_job_runs_on_empty_database(name, services) -> None:
    """Each job body produces a summary for its own sweep."""
    summary = run_sweep_job(name, services=services, executor=_executor())

    assert summary is not None
    assert summary["job"] == name
    assert summary["found"] == 0


def test_trigger_sweep_runs_grace_period(services, sqlite_session_factory, seed, clock) -> None:
    """A manual trigger behaves like the scheduled firing."""
    band_id = seed.band(
        billing_status=BandBillingStatus.PAST_DUE,
        provider_subscription_id="sub_9",
        grace_period_ends_at=clock.now - timedelta(hours=1),
    )

    summary = trigger_sweep("billing.grace_period", services=services, executor=_executor())

    assert summary["actions"] == {"deactivate": 1}
    with sqlite_session_factory() as session:
        assert session.get(Band, band_id).billing_status == BandBillingStatus.INACTIVE


def test_job_failure_returns_none(services, monkeypatch) -> None:
    """A fatal error inside a job body is logged and swallowed."""

    def explode():
        raise RuntimeError("boom")

    monkeypatch.setattr(services.donations, "missed_check_sweep", explode)

    assert run_sweep_job("donation.missed_check", services=services, executor=_executor()) is None


def test_transient_job_failure_is_retried(services, monkeypatch) -> None:
    sleeps: list[float] = []
    real_sweep = services.verification.task_sweep
    calls = {"count": 0}

    def flaky_sweep(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise ConnectionResetError("connection reset")
        return real_sweep(*args, **kwargs)

    monkeypatch.setattr(services.verification, "task_sweep", flaky_sweep)

    summary = run_sweep_job("verification.tasks", services=services, executor=_executor(sleeps))

    assert summary is not None
    assert calls["count"] == 2
    assert sleeps == [5]


def test_beat_schedule_has_one_entry_per_enabled_job(monkeypatch) -> None:
    jobs = dict(settings.scheduler.jobs)
    jobs["donation.missed_check"] = JobCadence(hour=10, enabled=False)
    monkeypatch.setattr(settings.scheduler, "jobs", jobs)

    schedule = celery_module.build_beat_schedule()

    assert "lifecycle.donation.missed_check" not in schedule
    assert len(schedule) == len(EXPECTED_JOBS) - 1
    entry = schedule["lifecycle.billing.grace_period"]
    assert entry["task"] == celery_module.RUN_SWEEP_TASK_NAME
    assert entry["args"] == ("billing.grace_period",)
    assert entry["schedule"] == crontab(hour=2, minute=0)


def test_celery_task_delegates_to_runner(monkeypatch) -> None:
    seen: list[str] = []

    def fake_run(name):
        seen.append(name)
        return {"job": name}

    monkeypatch.setattr(celery_module, "run_sweep_job", fake_run)

    assert celery_module.run_sweep.run("donation.due_reminder") == {"job": "donation.due_reminder"}
    assert seen == ["donation.due_reminder"]
