"""Celery entry point for the lifecycle sweep jobs."""

from __future__ import annotations

import logging
from typing import Any

from celery import Celery
from celery.schedules import crontab

from config import settings
from scheduler.jobs import job_cadences, run_sweep_job

LOGGER = logging.getLogger(__name__)

RUN_SWEEP_TASK_NAME = "lifecycle.run_sweep"

celery_app = Celery("bandcore.lifecycle")
celery_app.conf.broker_url = settings.scheduler.broker_url
celery_app.conf.result_backend = settings.scheduler.result_backend
celery_app.conf.task_default_queue = settings.scheduler.queue_name
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.enable_utc = True
celery_app.conf.timezone = "UTC"


def build_beat_schedule() -> dict[str, dict[str, Any]]:
    """One crontab entry per enabled job so each firing is an independent message."""
    schedule: dict[str, dict[str, Any]] = {}
    for name, cadence in job_cadences().items():
        if not cadence.enabled:
            LOGGER.info("Sweep job disabled: job=%s", name)
            continue
        schedule[f"lifecycle.{name}"] = {
            "task": RUN_SWEEP_TASK_NAME,
            "schedule": crontab(hour=cadence.hour, minute=cadence.minute),
            "args": (name,),
        }
    return schedule


celery_app.conf.beat_schedule = build_beat_schedule()


@celery_app.task(name=RUN_SWEEP_TASK_NAME, acks_late=True, autoretry_for=())
def run_sweep(job_name: str) -> dict[str, Any] | None:
    """Run one lifecycle sweep; failures are logged and never re-raised."""
    summary = run_sweep_job(job_name)
    LOGGER.info(
        "Celery sweep completed: job=%s succeeded=%s",
        job_name,
        summary is not None,
    )
    return summary
