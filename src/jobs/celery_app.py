"""Celery entry point running the batch jobs on a beat schedule."""

from __future__ import annotations

from celery import Celery
from celery.signals import setup_logging

from config import settings
from jobs.runner import (
    JOB_NAMES,
    PROCESS_DUE_REMINDERS,
    PROCESS_SCHEDULED_MESSAGES,
    RETRY_FAILED_MESSAGES,
    RETRY_FAILED_REMINDERS,
    run_job,
)
from observability import configure_logging

celery_app = Celery("clinicflow.jobs")
celery_app.conf.broker_url = settings.celery.broker_url
celery_app.conf.result_backend = settings.celery.result_backend
celery_app.conf.task_default_queue = settings.celery.queue_name
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.enable_utc = True
celery_app.conf.timezone = "UTC"


def _task_name(job: str) -> str:
    return f"clinicflow.{job}"


def build_beat_schedule(interval_seconds: float) -> dict[str, dict[str, object]]:
    """Run every batch job once per ``interval_seconds``."""
    return {
        _task_name(job): {"task": _task_name(job), "schedule": interval_seconds}
        for job in JOB_NAMES
    }


celery_app.conf.beat_schedule = build_beat_schedule(settings.celery.scan_interval_seconds)


@setup_logging.connect
def configure_worker_logging(**_kwargs: object) -> None:
    """Route worker and beat logs through the engine's formatter."""
    configure_logging(
        level=settings.log_level,
        json_output=settings.log_json,
        service="clinicflow-jobs",
        environment=settings.environment,
    )


@celery_app.task(name=_task_name(PROCESS_SCHEDULED_MESSAGES))
def process_scheduled_messages() -> dict[str, int]:
    """Celery beat job sending due outbound messages."""
    return run_job(PROCESS_SCHEDULED_MESSAGES)


@celery_app.task(name=_task_name(RETRY_FAILED_MESSAGES))
def retry_failed_messages() -> dict[str, int]:
    """Celery beat job retrying failed messages."""
    return run_job(RETRY_FAILED_MESSAGES)


@celery_app.task(name=_task_name(PROCESS_DUE_REMINDERS))
def process_due_reminders() -> dict[str, int]:
    """Celery beat job sending due reminders."""
    return run_job(PROCESS_DUE_REMINDERS)


@celery_app.task(name=_task_name(RETRY_FAILED_REMINDERS))
def retry_failed_reminders() -> dict[str, int]:
    """Celery beat job retrying reminders whose backoff has elapsed."""
    return run_job(RETRY_FAILED_REMINDERS)
