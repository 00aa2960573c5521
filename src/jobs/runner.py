"""Stateless batch job functions.

Each job builds (or receives) the engine services, binds ``job`` and
``run_id`` to the log context and returns the batch counters as a dict. Jobs
hold no state between invocations, so overlapping runs are safe: the row
claims decide which run sends an item.
"""

from __future__ import annotations

import logging
from typing import Any, Callable
from uuid import uuid4

from observability import log_context
from services.engine import EngineServices, build_engine

logger = logging.getLogger(__name__)

PROCESS_SCHEDULED_MESSAGES = "process_scheduled_messages"
RETRY_FAILED_MESSAGES = "retry_failed_messages"
PROCESS_DUE_REMINDERS = "process_due_reminders"
RETRY_FAILED_REMINDERS = "retry_failed_reminders"


def _batches(services: EngineServices) -> dict[str, Callable[[], Any]]:
    return {
        PROCESS_SCHEDULED_MESSAGES: services.dispatcher.process_scheduled_messages,
        RETRY_FAILED_MESSAGES: services.dispatcher.retry_failed_messages,
        PROCESS_DUE_REMINDERS: services.reminder_processor.process_due_reminders,
        RETRY_FAILED_REMINDERS: services.reminder_processor.retry_failed_reminders,
    }


JOB_NAMES = (
    PROCESS_SCHEDULED_MESSAGES,
    RETRY_FAILED_MESSAGES,
    PROCESS_DUE_REMINDERS,
    RETRY_FAILED_REMINDERS,
)


def run_job(name: str, services: EngineServices | None = None) -> dict[str, int]:
    """Run one named batch job to completion and return its counters.

    Services built here are closed when the run ends; services passed in
    belong to the caller.
    """
    if name not in JOB_NAMES:
        raise ValueError(f"Unknown job: {name}")
    owns_services = services is None
    if services is None:
        services = build_engine()
    run_id = uuid4().hex
    try:
        with log_context({"job": name, "run_id": run_id}):
            logger.info("Job %s started", name)
            counters = _batches(services)[name]().to_dict()
            logger.info("Job %s finished: %s", name, counters)
    finally:
        if owns_services:
            services.channels.close()
    return counters
