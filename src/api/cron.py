"""Trigger endpoints for the periodic batch jobs.

POST runs one batch and returns its counters; GET on the same path returns a
static descriptor and never touches the database.
"""

from __future__ import annotations

import hmac
import logging
import time
from typing import Any, Callable

from fastapi import APIRouter, Depends, Request

from api.dependencies import get_header, get_services
from config import CronConfig, settings
from errors import AuthorizationError
from observability import log_context
from services.engine import EngineServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])

_BEARER_PREFIX = "bearer "


def _presented_secret(request: Request, cron: CronConfig) -> str | None:
    authorization = get_header(request, "authorization", required=False)
    if authorization and authorization.lower().startswith(_BEARER_PREFIX):
        return authorization[len(_BEARER_PREFIX):].strip() or None
    return get_header(request, cron.header_name, required=False)


def verify_cron_request(
    request: Request,
    *,
    cron: CronConfig | None = None,
    development: bool | None = None,
) -> None:
    """Reject trigger calls that do not present the shared secret.

    A configured secret is always enforced. Without one, calls are only
    accepted in development mode with unauthenticated access enabled.
    """
    cron = cron or settings.cron
    development = settings.is_development if development is None else development
    presented = _presented_secret(request, cron)
    if cron.secret:
        if presented is not None and hmac.compare_digest(presented, cron.secret):
            return
        reason = "missing" if presented is None else "mismatched"
    elif development and cron.allow_unauthenticated_in_dev:
        return
    else:
        reason = "not_configured"

    client = request.client.host if request.client else None
    with log_context({"security_event": "cron_auth_failed", "reason": reason, "client": client}):
        logger.warning("Rejected trigger request to %s: %s secret", request.url.path, reason)
    raise AuthorizationError("Unauthorized")


def require_cron_secret(request: Request) -> None:
    verify_cron_request(request)


def _run_job(job: str, run: Callable[[], Any]) -> dict[str, Any]:
    started = time.monotonic()
    with log_context({"job": job}):
        result = run()
    payload: dict[str, Any] = {"success": True, **result.to_dict()}
    payload["durationMs"] = int((time.monotonic() - started) * 1000)
    return payload


def _descriptor(job: str, description: str) -> dict[str, Any]:
    return {
        "success": True,
        "job": job,
        "status": "ok",
        "method": "POST",
        "description": description,
    }


@router.post("/messages/process", dependencies=[Depends(require_cron_secret)])
def process_messages(services: EngineServices = Depends(get_services)) -> dict[str, Any]:
    return _run_job("process_scheduled_messages", services.dispatcher.process_scheduled_messages)


@router.get("/messages/process")
def process_messages_info() -> dict[str, Any]:
    return _descriptor("process_scheduled_messages", "Sends outbound messages that are due")


@router.post("/messages/retry", dependencies=[Depends(require_cron_secret)])
def retry_messages(services: EngineServices = Depends(get_services)) -> dict[str, Any]:
    return _run_job("retry_failed_messages", services.dispatcher.retry_failed_messages)


@router.get("/messages/retry")
def retry_messages_info() -> dict[str, Any]:
    return _descriptor("retry_failed_messages", "Retries failed messages whose backoff has elapsed")


@router.post("/reminders/process", dependencies=[Depends(require_cron_secret)])
def process_reminders(services: EngineServices = Depends(get_services)) -> dict[str, Any]:
    return _run_job("process_due_reminders", services.reminder_processor.process_due_reminders)


@router.get("/reminders/process")
def process_reminders_info() -> dict[str, Any]:
    return _descriptor("process_due_reminders", "Sends appointment reminders that are due")


@router.post("/reminders/retry", dependencies=[Depends(require_cron_secret)])
def retry_reminders(services: EngineServices = Depends(get_services)) -> dict[str, Any]:
    return _run_job("retry_failed_reminders", services.reminder_processor.retry_failed_reminders)


@router.get("/reminders/retry")
def retry_reminders_info() -> dict[str, Any]:
    return _descriptor("retry_failed_reminders", "Retries reminders whose backoff has elapsed")
