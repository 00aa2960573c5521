"""Request dependencies shared by the route modules."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from errors import ValidationError
from services.engine import EngineServices

CLINIC_HEADER = "x-clinic-id"
ACTOR_HEADER = "x-actor-id"


@dataclass(frozen=True)
class RequestContext:
    """Tenant and actor a state-transition request acts for."""

    clinic_id: int
    actor: str


def get_services(request: Request) -> EngineServices:
    return request.app.state.services


def get_header(request: Request, name: str, *, required: bool = True) -> str | None:
    """Fetch one trimmed header value and optionally enforce presence."""
    value = request.headers.get(name)
    if value is not None:
        value = value.strip()
    if not value:
        if required:
            raise ValidationError.for_field(name, f"Missing required header: {name}")
        return None
    return value


def get_clinic_id(request: Request) -> int:
    raw_clinic = get_header(request, CLINIC_HEADER)
    try:
        return int(raw_clinic)
    except ValueError as exc:
        raise ValidationError.for_field(CLINIC_HEADER, "Clinic id must be an integer") from exc


def get_request_context(request: Request) -> RequestContext:
    """Resolve the clinic and actor from request headers."""
    clinic_id = get_clinic_id(request)
    actor = get_header(request, ACTOR_HEADER)
    return RequestContext(clinic_id=clinic_id, actor=actor)
