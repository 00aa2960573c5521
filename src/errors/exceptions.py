"""Exception types for the engine error taxonomy.

Every exception carries a stable ``code`` and an HTTP-style status so the API
layer can render it without inspecting the type. ``retryable`` is only ever
true for delivery failures.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from errors import codes


class ErrorCategory(str, Enum):
    """High-level error categories."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    POLICY = "policy"
    DEPENDENCY = "dependency"
    INTERNAL = "internal"


@dataclass(frozen=True)
class ErrorDetail:
    """Structured error object rendered in API responses."""

    code: str
    message: str
    category: ErrorCategory
    details: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class EngineError(Exception):
    """Base class for all expected engine errors."""

    code = codes.INTERNAL_ERROR
    category = ErrorCategory.INTERNAL
    http_status = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = dict(details or {})

    def to_detail(self) -> ErrorDetail:
        """Return the structured representation of this error."""
        return ErrorDetail(
            code=self.code,
            message=self.message,
            category=self.category,
            details=self.details,
        )


class ValidationError(EngineError):
    """Malformed or semantically invalid input."""

    code = codes.VALIDATION_ERROR
    category = ErrorCategory.VALIDATION
    http_status = 400

    @classmethod
    def for_field(cls, field_name: str, message: str) -> "ValidationError":
        """Build a validation error scoped to one input field."""
        return cls(message, details={"fields": {field_name: message}})


class NotFoundError(EngineError):
    """Entity absent or outside the caller's tenant."""

    code = codes.NOT_FOUND
    category = ErrorCategory.NOT_FOUND
    http_status = 404

    def __init__(self, entity_type: str, entity_id: object) -> None:
        super().__init__(
            f"{entity_type} not found",
            details={"entity_type": entity_type, "entity_id": str(entity_id)},
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class InvalidTransitionError(EngineError):
    """The current status does not allow the requested transition."""

    code = codes.INVALID_STATUS_TRANSITION
    category = ErrorCategory.CONFLICT
    http_status = 400

    def __init__(
        self,
        message: str,
        *,
        entity_type: str,
        current_status: str,
        requested_status: str,
    ) -> None:
        super().__init__(
            message,
            details={
                "entity_type": entity_type,
                "current_status": current_status,
                "requested_status": requested_status,
            },
        )
        self.entity_type = entity_type
        self.current_status = current_status
        self.requested_status = requested_status


class CampaignActivationError(EngineError):
    """A campaign failed one of its activation preconditions."""

    category = ErrorCategory.VALIDATION
    http_status = 400

    def __init__(self, code: str, message: str, *, current_status: str) -> None:
        super().__init__(message, code=code, details={"current_status": current_status})
        self.current_status = current_status


class AuthorizationError(EngineError):
    """Missing or incorrect shared secret on a trigger endpoint."""

    code = codes.UNAUTHORIZED
    category = ErrorCategory.POLICY
    http_status = 401


class DeliveryError(EngineError):
    """A channel sender failed to deliver a message."""

    code = codes.DELIVERY_FAILED
    category = ErrorCategory.DEPENDENCY
    http_status = 502

    def __init__(self, message: str, *, code: str | None = None, retryable: bool = True) -> None:
        super().__init__(message, code=code)
        self.retryable = retryable


class PermanentFailure(DeliveryError):
    """Delivery retries are exhausted; manual intervention is required."""

    code = codes.PERMANENTLY_FAILED

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=False)
