"""Error taxonomy shared by services, batch jobs and the HTTP layer."""

from errors.exceptions import (
    AuthorizationError,
    CampaignActivationError,
    DeliveryError,
    EngineError,
    ErrorCategory,
    ErrorDetail,
    InvalidTransitionError,
    NotFoundError,
    PermanentFailure,
    ValidationError,
)

__all__ = [
    "AuthorizationError",
    "CampaignActivationError",
    "DeliveryError",
    "EngineError",
    "ErrorCategory",
    "ErrorDetail",
    "InvalidTransitionError",
    "NotFoundError",
    "PermanentFailure",
    "ValidationError",
]
