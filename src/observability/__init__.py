"""Structured logging helpers for the clinicflow engine."""

from observability.log_config import configure_logging
from observability.log_context import bind_context, get_context, log_context

__all__ = [
    "bind_context",
    "configure_logging",
    "get_context",
    "log_context",
]
