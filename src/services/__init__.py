"""Database access and engine service wiring."""

from services.database import get_engine, get_session_factory, run_migrations

__all__ = [
    "get_engine",
    "get_session_factory",
    "run_migrations",
]
