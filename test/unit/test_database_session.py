"""Unit tests for database engine and migration helpers."""

from __future__ import annotations

from sqlalchemy import create_engine, inspect

from config import settings
from services import database


def _reset(monkeypatch, url: str) -> None:
    monkeypatch.setattr(settings.database, "url", url)
    monkeypatch.setattr(database, "_engine", None)
    monkeypatch.setattr(database, "_session_factory", None)


def test_session_factory_is_cached(monkeypatch, tmp_path) -> None:
    """The engine and session factory are built once per process."""
    url = f"sqlite:///{tmp_path / 'cached.db'}"
    _reset(monkeypatch, url)

    factory = database.get_session_factory()

    assert database.get_session_factory() is factory
    assert database.get_engine() is database.get_engine()
    assert str(database.get_engine().url) == url


def test_run_migrations_creates_schema(monkeypatch, tmp_path) -> None:
    """Migrations upgrade an empty database to the full schema."""
    url = f"sqlite:///{tmp_path / 'migrated.db'}"
    _reset(monkeypatch, url)
    monkeypatch.setenv("DATABASE_URL", url)

    database.run_migrations()

    tables = set(inspect(create_engine(url)).get_table_names())
    assert {
        "clinics",
        "patients",
        "appointments",
        "messages",
        "reminder_templates",
        "reminder_deliveries",
        "campaigns",
        "campaign_steps",
        "audit_events",
    } <= tables
