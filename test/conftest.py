"""Pytest configuration for the clinicflow test suite."""

import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator


def _ensure_test_env() -> None:
    """Seed required environment variables for tests."""
    os.environ.setdefault("CLINICFLOW_ENV", "test")
    os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
    os.environ.setdefault("LOG_JSON", "false")


_ensure_test_env()

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
TEST_DIR = ROOT / "test"
sys.path.insert(0, str(SRC))
sys.path.insert(0, str(TEST_DIR))

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from models import Base  # noqa: E402
from time_utils import FixedClock  # noqa: E402

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def sqlite_session_factory(tmp_path: Path) -> Generator[sessionmaker, None, None]:
    """Provide a sqlite session factory backed by a temp file."""
    db_path = tmp_path / "clinicflow.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture()
def clock() -> FixedClock:
    """Clock pinned to Monday 2026-03-02 09:00 UTC."""
    return FixedClock(NOW)
