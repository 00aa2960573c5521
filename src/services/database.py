"""Database engine and session management."""

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from config import settings

logger = logging.getLogger(__name__)

_engine: Engine | None = None
_session_factory: sessionmaker | None = None


def get_db_url() -> str:
    """Return the configured database URL."""
    return settings.database.url


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = create_engine(
            get_db_url(),
            pool_pre_ping=settings.database.pool_pre_ping,
        )
    return _engine


def get_session_factory() -> sessionmaker:
    """Return the process-wide session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(bind=get_engine())
    return _session_factory


def run_migrations() -> None:
    """Upgrade the database schema to the latest revision."""
    alembic_ini = Path(__file__).resolve().parents[2] / "alembic.ini"
    alembic_cfg = Config(str(alembic_ini))
    alembic_cfg.set_main_option("sqlalchemy.url", get_db_url())
    command.upgrade(alembic_cfg, "head")
    logger.info("Database migrations applied")
