"""Process entry point for the clinicflow HTTP service."""

from __future__ import annotations

import argparse

from fastapi import FastAPI

from api.server import create_app, run_app
from config import settings
from observability import configure_logging
from services.database import run_migrations
from services.engine import build_engine


def build_app() -> FastAPI:
    """Configure logging and build the app against the configured database."""
    configure_logging(
        level=settings.log_level,
        json_output=settings.log_json,
        service="clinicflow",
        environment=settings.environment,
    )
    return create_app(build_engine())


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the clinicflow HTTP service.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument(
        "--migrate",
        action="store_true",
        help="Upgrade the database schema before serving.",
    )
    args = parser.parse_args()
    if args.migrate:
        run_migrations()
    run_app(build_app(), host=args.host, port=args.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
