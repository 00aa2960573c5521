"""HTTP surface: batch triggers and state-transition endpoints."""

from api.server import create_app, run_app

__all__ = ["create_app", "run_app"]
