"""FastAPI app factory and error rendering."""

from __future__ import annotations

import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from api.cron import router as cron_router
from api.transitions import router as transitions_router
from errors import EngineError, ValidationError
from services.engine import EngineServices

logger = logging.getLogger(__name__)


def error_response(exc: EngineError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.http_status,
        content={"success": False, "error": exc.to_detail().to_dict()},
    )


async def _engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("Request failed: %s %s: %s", request.method, request.url.path, exc.message)
    return error_response(exc)


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    fields: dict[str, str] = {}
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part != "body"]
        fields[".".join(location) or "body"] = str(error.get("msg", "Invalid value"))
    return error_response(ValidationError("Invalid request payload", details={"fields": fields}))


def create_app(
    services: EngineServices,
    *,
    title: str = "clinicflow",
    version: str = "0.1.0",
) -> FastAPI:
    """Create the API app around an already-built set of engine services."""
    app = FastAPI(title=title, version=version)
    app.state.services = services
    app.add_exception_handler(EngineError, _engine_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.include_router(cron_router)
    app.include_router(transitions_router)
    return app


def run_app(
    app: FastAPI,
    *,
    host: str = "127.0.0.1",
    port: int = 8000,
    log_level: str = "info",
) -> None:
    """Run one FastAPI app through uvicorn."""
    uvicorn.run(app, host=host, port=port, log_level=log_level)

