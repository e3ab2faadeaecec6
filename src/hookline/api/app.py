"""FastAPI application for Hookline."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hookline import __version__
from hookline.config import Settings, load_settings
from hookline.exceptions import (
    AuthenticationError,
    HooklineError,
    NotFoundError,
    TransientStorageError,
    ValidationError,
)
from hookline.logging import configure_logging, get_logger
from hookline.service import WebhookService

from .router import router, set_service

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifespan.

    Initializes the WebhookService on startup and, when configured, runs
    the retry sweeper inside the API process.
    """
    settings: Settings = app.state.settings

    configure_logging(level=settings.log_level, format=settings.log_format)
    logger.info("api_starting", log_level=settings.log_level, env=settings.env)

    service: WebhookService = app.state.service or WebhookService.create(settings)
    await service.initialize()
    set_service(service)

    stop_event = asyncio.Event()
    sweeper: asyncio.Task[None] | None = None
    if settings.embedded_sweeper:
        sweeper = asyncio.create_task(service.run_sweeper(stop_event))

    yield

    stop_event.set()
    if sweeper is not None:
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
    set_service(None)
    await service.close()
    logger.info("api_stopped")


# Checked in order; the first matching class decides the response
_ERROR_RESPONSES: tuple[tuple[type[HooklineError], int, dict[str, str] | None], ...] = (
    (ValidationError, 400, None),
    (AuthenticationError, 401, {"WWW-Authenticate": "Bearer"}),
    (NotFoundError, 404, None),
    (TransientStorageError, 503, {"Retry-After": "5"}),
    (HooklineError, 500, None),
)


def _error_handler(status_code: int, headers: dict[str, str] | None):
    async def handle(request: Request, exc: HooklineError) -> JSONResponse:
        log = logger.error if status_code >= 500 else logger.warning
        log(
            "request_failed",
            status=status_code,
            code=exc.code,
            error=exc.message,
            path=request.url.path,
        )
        return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)

    return handle


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed bodies and parameters like any other ValidationError."""
    first = exc.errors()[0]
    loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    error = ValidationError(".".join(loc) or "request", first.get("msg", "invalid value"))
    logger.warning("request_invalid", field=error.field, error=error.message, path=request.url.path)
    return JSONResponse(status_code=400, content=error.to_dict())


def create_app(
    settings: Settings | None = None,
    service: WebhookService | None = None,
) -> FastAPI:
    """Build the API application.

    ``service`` lets callers (tests, embedding processes) supply a service
    wired to their own transport; the lifespan still initializes and
    closes it. Without either argument settings come from the environment.
    """
    if settings is None:
        settings = service.settings if service is not None else load_settings()

    app = FastAPI(
        title="Hookline",
        description="Signed, retried webhook delivery for merchant events.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.service = service

    if settings.cors_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials=settings.cors_allow_credentials,
            allow_methods=settings.cors_allow_methods,
            allow_headers=settings.cors_allow_headers,
            max_age=settings.cors_max_age,
        )

    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    for exc_type, status_code, headers in _ERROR_RESPONSES:
        app.add_exception_handler(exc_type, _error_handler(status_code, headers))

    app.include_router(router, prefix="/api/v1")
    return app


# Default app instance for uvicorn
app = create_app()
