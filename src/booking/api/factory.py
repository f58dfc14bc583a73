"""FastAPI application factory with role-based route mounting."""

import os
from typing import Literal

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from booking.observability.correlation import (
    CORRELATION_ID_HEADER,
    reset_correlation_id,
    resolve_correlation_id,
    set_correlation_id,
)
from booking.observability.logging import get_logger
from booking.observability.redaction import safe_log_context

from .routes import (
    admin,
    appointments,
    auth,
    clients,
    conversations,
    health,
    messages,
    settings_whatsapp,
    tasks_outbox,
    webhooks_whatsapp,
)

AppRole = Literal["public", "worker"]

logger = get_logger(__name__)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return f"Invalid {location}" if location else "Invalid request"


def create_app(role: AppRole | None = None) -> FastAPI:
    """Create the app. ``role`` defaults to APP_ROLE, then "public".

    Worker task routes are mounted only for the worker role.
    """
    if role is None:
        role = os.environ.get("APP_ROLE", "public")  # type: ignore[assignment]

    app = FastAPI(
        title="Booking Inbox",
        docs_url=None,
        redoc_url=None,
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = resolve_correlation_id(request.headers.get(CORRELATION_ID_HEADER))
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    # Error envelope: {"ok": false, "error": ...}
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, "error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.info(
            "request validation failed",
            extra={
                "extra_fields": safe_log_context(
                    path=request.url.path, errors=len(exc.errors())
                )
            },
        )
        return JSONResponse(
            status_code=400,
            content={"ok": False, "error": _validation_message(exc)},
        )

    app.include_router(health.public_router)
    app.include_router(webhooks_whatsapp.router)
    app.include_router(auth.router)
    app.include_router(admin.router)
    app.include_router(conversations.router)
    app.include_router(messages.router)
    app.include_router(clients.router)
    app.include_router(appointments.router)
    app.include_router(settings_whatsapp.router)

    if role == "worker":
        app.include_router(health.worker_router)
        app.include_router(tasks_outbox.router)

    return app
