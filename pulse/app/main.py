from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from structlog.contextvars import bind_contextvars, reset_contextvars

from pulse.app.api.routes import router
from pulse.app.dependencies import (
    get_poll_chain,
    get_scheduler_service,
    get_settings,
    get_telemetry,
)
from pulse.app.logging_config import configure_application_logging
from pulse.app.services.scheduler_service import SchedulerService

LOGGER = logging.getLogger("pulse.app")


def health_check() -> dict[str, str]:
    return {"status": "ok"}


def _request_id_from(request: Request) -> str:
    incoming = request.headers.get("X-Request-ID", "").strip()
    return incoming or uuid4().hex


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    scheduler: SchedulerService | None = None

    if settings.scheduler_enabled:
        if settings.scheduler_autostart and get_poll_chain().ensure_armed():
            LOGGER.info("poll chain armed on startup")
        scheduler = get_scheduler_service()
        scheduler.start()

    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()


def create_app() -> FastAPI:
    app = FastAPI(title="Pulse API", version="0.1.0", lifespan=app_lifespan)

    async def request_context_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = _request_id_from(request)
        context_tokens = bind_contextvars(
            http_request_id=request_id,
            http_method=request.method,
            http_path=request.url.path,
        )
        try:
            with get_telemetry().span(
                "http.request",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
            ) as finish:
                response = await call_next(request)
                response.headers["X-Request-ID"] = request_id
                finish["status_code"] = response.status_code
            return response
        finally:
            reset_contextvars(**context_tokens)

    app.middleware("http")(request_context_middleware)
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )
    return app


app = create_app()
