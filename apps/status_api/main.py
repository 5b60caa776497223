"""
Status API (FastAPI).

Функции:
- /health, /stats
- /calls, /polls, /live-locations, /browser-tabs
- /media-stats, /media-downloads, /media-tasks/{task_id}
- /webhook-stats, /dead-letter-queue
- /metrics

Архитектурно:
- только чтение; компоненты relay-ядра передаются в create_app
- ошибки отдаются конвертом {success: false, error, timestamp}
"""

from __future__ import annotations

import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from apps.status_api.deps import StatusComponents
from apps.status_api.routers.status import router as status_router
from event_relay.common.config import Settings, get_settings
from event_relay.common.logging import get_project_logger
from event_relay.common.metrics import setup_metrics_endpoint
from event_relay.common.time import utc_now_iso

log = get_project_logger()


def _parse_origins(raw: str) -> list[str]:
    origins = [o.strip() for o in (raw or "").split(",") if o.strip()]
    return origins or ["*"]


def _error_body(message: str) -> dict:
    return {"success": False, "error": message, "timestamp": utc_now_iso()}


def create_app(
    components: StatusComponents | None = None, settings: Settings | None = None
) -> FastAPI:
    s = settings or get_settings()
    app = FastAPI(title="Event Relay Status API", version="0.1.0")
    app.state.components = components or StatusComponents()
    app.state.started_monotonic = time.monotonic()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_parse_origins(s.cors_allowed_origins),
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type"],
        allow_credentials=False,
    )

    setup_metrics_endpoint(app)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        if exc.status_code == 404 and message == "Not Found":
            message = "Endpoint not found"
        if exc.status_code == 405:
            message = "Method not allowed"
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(message),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content=_error_body("Invalid query parameters"))

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "status_api_request_failed",
            extra={"payload": {"path": request.url.path, "error": str(exc)[:200]}},
        )
        return JSONResponse(status_code=500, content=_error_body("Internal server error"))

    app.include_router(status_router)
    return app
