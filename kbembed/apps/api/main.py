from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from kbembed.apps.api.cors import apply_cors, is_cors_path
from kbembed.apps.api.errors import (
    http_exception_handler,
    kbembed_error_handler,
    service_error_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from kbembed.apps.api.response import API_VERSION
from kbembed.apps.api.routes.chat import router as chat_router
from kbembed.apps.api.routes.drive_connect import router as drive_connect_router
from kbembed.apps.api.routes.embed_session import router as embed_session_router
from kbembed.apps.api.routes.health import router as health_router
from kbembed.apps.api.routes.ingest_runner import router as ingest_runner_router
from kbembed.apps.api.routes.kb_resync import router as kb_resync_router
from kbembed.core.config import get_settings
from kbembed.core.errors import KbEmbedError, ServiceError
from kbembed.core.logging import configure_logging


logger = logging.getLogger(__name__)


def _trace_id(request: Request, request_id: str) -> str:
    for header in ("x-trace-id", "x-request-id"):
        value = (request.headers.get(header) or "").strip()
        if value:
            return value
    return request_id


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=settings.app_name)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Every response carries a fresh request id and the caller's trace id.
        request_id = str(uuid4())
        trace_id = _trace_id(request, request_id)
        request.state.request_id = request_id
        request.state.trace_id = trace_id
        cors = is_cors_path(request)
        if cors and request.method == "OPTIONS":
            response: Response = Response(status_code=204)
        else:
            start = time.monotonic()
            response = await call_next(request)
            logger.info(
                "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
                request.method,
                request.url.path,
                response.status_code,
                (time.monotonic() - start) * 1000.0,
                request_id,
            )
        response.headers["x-request-id"] = request_id
        response.headers["x-trace-id"] = trace_id
        if cors:
            apply_cors(request, response)
        return response

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(KbEmbedError, kbembed_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(embed_session_router, prefix=f"/{API_VERSION}")
    app.include_router(chat_router, prefix=f"/{API_VERSION}")
    app.include_router(drive_connect_router, prefix=f"/{API_VERSION}")
    app.include_router(kb_resync_router, prefix=f"/{API_VERSION}")
    app.include_router(ingest_runner_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
