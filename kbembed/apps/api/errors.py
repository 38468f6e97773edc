from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from kbembed.apps.api.cors import apply_cors, is_cors_path
from kbembed.apps.api.response import error_response, get_request_id, get_trace_id
from kbembed.core.errors import ConfigurationError, KbEmbedError, ServiceError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "invalid_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    422: "invalid_request",
    429: "rate_limited",
    500: "internal_error",
    503: "service_unavailable",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "internal_error")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed.")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed.", None


def _json(
    request: Request,
    payload: dict[str, Any],
    status_code: int,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    response = JSONResponse(content=payload, status_code=status_code, headers=headers)
    response.headers.setdefault("x-request-id", get_request_id(request))
    # The unhandled-exception handler runs outside the request middleware.
    response.headers.setdefault("x-trace-id", get_trace_id(request))
    if is_cors_path(request):
        apply_cors(request, response)
    return response


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    payload = error_response(
        request=request,
        code=exc.code,
        message=exc.message,
        retryable=exc.retryable,
        details=exc.details,
    )
    return _json(request, payload, exc.status_code, exc.headers or None)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return _json(request, payload, exc.status_code, getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="invalid_request",
        message="Request validation failed.",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return _json(request, payload, 400)


async def kbembed_error_handler(request: Request, exc: KbEmbedError) -> JSONResponse:
    # Typed internal failures that escaped a service boundary.
    if isinstance(exc, ConfigurationError):
        logger.error("configuration_error path=%s error=%s", request.url.path, exc)
        payload = error_response(
            request=request,
            code="missing_configuration",
            message="Required configuration is missing or invalid.",
        )
        return _json(request, payload, 500)
    logger.exception("request_failed path=%s", request.url.path)
    payload = error_response(request=request, code="internal_error", message="Internal server error.", retryable=True)
    return _json(request, payload, 500)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="internal_error", message="Internal server error.")
    return _json(request, payload, 500)
