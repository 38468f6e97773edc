from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"

T = TypeVar("T")


class ErrorDetail(BaseModel):
    code: str
    message: str
    retryable: bool = False
    details: dict[str, Any] = Field(default_factory=dict)


class SuccessEnvelope(BaseModel, Generic[T]):
    api_version: str = API_VERSION
    request_id: str
    data: T


def get_request_id(request: Request) -> str:
    # The middleware assigns ids; handlers that run outside it still get one.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def get_trace_id(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    return trace_id or get_request_id(request)


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"api_version": API_VERSION, "request_id": get_request_id(request), "data": data}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    retryable: bool = False,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, retryable=retryable, details=details or {})
    return {
        "api_version": API_VERSION,
        "request_id": get_request_id(request),
        "error": error.model_dump(),
    }
