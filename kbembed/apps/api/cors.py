from __future__ import annotations

from starlette.requests import Request
from starlette.responses import Response

from kbembed.apps.api.response import API_VERSION


# Browser-called endpoints: the embed widget and the owner dashboard.
CORS_PATHS = frozenset(
    {
        f"/{API_VERSION}/embed/session",
        f"/{API_VERSION}/chat",
        f"/{API_VERSION}/kb/resync",
    }
)
_ALLOW_HEADERS = "content-type, authorization, x-request-id, x-trace-id"
_ALLOW_METHODS = "POST, OPTIONS"


def is_cors_path(request: Request) -> bool:
    return request.url.path.rstrip("/") in CORS_PATHS


def apply_cors(request: Request, response: Response) -> Response:
    # Echo the caller origin; origin policy is enforced by the services, not CORS.
    response.headers["access-control-allow-origin"] = request.headers.get("origin") or "*"
    response.headers["vary"] = "origin"
    response.headers["access-control-allow-headers"] = _ALLOW_HEADERS
    response.headers["access-control-allow-methods"] = _ALLOW_METHODS
    response.headers["access-control-expose-headers"] = "x-request-id, x-trace-id, retry-after"
    return response
