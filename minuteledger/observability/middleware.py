"""
HTTP middleware for metrics and request size limits.

Components:
- PrometheusMiddleware: request latency, count and in-flight gauge
- RequestSizeLimitMiddleware: rejects oversized bodies before they are read
"""

import logging
import re
import time
from collections.abc import Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from minuteledger.observability.metrics import http_requests_active, track_request

logger = logging.getLogger(__name__)

# Dynamic path segments collapsed to keep metric cardinality bounded
_ENDPOINT_PATTERNS = [
    (re.compile(r"^/api/v1/uploads/[^/]+"), "/api/v1/uploads/{upload_id}"),
    (re.compile(r"^/api/v1/usage/[^/]+"), "/api/v1/usage/{user_id}"),
]


def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metric labels.

    Examples:
        /api/v1/uploads/9f2c/complete -> /api/v1/uploads/{upload_id}/complete
        /api/v1/usage/user_42/check -> /api/v1/usage/{user_id}/check
    """
    for pattern, replacement in _ENDPOINT_PATTERNS:
        path = pattern.sub(replacement, path, count=1)
    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Tracks latency, count and in-flight requests per endpoint."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        endpoint = normalize_endpoint(request.url.path)
        method = request.method

        http_requests_active.labels(method=method, endpoint=endpoint).inc()
        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            http_requests_active.labels(method=method, endpoint=endpoint).dec()
            track_request(
                method=method,
                endpoint=endpoint,
                status_code=status_code,
                duration_seconds=time.perf_counter() - start_time,
            )

        return response


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """
    Rejects requests whose declared body exceeds max_body_size (413).

    Webhooks and upload metadata are small JSON documents; media bytes never
    pass through this service.
    """

    def __init__(self, app, max_body_size: int = 1024 * 1024):
        super().__init__(app)
        self.max_body_size = max_body_size

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        content_length = request.headers.get("content-length")
        if content_length is None:
            return await call_next(request)

        try:
            declared = int(content_length)
        except ValueError:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"detail": "Invalid Content-Length header"},
            )

        if declared > self.max_body_size:
            logger.warning(
                "Request body too large",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "content_length": declared,
                    "max_allowed": self.max_body_size,
                },
            )
            return JSONResponse(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                content={
                    "detail": "Request body too large",
                    "max_size_bytes": self.max_body_size,
                    "received_size_bytes": declared,
                },
            )

        return await call_next(request)
