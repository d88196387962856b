"""
Request logging middleware.

StructuredLoggingMiddleware opens a RequestContext per request (request_id,
trace_id) and writes one completion line whose level follows the status code.
SlowRequestLogger flags requests over the configured latency thresholds.
"""

import time
import uuid
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from minuteledger.observability.logging import RequestContext, get_logger
from minuteledger.observability.middleware import normalize_endpoint

logger = get_logger(__name__)

# Probe and scrape endpoints are not request-logged
EXCLUDED_PATHS = frozenset(
    {
        "/health/liveness",
        "/health/readiness",
        "/metrics",
        "/docs",
        "/redoc",
        "/openapi.json",
    }
)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Binds request context and logs each request once it completes.

    Headers:
    - X-Request-ID / X-Trace-ID are honored when the caller sends them,
      generated otherwise, and echoed on the response

    Levels:
    - 5xx: error
    - 4xx: warning (signature rejections, quota refusals, validation)
    - otherwise: info
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or _new_id("req")
        trace_id = request.headers.get("x-trace-id") or _new_id("trace")
        path = request.url.path

        with RequestContext(request_id=request_id, trace_id=trace_id):
            started = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception as exc:
                logger.error(
                    "Request raised",
                    method=request.method,
                    endpoint=normalize_endpoint(path),
                    latency_ms=round((time.perf_counter() - started) * 1000, 2),
                    exception_type=type(exc).__name__,
                    exc_info=True,
                )
                raise

            if path not in EXCLUDED_PATHS:
                if response.status_code >= 500:
                    log = logger.error
                elif response.status_code >= 400:
                    log = logger.warning
                else:
                    log = logger.info
                log(
                    "Request handled",
                    method=request.method,
                    endpoint=normalize_endpoint(path),
                    status_code=response.status_code,
                    latency_ms=round((time.perf_counter() - started) * 1000, 2),
                    client_host=request.client.host if request.client else None,
                )

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Trace-ID"] = trace_id
            return response


class SlowRequestLogger(BaseHTTPMiddleware):
    """
    Flags requests slower than the warning or error threshold.

    Upload completion runs ffprobe inline, so completion routes get
    probe_allowance_ms added to both thresholds.
    """

    def __init__(
        self,
        app: ASGIApp,
        warning_threshold_ms: float = 250.0,
        error_threshold_ms: float = 1000.0,
        probe_allowance_ms: float = 0.0,
    ):
        super().__init__(app)
        self.warning_threshold_ms = warning_threshold_ms
        self.error_threshold_ms = error_threshold_ms
        self.probe_allowance_ms = probe_allowance_ms

    def thresholds_for(self, path: str) -> tuple[float, float]:
        """(warning_ms, error_ms) for a request path."""
        allowance = self.probe_allowance_ms if path.endswith("/complete") else 0.0
        return self.warning_threshold_ms + allowance, self.error_threshold_ms + allowance

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        latency_ms = (time.perf_counter() - started) * 1000

        warning_ms, error_ms = self.thresholds_for(request.url.path)
        if latency_ms > warning_ms:
            over_error = latency_ms > error_ms
            log = logger.error if over_error else logger.warning
            log(
                "Slow request",
                method=request.method,
                endpoint=normalize_endpoint(request.url.path),
                status_code=response.status_code,
                latency_ms=round(latency_ms, 2),
                threshold_ms=error_ms if over_error else warning_ms,
            )

        return response
