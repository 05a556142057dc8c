"""HTTP middleware: correlation ids, access logging and request metrics."""

import logging
import re
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.core.logging import (
    CORRELATION_ID_HEADER,
    bind_correlation_id,
    current_correlation_id,
    reset_correlation_id,
)
from app.core.metrics import observe_http_request

access_logger = logging.getLogger("app.access")

# Stripe object ids (sub_..., sub_sched_..., pm_...) before numeric user ids
_PATH_PARAMS = (
    (re.compile(r"/(?:[a-z]+_)+[A-Za-z0-9]{8,}(?=/|$)"), "/{provider_id}"),
    (re.compile(r"/\d+(?=/|$)"), "/{id}"),
)


def route_template(path: str) -> str:
    """Collapse ids in a request path so metric labels stay bounded."""
    for pattern, placeholder in _PATH_PARAMS:
        path = pattern.sub(placeholder, path)
    return path


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Bind the caller's correlation id, or a fresh one, for the request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        token = bind_correlation_id(request.headers.get(CORRELATION_ID_HEADER))
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = current_correlation_id()
            return response
        finally:
            reset_correlation_id(token)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One access log line per request; 5xx responses log as warnings."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.perf_counter()
        fields = {"method": request.method, "path": request.url.path}
        try:
            response = await call_next(request)
        except Exception:
            access_logger.exception(
                "Request failed", extra={**fields, "duration_ms": _elapsed_ms(started)}
            )
            raise

        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        access_logger.log(
            level,
            "Request completed",
            extra={**fields, "status_code": response.status_code, "duration_ms": _elapsed_ms(started)},
        )
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count requests and observe latency per route template."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            observe_http_request(
                request.method,
                route_template(request.url.path),
                status_code,
                time.perf_counter() - started,
            )
