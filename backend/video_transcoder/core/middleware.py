"""Request middleware: correlation ids, server spans, HTTP metrics and access logs.

Both layers leave the request body untouched; the transcode endpoint reads
it as a stream and keeps listening on ``receive`` for the client's
disconnect while its job runs.
"""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from video_transcoder.core.logging import reset_correlation_id, set_correlation_id
from video_transcoder.core.metrics import (
    HTTP_REQUESTS_TOTAL,
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_IN_PROGRESS,
)
from video_transcoder.core.tracing import create_span

CORRELATION_ID_HEADER = "X-Correlation-ID"

# Metric label for requests that matched no route; raw paths would be unbounded
UNMATCHED_ROUTE = "unmatched"


def route_template(request: Request) -> str:
    """Path template of the route that served ``request``, e.g. ``/api/v1/transcode``.

    Only known once routing has run, i.e. after ``call_next`` returns.
    """
    route = request.scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ROUTE


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds the caller's ``X-Correlation-ID`` (or a fresh one) to the request.

    The id is echoed back on the response.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(CORRELATION_ID_HEADER) or uuid.uuid4().hex
        token = set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response


class RequestObservabilityMiddleware(BaseHTTPMiddleware):
    """Wraps each request in a server span and records its metrics and access log line."""

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.logger = logging.getLogger("video_transcoder.requests")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        start = time.perf_counter()

        HTTP_REQUESTS_IN_PROGRESS.labels(method=method).inc()
        try:
            with create_span(
                f"{method} {request.url.path}",
                attributes={"http.method": method, "http.target": request.url.path},
                kind=trace.SpanKind.SERVER,
            ) as span:
                try:
                    response = await call_next(request)
                except Exception:
                    self._record(request, span, 500, time.perf_counter() - start)
                    raise
                self._record(request, span, response.status_code, time.perf_counter() - start)
        finally:
            HTTP_REQUESTS_IN_PROGRESS.labels(method=method).dec()

        return response

    def _record(self, request: Request, span: trace.Span, status_code: int, duration: float) -> None:
        method = request.method
        route = route_template(request)

        span.update_name(f"{method} {route}")
        span.set_attribute("http.route", route)
        span.set_attribute("http.status_code", status_code)

        HTTP_REQUESTS_TOTAL.labels(method=method, route=route, status_code=str(status_code)).inc()
        HTTP_REQUEST_DURATION_SECONDS.labels(method=method, route=route).observe(duration)

        self.logger.log(
            logging.ERROR if status_code >= 500 else logging.INFO,
            f"{method} {request.url.path} {status_code} {duration * 1000:.1f}ms",
            extra={
                "route": route,
                "status_code": status_code,
                "duration_ms": round(duration * 1000, 2),
                "client_ip": request.client.host if request.client else None,
            },
        )
