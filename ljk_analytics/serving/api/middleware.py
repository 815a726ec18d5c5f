"""
API Middleware

- Request context: a request id bound into structlog's context variables,
  so every record logged while serving the request (dispatch, sub-updates,
  retries) carries it; per-route request metrics
- Security headers
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
import structlog

logger = structlog.get_logger(__name__)

HTTP_REQUESTS = Counter(
    "ljk_http_requests_total",
    "HTTP requests by route and status",
    ["method", "route", "status"],
)

HTTP_REQUEST_DURATION = Histogram(
    "ljk_http_request_seconds",
    "HTTP request latency by route",
    ["method", "route"],
)

# Probes and scrapes are counted but not logged
QUIET_PATHS = frozenset({"/metrics", "/api/v1/health/live", "/api/v1/health/ready"})


def route_template(request: Request) -> str:
    """Path template of the matched route, keeping metric labels bounded"""
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Bind a request id to the logging context and record timing"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        quiet = request.url.path in QUIET_PATHS

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            HTTP_REQUESTS.labels(method=request.method, route=route_template(request), status="500").inc()
            logger.exception("Request failed")
            raise
        finally:
            duration = time.perf_counter() - start_time
            HTTP_REQUEST_DURATION.labels(method=request.method, route=route_template(request)).observe(duration)

        HTTP_REQUESTS.labels(
            method=request.method,
            route=route_template(request),
            status=str(response.status_code),
        ).inc()

        if not quiet:
            logger.info(
                "Request completed",
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2),
                client=request.client.host if request.client else None,
            )
        structlog.contextvars.clear_contextvars()

        response.headers["X-Response-Time"] = f"{duration * 1000:.2f}ms"
        response.headers["X-Request-ID"] = request_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Security headers for a JSON API; the interactive docs keep their CDN assets"""

    HEADERS = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
        "Referrer-Policy": "no-referrer",
    }
    DOCS_PATHS = ("/docs", "/redoc")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers.update(self.HEADERS)
        if not request.url.path.startswith(self.DOCS_PATHS):
            response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        if request.method == "POST":
            # Event acknowledgements and ad hoc reports are never reused
            response.headers["Cache-Control"] = "no-store"

        return response
