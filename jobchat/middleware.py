"""Request tracing middleware.

Only plain HTTP requests pass through here; WebSocket sessions are long lived
and log their own connect/disconnect events from the hub.
"""

import time
import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from jobchat.logging import bind_context, clear_context, get_logger
from jobchat.metrics import record_request

logger = get_logger(__name__)


def _route_template(request: Request) -> str:
    # Label metrics by route template so per-user paths do not explode cardinality.
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class RequestTracingMiddleware(BaseHTTPMiddleware):
    """Tag each request with request/correlation ids, log and time it."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex[:8]
        correlation_id = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex[:8]

        clear_context()
        bind_context(
            request_id=request_id,
            correlation_id=correlation_id,
            method=request.method,
            path=request.url.path,
        )
        request.state.request_id = request_id
        request.state.correlation_id = correlation_id

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            raise
        finally:
            clear_context()

        duration = time.perf_counter() - start
        logger.info(
            "request_completed",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2),
        )
        if not request.url.path.startswith("/metrics"):
            record_request(request.method, _route_template(request), response.status_code, duration)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Correlation-ID"] = correlation_id
        return response
