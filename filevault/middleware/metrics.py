"""
FastAPI middleware for automatic Prometheus metrics collection.

Tracks request totals, durations and in-progress requests per endpoint.
Download tokens in the path are collapsed so they never become label values.
"""
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from filevault.metrics import (
    api_requests_total,
    api_request_duration_seconds,
    api_requests_in_progress,
)
from filevault.storage.tokens import TOKEN_PREFIX


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Middleware to automatically track API request metrics.

    The /metrics endpoint itself is not tracked.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        path = request.url.path

        if path == "/metrics":
            return await call_next(request)

        endpoint = normalize_path(path)

        api_requests_in_progress.labels(method=method, endpoint=endpoint).inc()
        start_time = time.time()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response

        finally:
            api_requests_total.labels(
                method=method,
                endpoint=endpoint,
                status=status_code
            ).inc()
            api_request_duration_seconds.labels(
                method=method,
                endpoint=endpoint
            ).observe(time.time() - start_time)
            api_requests_in_progress.labels(method=method, endpoint=endpoint).dec()


def normalize_path(path: str) -> str:
    """
    Replace download tokens with a placeholder to keep label cardinality low.

    Examples:
        /api/v1/files/tokens/dl_abc -> /api/v1/files/tokens/{token}
        /api/v1/files/download/secure/dl_abc -> /api/v1/files/download/secure/{token}
    """
    parts = path.split("/")
    normalized_parts = [
        "{token}" if part.startswith(TOKEN_PREFIX) else part
        for part in parts
    ]
    return "/".join(normalized_parts)
