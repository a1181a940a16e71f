"""
FastAPI middleware: HTTP latency / count / status code metrics plus a trace span per request.
"""

import time
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from src.observability.metrics import metrics
from src.observability.tracing import tracer

_ID_PARENTS = ("research", "conversations")


def _normalize_path(path: str) -> str:
    """
    Replace dynamic ids with a placeholder to keep label cardinality bounded.
    e.g. /research/3f2a.../ -> /research/{id}
    """
    parts = path.strip("/").split("/")
    normalized = []
    skip_next = False
    for part in parts:
        if skip_next:
            normalized.append("{id}")
            skip_next = False
            continue
        normalized.append(part)
        if part in _ID_PARENTS:
            skip_next = True
    return "/" + "/".join(normalized)


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Records latency and count for each HTTP request inside a trace span."""

    async def dispatch(self, request: Request, call_next):
        method = request.method
        path = _normalize_path(request.url.path)

        # skip self-referencing noise
        if request.url.path in ("/metrics", "/health"):
            return await call_next(request)

        with tracer.start_as_current_span(
            f"{method} {path}",
            attributes={"http.method": method, "http.url": str(request.url)},
        ) as span:
            start = time.perf_counter()
            response: Response = await call_next(request)
            elapsed = time.perf_counter() - start

            span.set_attribute("http.status_code", response.status_code)

            metrics.http_requests_total.labels(
                method=method, endpoint=path, status_code=str(response.status_code)
            ).inc()
            metrics.http_request_duration_seconds.labels(
                method=method, endpoint=path
            ).observe(elapsed)

            return response
