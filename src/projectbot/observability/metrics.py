from __future__ import annotations

"""Prometheus metrics for the project chatbot backend.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters for reply deliveries and chatbot mutation attempts.
"""

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

REQUEST_LATENCY = Histogram(
    "projectbot_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

DELIVERIES = Counter(
    "projectbot_deliveries_total",
    "Chat reply deliveries by mode and terminal state",
    labelnames=("mode", "state"),
)

MUTATION_ATTEMPTS = Counter(
    "projectbot_mutation_attempts_total",
    "Resilient mutation attempts by operation, path taken and outcome",
    labelnames=("operation", "path", "outcome"),
)


def sanitize_path(path: str) -> str:
    """Collapse ids so /api/chatbots/12/chat and /chatbots/7/chat share a label."""

    if not path:
        return "/"
    segs = [seg for seg in path.split("?")[0].split("/") if seg]
    if segs and segs[0] == "api":
        segs = segs[1:]
    if segs and segs[0] == "public":
        # public/chatbot/<token>
        segs = segs[:2] + ([":token"] if len(segs) > 2 else [])
    segs = [":id" if seg.isdigit() else seg for seg in segs]
    return "/" + "/".join(segs)


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        try:
            REQUEST_LATENCY.labels(
                method=request.method,
                path=sanitize_path(request.url.path),
                status=str(response.status_code),
            ).observe(elapsed)
        except ValueError:
            # Label mismatch must not fail the request.
            pass
        return response

    return middleware
