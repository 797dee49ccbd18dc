from __future__ import annotations

"""Prometheus metrics for the BranchChat FastAPI backend.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters for admission decisions and streaming writes.
"""

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "branchchat_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

ADMISSION_DENIED = Counter(
    "branchchat_admission_denied_total",
    "Sends rejected by admission control",
    labelnames=("limit_name",),
)

STREAM_WRITES = Counter(
    "branchchat_stream_writes_total",
    "Message rows written by the streaming coordinator",
    labelnames=("kind",),
)

STALE_STREAMS_SWEPT = Counter(
    "branchchat_stale_streams_swept_total",
    "Streaming messages force-terminated by the stale-stream sweep",
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /conversations/{id}) to a coarse label."""
    if not path:
        return "/"
    segs = path.split("?")[0].split("/")
    if len(segs) > 1:
        return "/" + segs[1]
    return path


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        REQUEST_LATENCY.labels(
            method=request.method,
            path=sanitize_path(request.url.path),
            status=str(response.status_code),
        ).observe(elapsed)
        return response

    return middleware
