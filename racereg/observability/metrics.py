from __future__ import annotations
import time
from fastapi import Response, Request
from prometheus_client import (
    Counter, Histogram, CollectorRegistry,
    CONTENT_TYPE_LATEST, generate_latest,
)
from ..config import get_settings

S = get_settings()

REGISTRY = CollectorRegistry(auto_describe=True)

# ---------- Metric definitions ----------
HTTP_REQS = Counter("http_requests_total", "HTTP requests", ["method", "path", "status"], registry=REGISTRY)
HTTP_LATENCY = Histogram("http_request_duration_seconds", "HTTP request latency", ["method", "path"], registry=REGISTRY)

HOLDS_STARTED     = Counter("reg_holds_started_total", "Registration holds started", registry=REGISTRY)
CAPACITY_REJECTED = Counter("reg_capacity_rejected_total", "Admissions refused for lack of capacity", ["scope"], registry=REGISTRY)
REG_FINALIZED     = Counter("reg_finalized_total", "Registrations finalized", ["status"], registry=REGISTRY)
BATCHES_PROCESSED = Counter("group_batches_processed_total", "Group batches admitted", registry=REGISTRY)
BATCHES_FAILED    = Counter("group_batches_failed_total", "Group batches marked failed at process time", ["code"], registry=REGISTRY)
INVITES_CLAIMED   = Counter("invites_claimed_total", "Registration invites claimed", registry=REGISTRY)
HOLDS_SWEPT       = Counter("reg_holds_swept_total", "Lapsed holds rewritten by the sweeper", registry=REGISTRY)


# ---------- /metrics endpoint factory ----------
def metrics_app():
    async def _metrics(_: Request):
        if not S.METRICS_ENABLED:
            return Response(status_code=404)
        data = generate_latest(REGISTRY)
        return Response(content=data, media_type=CONTENT_TYPE_LATEST)
    return _metrics


# ---------- HTTP middleware for latency/counters ----------
class MetricsHTTPMiddleware:
    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)
        method = scope["method"]
        # route template keeps label cardinality bounded (ids stay out of labels)
        t0 = time.perf_counter()

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                route = scope.get("route")
                path = getattr(route, "path", scope["path"])
                HTTP_REQS.labels(method=method, path=path, status=message["status"]).inc()
                HTTP_LATENCY.labels(method=method, path=path).observe(time.perf_counter() - t0)
            await send(message)

        await self.app(scope, receive, send_wrapper)
