"""Prometheus metrics for registration, heartbeats and lifecycle."""
from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

metrics_router = APIRouter()

REGISTRY_REQUESTS = Counter(
    "store_ui_registry_requests_total", "Discovery registry calls", ["operation", "status"]
)
REGISTRY_LATENCY = Histogram(
    "store_ui_registry_latency_seconds", "Discovery registry call latency seconds", ["operation"]
)
HEARTBEAT_FAILURES = Counter("store_ui_heartbeat_failures_total", "Failed heartbeats")
REREGISTRATIONS = Counter("store_ui_reregistrations_total", "Full re-registrations after lost heartbeats")
LIFECYCLE_STATE = Gauge(
    "store_ui_lifecycle_state",
    "0=Initializing 1=Registering 2=Serving 3=Draining 4=Stopped",
)


@metrics_router.get("/metrics")
async def metrics():
    """Prometheus exposition endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
