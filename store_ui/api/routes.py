"""HTTP routes for the store-ui service.

The liveness route is mounted by ``store_ui.main.create_app`` at the configured
health path; readiness and info live here.
"""
from __future__ import annotations

from logging import getLogger
from typing import Optional

from fastapi import APIRouter, HTTPException, Request

from store_ui.models.schemas import Health, Info
from store_ui.services.lifecycle import Lifecycle
from store_ui.services.registration import Registrar

log = getLogger("store-ui.api")
router = APIRouter()


def _lifecycle(request: Request) -> Lifecycle:
    return request.app.state.lifecycle


def _registrar(request: Request) -> Optional[Registrar]:
    return getattr(request.app.state, "registrar", None)


async def health() -> Health:
    """Liveness probe: answers while the process is up, whatever the lifecycle state."""
    return Health()


@router.get("/readyz")
async def readyz(request: Request):
    """Readiness probe: 200 only while registered and serving."""
    lifecycle = _lifecycle(request)
    if not lifecycle.ready:
        raise HTTPException(status_code=503, detail=lifecycle.state.value)
    return {"status": "ok"}


@router.get("/actuator/info", response_model=Info)
async def info(request: Request):
    """Identity, lifecycle state and heartbeat freshness of this instance."""
    settings = request.app.state.settings
    registrar = _registrar(request)
    snap = registrar.snapshot() if registrar else None
    return Info(
        service_name=settings.registration.service_name,
        instance_id=settings.registration.instance_id,
        state=_lifecycle(request).state.value,
        registered=bool(snap and snap.registered),
        last_heartbeat_age_s=snap.heartbeat_age() if snap else None,
        consecutive_failures=snap.consecutive_failures if snap else 0,
    )
