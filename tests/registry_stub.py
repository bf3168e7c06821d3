"""In-memory discovery registry speaking the simple registry API.

Serves as the registry in tests, reached in-process through httpx.ASGITransport.
"""
from __future__ import annotations

from collections import Counter
from threading import RLock
from time import monotonic
from typing import Callable, Dict, List, Optional

import httpx
from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel


class InstanceIn(BaseModel):
    serviceName: str
    instanceId: str
    host: str
    port: int
    healthCheckUrl: str


class Registry:
    """Thread-safe store of instances keyed by service name, with lease expiry."""

    def __init__(self, ttl_s: float = 90.0):
        self.ttl_s = ttl_s
        self.calls: Counter = Counter()
        self.on_deregister: Optional[Callable[[], None]] = None
        self._instances: Dict[str, Dict[str, dict]] = {}
        self._lock = RLock()

    def upsert(self, inst: InstanceIn) -> dict:
        with self._lock:
            self.calls["register"] += 1
            entry = {**inst.model_dump(), "last_heartbeat": monotonic()}
            self._instances.setdefault(inst.serviceName, {})[inst.instanceId] = entry
            return entry

    def heartbeat(self, service: str, instance_id: str) -> Optional[dict]:
        with self._lock:
            self.calls["heartbeat"] += 1
            entry = self._instances.get(service, {}).get(instance_id)
            if entry is None or monotonic() - entry["last_heartbeat"] > self.ttl_s:
                return None
            entry["last_heartbeat"] = monotonic()
            return entry

    def deregister(self, service: str, instance_id: str) -> bool:
        with self._lock:
            self.calls["deregister"] += 1
            if self.on_deregister is not None:
                self.on_deregister()
            return self._instances.get(service, {}).pop(instance_id, None) is not None

    def instances(self, service: str) -> List[dict]:
        with self._lock:
            now = monotonic()
            return [
                e for e in self._instances.get(service, {}).values()
                if now - e["last_heartbeat"] <= self.ttl_s
            ]

    def clear(self) -> None:
        """Forget every instance, as a restarted registry would."""
        with self._lock:
            self._instances.clear()


def create_registry_app(registry: Registry) -> FastAPI:
    app = FastAPI(title="Registry (test double)")
    router = APIRouter()

    @router.post("/services/{service_name}/instances", status_code=201)
    async def register(service_name: str, inst: InstanceIn):
        if inst.serviceName != service_name:
            raise HTTPException(400, detail="service name mismatch")
        return registry.upsert(inst)

    @router.put("/services/{service_name}/instances/{instance_id}/heartbeat")
    async def heartbeat(service_name: str, instance_id: str):
        entry = registry.heartbeat(service_name, instance_id)
        if entry is None:
            raise HTTPException(404, detail="instance not found")
        return entry

    @router.delete("/services/{service_name}/instances/{instance_id}")
    async def deregister(service_name: str, instance_id: str):
        if not registry.deregister(service_name, instance_id):
            raise HTTPException(404, detail="instance not found")
        return {"ok": True}

    @router.get("/services/{service_name}/instances")
    async def list_instances(service_name: str):
        return registry.instances(service_name)

    app.include_router(router, prefix="/registry")
    return app


class FlakyTransport(httpx.AsyncBaseTransport):
    """Refuses connections while ``down`` is set and for the first ``fail_first`` requests."""

    def __init__(self, inner: httpx.AsyncBaseTransport, fail_first: int = 0):
        self.inner = inner
        self.fail_first = fail_first
        self.down = False
        self.refused = 0

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if self.down or self.fail_first > 0:
            if self.fail_first > 0:
                self.fail_first -= 1
            self.refused += 1
            raise httpx.ConnectError("connection refused", request=request)
        return await self.inner.handle_async_request(request)
