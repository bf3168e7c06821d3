import socket
from contextlib import closing

import httpx
import pytest

from store_ui.core.config import Settings, load_settings
from store_ui.models.schemas import InstanceInfo
from tests.registry_stub import FlakyTransport, Registry, create_registry_app

REGISTRY_URL = "http://reg:8761"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def free_port() -> int:
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def make_settings(port: int = 8080, **overrides: str) -> Settings:
    """Settings for a fast-ticking local instance registered with the stub registry."""
    values = {
        "service.name": "store-ui",
        "server.address": "127.0.0.1",
        "server.port": str(port),
        "discovery.url": REGISTRY_URL,
        "discovery.kind": "simple",
        "heartbeat.interval": "50ms",
        "registry.ttl": "5s",
        "registry.retry.max-attempts": "4",
        "registry.retry.initial-backoff": "10ms",
        "registry.retry.max-backoff": "40ms",
        "shutdown.grace-period": "2s",
    }
    values.update(overrides)
    return load_settings([f"--{k}={v}" for k, v in values.items()], environ={})


@pytest.fixture
def registry() -> Registry:
    return Registry(ttl_s=5.0)


@pytest.fixture
def registry_transport(registry) -> FlakyTransport:
    return FlakyTransport(httpx.ASGITransport(app=create_registry_app(registry)))


@pytest.fixture
async def registry_http(registry_transport):
    async with httpx.AsyncClient(transport=registry_transport) as client:
        yield client


@pytest.fixture
def instance() -> InstanceInfo:
    return InstanceInfo(
        service_name="store-ui",
        instance_id="host-a:store-ui:8080",
        host="host-a",
        port=8080,
        health_check_url="http://host-a:8080/actuator/health",
    )
