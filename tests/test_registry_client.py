import json

import httpx
import pytest

from store_ui.core.errors import HeartbeatLost, RegistryRejected, RegistryUnreachable
from store_ui.services.registry_client import (
    ConsulRegistryClient,
    EurekaRegistryClient,
    SimpleRegistryClient,
    create_registry_client,
)
from tests.conftest import make_settings


class Recorder:
    """MockTransport handler that records requests and answers with ``status``."""

    def __init__(self, status: int = 200):
        self.status = status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json={})

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


def _http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.anyio
async def test_simple_client_requests(instance):
    rec = Recorder()
    async with _http(rec) as http:
        client = SimpleRegistryClient(http, "http://reg:8761/")
        await client.register(instance)
        assert rec.last.method == "POST"
        assert rec.last.url.path == "/registry/services/store-ui/instances"
        assert json.loads(rec.last.content) == {
            "serviceName": "store-ui",
            "instanceId": "host-a:store-ui:8080",
            "host": "host-a",
            "port": 8080,
            "healthCheckUrl": "http://host-a:8080/actuator/health",
        }

        await client.heartbeat(instance)
        assert rec.last.method == "PUT"
        assert rec.last.url.path == "/registry/services/store-ui/instances/host-a:store-ui:8080/heartbeat"

        await client.deregister(instance)
        assert rec.last.method == "DELETE"
        assert rec.last.url.path == "/registry/services/store-ui/instances/host-a:store-ui:8080"


@pytest.mark.anyio
async def test_eureka_client_requests(instance):
    rec = Recorder(status=204)
    async with _http(rec) as http:
        client = EurekaRegistryClient(http, "http://reg:8761", renewal_interval_s=30, lease_duration_s=90)
        await client.register(instance)
        assert rec.last.method == "POST"
        assert rec.last.url.path == "/eureka/apps/STORE-UI"
        body = json.loads(rec.last.content)["instance"]
        assert body["app"] == "STORE-UI"
        assert body["instanceId"] == "host-a:store-ui:8080"
        assert body["hostName"] == "host-a"
        assert body["port"] == {"$": 8080, "@enabled": "true"}
        assert body["healthCheckUrl"] == "http://host-a:8080/actuator/health"
        assert body["leaseInfo"] == {"renewalIntervalInSecs": 30, "durationInSecs": 90}

        await client.heartbeat(instance)
        assert rec.last.method == "PUT"
        assert rec.last.url.path == "/eureka/apps/STORE-UI/host-a:store-ui:8080"
        assert rec.last.url.params["status"] == "UP"

        await client.deregister(instance)
        assert rec.last.method == "DELETE"


@pytest.mark.anyio
async def test_eureka_base_url_not_doubled(instance):
    rec = Recorder(status=204)
    async with _http(rec) as http:
        await EurekaRegistryClient(http, "http://reg:8761/eureka/").register(instance)
    assert rec.last.url.path == "/eureka/apps/STORE-UI"


@pytest.mark.anyio
async def test_consul_client_requests(instance):
    rec = Recorder()
    async with _http(rec) as http:
        client = ConsulRegistryClient(http, "http://consul:8500", ttl_s=90)
        await client.register(instance)
        assert rec.last.method == "PUT"
        assert rec.last.url.path == "/v1/agent/service/register"
        body = json.loads(rec.last.content)
        assert body["ID"] == "host-a:store-ui:8080"
        assert body["Name"] == "store-ui"
        assert body["Port"] == 8080
        assert body["Check"]["TTL"] == "90s"
        assert body["Meta"]["healthCheckUrl"] == "http://host-a:8080/actuator/health"

        await client.heartbeat(instance)
        assert rec.last.url.path == "/v1/agent/check/pass/service:host-a:store-ui:8080"

        await client.deregister(instance)
        assert rec.last.url.path == "/v1/agent/service/deregister/host-a:store-ui:8080"


@pytest.mark.anyio
@pytest.mark.parametrize("status", [500, 502, 503])
async def test_server_errors_are_transient(instance, status):
    async with _http(Recorder(status)) as http:
        with pytest.raises(RegistryUnreachable):
            await SimpleRegistryClient(http, "http://reg:8761").register(instance)


@pytest.mark.anyio
async def test_connection_errors_are_transient(instance):
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    async with _http(refuse) as http:
        with pytest.raises(RegistryUnreachable):
            await EurekaRegistryClient(http, "http://reg:8761").register(instance)


@pytest.mark.anyio
async def test_client_errors_are_permanent(instance):
    async with _http(Recorder(400)) as http:
        with pytest.raises(RegistryRejected) as exc:
            await SimpleRegistryClient(http, "http://reg:8761").register(instance)
    assert exc.value.status_code == 400


@pytest.mark.anyio
async def test_heartbeat_for_unknown_instance(instance):
    async with _http(Recorder(404)) as http:
        client = EurekaRegistryClient(http, "http://reg:8761")
        with pytest.raises(HeartbeatLost):
            await client.heartbeat(instance)
        # already gone counts as deregistered
        await client.deregister(instance)


def test_factory_selects_variant():
    http = httpx.AsyncClient()
    assert isinstance(create_registry_client(make_settings(**{"discovery.kind": "eureka"}), http), EurekaRegistryClient)
    assert isinstance(create_registry_client(make_settings(**{"discovery.kind": "consul"}), http), ConsulRegistryClient)
    assert isinstance(create_registry_client(make_settings(**{"discovery.kind": "simple"}), http), SimpleRegistryClient)


@pytest.mark.anyio
async def test_protocol_errors_are_transient(instance):
    def garbled(request):
        raise httpx.DecodingError("bad gzip", request=request)

    async with _http(garbled) as http:
        with pytest.raises(RegistryUnreachable):
            await SimpleRegistryClient(http, "http://reg:8761").heartbeat(instance)


@pytest.mark.anyio
@pytest.mark.parametrize("operation", ["register", "heartbeat", "deregister"])
async def test_redirects_are_rejected(instance, operation):
    def redirect(request):
        return httpx.Response(307, headers={"location": "http://other-reg:8761/"})

    async with _http(redirect) as http:
        client = SimpleRegistryClient(http, "http://reg:8761")
        with pytest.raises(RegistryRejected) as exc:
            await getattr(client, operation)(instance)
    assert exc.value.status_code == 307
    assert "http://other-reg:8761/" in str(exc.value)
