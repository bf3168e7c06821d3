"""HTTP clients for the discovery registries this service can register with.

Every variant speaks its registry's envelope but shares the same operations
(register, heartbeat, deregister) and the same error mapping:

  - transport or protocol errors, 5xx  -> RegistryUnreachable (transient)
  - 3xx                                 -> RegistryRejected (redirects are not followed)
  - 404 on heartbeat                    -> HeartbeatLost (instance unknown)
  - 404 on deregister                   -> success (already gone)
  - any other 4xx                       -> RegistryRejected (permanent)
"""

from __future__ import annotations

import abc
import logging
from typing import Any, Optional

import httpx

from store_ui.core.config import Settings
from store_ui.core.errors import HeartbeatLost, RegistryRejected, RegistryUnreachable
from store_ui.metrics.prometheus import REGISTRY_LATENCY, REGISTRY_REQUESTS
from store_ui.models.schemas import InstanceInfo

log = logging.getLogger("store-ui.registry")


class RegistryClient(abc.ABC):
    """Base class for registry variants.

    Holds a shared httpx.AsyncClient for connection pooling. Subclasses only
    describe requests; sending and error mapping live here.
    """

    kind = "abstract"

    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout_s: float = 2.0):
        self._client = client
        self._base = base_url.rstrip("/")
        self._timeout = timeout_s

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._base!r})"

    @abc.abstractmethod
    async def register(self, instance: InstanceInfo) -> None:
        """Create or replace the registry entry for ``instance``."""

    @abc.abstractmethod
    async def heartbeat(self, instance: InstanceInfo) -> None:
        """Refresh the lease of ``instance``."""

    @abc.abstractmethod
    async def deregister(self, instance: InstanceInfo) -> None:
        """Remove ``instance`` from the registry."""

    async def _send(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: Optional[dict] = None,
        missing_ok: bool = False,
    ) -> httpx.Response:
        try:
            with REGISTRY_LATENCY.labels(operation=operation).time():
                resp = await self._client.request(
                    method, url, json=json, params=params, timeout=self._timeout
                )
        except httpx.HTTPError as e:
            REGISTRY_REQUESTS.labels(operation=operation, status="error").inc()
            raise RegistryUnreachable(f"{operation} {method} {url}: {e!r}") from e

        REGISTRY_REQUESTS.labels(operation=operation, status=str(resp.status_code)).inc()
        if resp.status_code < 300:
            return resp
        if resp.status_code < 400:
            location = resp.headers.get("location", "")
            raise RegistryRejected(
                f"{operation} {method} {url}: HTTP {resp.status_code} redirect to {location!r}",
                status_code=resp.status_code,
            )
        if resp.status_code >= 500:
            raise RegistryUnreachable(f"{operation} {method} {url}: HTTP {resp.status_code}")
        if resp.status_code == 404:
            if missing_ok:
                return resp
            if operation == "heartbeat":
                raise HeartbeatLost(f"registry does not know this instance ({url})")
        raise RegistryRejected(
            f"{operation} {method} {url}: HTTP {resp.status_code} {resp.text[:200]}",
            status_code=resp.status_code,
        )


class SimpleRegistryClient(RegistryClient):
    """Client for the fleet's own service-discovery API.

    Sends the plain instance payload
    ``{serviceName, instanceId, host, port, healthCheckUrl}``.
    """

    kind = "simple"

    def _instances_url(self, service_name: str) -> str:
        # Build: {base}/registry/services/{service}/instances
        return f"{self._base}/registry/services/{service_name}/instances"

    async def register(self, instance: InstanceInfo) -> None:
        await self._send("register", "POST", self._instances_url(instance.service_name), json=instance.wire())

    async def heartbeat(self, instance: InstanceInfo) -> None:
        url = f"{self._instances_url(instance.service_name)}/{instance.instance_id}/heartbeat"
        await self._send("heartbeat", "PUT", url)

    async def deregister(self, instance: InstanceInfo) -> None:
        url = f"{self._instances_url(instance.service_name)}/{instance.instance_id}"
        await self._send("deregister", "DELETE", url, missing_ok=True)


class EurekaRegistryClient(RegistryClient):
    """Client for a Netflix Eureka server (REST v2 API)."""

    kind = "eureka"

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        timeout_s: float = 2.0,
        *,
        renewal_interval_s: float = 30.0,
        lease_duration_s: float = 90.0,
    ):
        base = base_url.rstrip("/")
        if not base.endswith("/eureka"):
            base = f"{base}/eureka"
        super().__init__(client, base, timeout_s)
        self._renewal = int(renewal_interval_s)
        self._lease = int(lease_duration_s)

    def _app_url(self, instance: InstanceInfo) -> str:
        return f"{self._base}/apps/{instance.service_name.upper()}"

    def _envelope(self, instance: InstanceInfo) -> dict:
        return {
            "instance": {
                "instanceId": instance.instance_id,
                "hostName": instance.host,
                "app": instance.service_name.upper(),
                "ipAddr": instance.host,
                "vipAddress": instance.service_name,
                "secureVipAddress": instance.service_name,
                "status": "UP",
                "port": {"$": instance.port, "@enabled": "true"},
                "securePort": {"$": 443, "@enabled": "false"},
                "homePageUrl": f"{instance.base_url}/",
                "statusPageUrl": f"{instance.base_url}/actuator/info",
                "healthCheckUrl": instance.health_check_url,
                "dataCenterInfo": {
                    "@class": "com.netflix.appinfo.InstanceInfo$DefaultDataCenterInfo",
                    "name": "MyOwn",
                },
                "leaseInfo": {
                    "renewalIntervalInSecs": max(1, self._renewal),
                    "durationInSecs": max(1, self._lease),
                },
            }
        }

    async def register(self, instance: InstanceInfo) -> None:
        await self._send("register", "POST", self._app_url(instance), json=self._envelope(instance))

    async def heartbeat(self, instance: InstanceInfo) -> None:
        url = f"{self._app_url(instance)}/{instance.instance_id}"
        await self._send("heartbeat", "PUT", url, params={"status": "UP"})

    async def deregister(self, instance: InstanceInfo) -> None:
        url = f"{self._app_url(instance)}/{instance.instance_id}"
        await self._send("deregister", "DELETE", url, missing_ok=True)


class ConsulRegistryClient(RegistryClient):
    """Client for a HashiCorp Consul agent using a TTL check as the lease."""

    kind = "consul"

    def __init__(self, client: httpx.AsyncClient, base_url: str, timeout_s: float = 2.0, *, ttl_s: float = 90.0):
        super().__init__(client, base_url, timeout_s)
        self._ttl = int(ttl_s)

    @staticmethod
    def _check_id(instance: InstanceInfo) -> str:
        return f"service:{instance.instance_id}"

    async def register(self, instance: InstanceInfo) -> None:
        body = {
            "ID": instance.instance_id,
            "Name": instance.service_name,
            "Address": instance.host,
            "Port": instance.port,
            "Meta": {"healthCheckUrl": instance.health_check_url},
            "Check": {
                "CheckID": self._check_id(instance),
                "TTL": f"{max(1, self._ttl)}s",
                "Status": "passing",
                "DeregisterCriticalServiceAfter": f"{max(60, self._ttl * 2)}s",
            },
        }
        await self._send("register", "PUT", f"{self._base}/v1/agent/service/register", json=body)

    async def heartbeat(self, instance: InstanceInfo) -> None:
        url = f"{self._base}/v1/agent/check/pass/{self._check_id(instance)}"
        await self._send("heartbeat", "PUT", url)

    async def deregister(self, instance: InstanceInfo) -> None:
        url = f"{self._base}/v1/agent/service/deregister/{instance.instance_id}"
        await self._send("deregister", "PUT", url, missing_ok=True)


def create_registry_client(settings: Settings, client: httpx.AsyncClient) -> RegistryClient:
    """Construct the registry client selected by ``discovery.kind``."""
    reg = settings.registration
    base = str(reg.discovery_url)
    timeout = settings.request_timeout_s
    if reg.kind == "eureka":
        return EurekaRegistryClient(
            client,
            base,
            timeout,
            renewal_interval_s=reg.heartbeat_interval,
            lease_duration_s=reg.registry_ttl,
        )
    if reg.kind == "consul":
        return ConsulRegistryClient(client, base, timeout, ttl_s=reg.registry_ttl)
    return SimpleRegistryClient(client, base, timeout)
