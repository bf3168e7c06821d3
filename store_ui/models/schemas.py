"""Pydantic models used by the store-ui service."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from store_ui.core.config import Settings


def url_host(host: str) -> str:
    """Host as it appears in a URL authority; IPv6 literals get brackets."""
    if ":" in host and not host.startswith("["):
        return f"[{host}]"
    return host


class InstanceInfo(BaseModel):
    """What this instance announces to the discovery registry."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    service_name: str = Field(alias="serviceName")
    instance_id: str = Field(alias="instanceId")
    host: str
    port: int
    health_check_url: str = Field(alias="healthCheckUrl")

    @classmethod
    def from_settings(cls, settings: Settings) -> "InstanceInfo":
        reg = settings.registration
        port = settings.listen.port
        return cls(
            service_name=reg.service_name,
            instance_id=reg.instance_id,
            host=reg.instance_host,
            port=port,
            health_check_url=f"http://{url_host(reg.instance_host)}:{port}{reg.health_path}",
        )

    @property
    def base_url(self) -> str:
        return f"http://{url_host(self.host)}:{self.port}"

    def wire(self) -> dict:
        """JSON payload with camelCase keys."""
        return self.model_dump(by_alias=True)


class Health(BaseModel):
    """Liveness payload."""

    status: str = "UP"


class Info(BaseModel):
    """Runtime identity and registration status of the instance."""

    service_name: str
    instance_id: str
    state: str
    registered: bool
    last_heartbeat_age_s: Optional[float] = None
    consecutive_failures: int = 0
