"""Configuration for the store-ui service.

Provides strongly-typed settings using Pydantic and a loader that layers, from
lowest to highest precedence: built-in defaults, an optional YAML file,
environment variables and ``--key=value`` process arguments.
"""

from __future__ import annotations

import os
import re
import socket
from pathlib import Path
from typing import Annotated, Any, Literal, Mapping, Optional, Sequence

import yaml
from pydantic import (
    AnyHttpUrl,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from store_ui.core.errors import ConfigMissing

CONFIG_ENV = "STORE_UI_CONFIG"
DEFAULT_CONFIG_FILE = "application.yml"

DEFAULTS: dict[str, Any] = {
    "service.name": None,
    "service.instance-id": None,
    "server.address": "0.0.0.0",
    "server.port": 8080,
    "discovery.url": None,
    "discovery.kind": "eureka",
    "discovery.instance-host": None,
    "health.path": "/actuator/health",
    "heartbeat.interval": "30s",
    "heartbeat.max-failures": 3,
    "registry.ttl": "90s",
    "registry.retry.max-attempts": 5,
    "registry.retry.initial-backoff": "500ms",
    "registry.retry.max-backoff": "8s",
    "registry.request-timeout": "2s",
    "shutdown.grace-period": "30s",
    "logging.level": "INFO",
}
REQUIRED = ("service.name", "discovery.url")
ENV_ALIASES = {"logging.level": "LOG_LEVEL"}

_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}
_WILDCARDS = {"", "0.0.0.0", "::"}
_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def parse_duration(value: Any) -> float:
    """Parse ``30``, ``"30s"``, ``"500ms"``, ``"1m"`` or ``"1h"`` into seconds."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    m = _DURATION.match(str(value))
    if not m:
        raise ValueError(f"invalid duration: {value!r}")
    return float(m.group(1)) * _UNITS[m.group(2)]


Duration = Annotated[float, BeforeValidator(parse_duration), Field(gt=0)]


class ListenConfig(BaseModel):
    """Where the HTTP listener binds."""

    model_config = ConfigDict(frozen=True)

    address: str = "0.0.0.0"
    port: int = Field(8080, ge=1, le=65535)

    @field_validator("address")
    @classmethod
    def _resolvable(cls, v: str) -> str:
        if v in _WILDCARDS:
            return v or "0.0.0.0"
        try:
            socket.getaddrinfo(v, None)
        except socket.gaierror as e:
            raise ValueError(f"bind address {v!r} is not resolvable: {e}") from e
        return v


class RegistrationConfig(BaseModel):
    """Identity and timing of this instance's discovery registration."""

    model_config = ConfigDict(frozen=True)

    service_name: str = Field(min_length=1)
    instance_id: str = Field(min_length=1)
    instance_host: str = Field(min_length=1)
    discovery_url: AnyHttpUrl
    kind: Literal["eureka", "consul", "simple"] = "eureka"
    health_path: str = "/actuator/health"
    heartbeat_interval: Duration = 30.0
    registry_ttl: Duration = 90.0

    @field_validator("health_path")
    @classmethod
    def _absolute_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("health.path must start with '/'")
        return v

    @model_validator(mode="after")
    def _heartbeat_within_ttl(self) -> "RegistrationConfig":
        if self.heartbeat_interval >= self.registry_ttl:
            raise ValueError(
                f"heartbeat.interval ({self.heartbeat_interval}s) must be shorter "
                f"than registry.ttl ({self.registry_ttl}s)"
            )
        return self


class RetryConfig(BaseModel):
    """Backoff budget for registry calls."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(5, ge=1)
    initial_backoff: Duration = 0.5
    max_backoff: Duration = 8.0
    heartbeat_max_failures: int = Field(3, ge=1)

    @model_validator(mode="after")
    def _ordered(self) -> "RetryConfig":
        if self.initial_backoff > self.max_backoff:
            raise ValueError("registry.retry.initial-backoff exceeds registry.retry.max-backoff")
        return self

    def backoff(self, attempt: int) -> float:
        """Delay after the zero-based ``attempt``: exponential, capped."""
        return min(self.initial_backoff * (2**attempt), self.max_backoff)


class Settings(BaseModel):
    """Pydantic settings for the store-ui service."""

    model_config = ConfigDict(frozen=True)

    listen: ListenConfig
    registration: RegistrationConfig
    retry: RetryConfig = RetryConfig()
    request_timeout_s: Duration = 2.0
    shutdown_grace_period_s: Duration = 30.0
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        v = v.upper()
        if v not in _LOG_LEVELS:
            raise ValueError(f"logging.level must be one of {', '.join(_LOG_LEVELS)}")
        return v


def env_name(key: str) -> str:
    """Environment variable for a dotted key: ``server.port`` -> ``SERVER_PORT``."""
    return ENV_ALIASES.get(key) or key.upper().replace(".", "_").replace("-", "_")


def parse_args(argv: Sequence[str]) -> dict[str, str]:
    """Collect ``--key=value`` arguments; anything else is ignored."""
    out: dict[str, str] = {}
    for arg in argv:
        if arg.startswith("--") and "=" in arg:
            key, value = arg[2:].split("=", 1)
            out[key] = value
    return out


def _flatten(mapping: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in mapping.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, Mapping):
            flat.update(_flatten(value, f"{dotted}."))
        else:
            flat[dotted] = value
    return flat


def _config_file(args: Mapping[str, str], environ: Mapping[str, str]) -> Optional[Path]:
    explicit = args.get("config") or environ.get(CONFIG_ENV)
    if explicit:
        return Path(explicit)
    default = Path(DEFAULT_CONFIG_FILE)
    return default if default.is_file() else None


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigMissing(f"Cannot read config file {path}: {e}") from e
    if not isinstance(data, Mapping):
        raise ConfigMissing(f"Config file {path} must contain a mapping")
    return _flatten(data)


def _announced_host(address: str) -> str:
    return socket.gethostname() if address in _WILDCARDS else address


def _build(values: Mapping[str, Any]) -> Settings:
    listen = ListenConfig(address=values["server.address"], port=values["server.port"])
    host = values["discovery.instance-host"] or _announced_host(listen.address)
    name = values["service.name"]
    registration = RegistrationConfig(
        service_name=name,
        instance_id=values["service.instance-id"] or f"{host}:{name}:{listen.port}",
        instance_host=host,
        discovery_url=values["discovery.url"],
        kind=values["discovery.kind"],
        health_path=values["health.path"],
        heartbeat_interval=values["heartbeat.interval"],
        registry_ttl=values["registry.ttl"],
    )
    retry = RetryConfig(
        max_attempts=values["registry.retry.max-attempts"],
        initial_backoff=values["registry.retry.initial-backoff"],
        max_backoff=values["registry.retry.max-backoff"],
        heartbeat_max_failures=values["heartbeat.max-failures"],
    )
    return Settings(
        listen=listen,
        registration=registration,
        retry=retry,
        request_timeout_s=values["registry.request-timeout"],
        shutdown_grace_period_s=values["shutdown.grace-period"],
        log_level=str(values["logging.level"]),
    )


def load_settings(argv: Sequence[str] = (), environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Load settings from defaults, YAML file, environment and process arguments."""
    environ = os.environ if environ is None else environ
    args = parse_args(argv)

    values = dict(DEFAULTS)
    path = _config_file(args, environ)
    if path is not None:
        values.update({k: v for k, v in _read_yaml(path).items() if k in DEFAULTS})
    for key in DEFAULTS:
        raw = environ.get(env_name(key))
        if raw is not None:
            values[key] = raw
    values.update({k: v for k, v in args.items() if k in DEFAULTS})

    missing = [k for k in REQUIRED if values.get(k) in (None, "")]
    if missing:
        raise ConfigMissing(
            "Missing required configuration: "
            + ", ".join(f"{k} (env {env_name(k)})" for k in missing)
        )
    try:
        return _build(values)
    except ValidationError as e:
        raise ConfigMissing(f"Invalid configuration: {e}") from e
