"""Error kinds raised while bootstrapping and registering the service."""
from __future__ import annotations


class BootstrapError(Exception):
    """Base class for lifecycle errors. ``exit_code`` is used when it aborts startup."""

    exit_code = 1


class ConfigMissing(BootstrapError):
    """Required configuration is absent or invalid."""


class BindFailed(BootstrapError):
    """The HTTP listener could not bind or start."""


class RegistryUnreachable(BootstrapError):
    """Transient registry failure: transport error, timeout or 5xx."""


class RegistryRejected(BootstrapError):
    """The registry refused the request (4xx). Not retried."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class HeartbeatLost(BootstrapError):
    """The registry no longer knows this instance."""


class ShutdownTimeout(BootstrapError):
    """In-flight requests did not drain within the grace period."""
