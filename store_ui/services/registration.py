"""Registration lifecycle against the discovery registry.

The Registrar owns the registration state of this instance: whether it is
registered, when the last heartbeat succeeded, how many heartbeats failed in a
row and whether it has been deregistered. Writes go through a lock; readers get
immutable snapshots.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from store_ui.core.config import RetryConfig
from store_ui.core.errors import HeartbeatLost, RegistryRejected, RegistryUnreachable
from store_ui.metrics.prometheus import HEARTBEAT_FAILURES, REREGISTRATIONS
from store_ui.models.schemas import InstanceInfo
from store_ui.services.registry_client import RegistryClient

log = logging.getLogger("store-ui.registration")


@dataclass(frozen=True)
class RegistrationSnapshot:
    instance_id: str
    registered: bool
    deregistered: bool
    last_heartbeat: Optional[float]
    consecutive_failures: int

    def heartbeat_age(self, now: Optional[float] = None) -> Optional[float]:
        if self.last_heartbeat is None:
            return None
        return (time.monotonic() if now is None else now) - self.last_heartbeat


class Registrar:
    """Registers, heartbeats and deregisters one instance."""

    def __init__(
        self,
        client: RegistryClient,
        instance: InstanceInfo,
        retry: RetryConfig,
        heartbeat_interval_s: float,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self._instance = instance
        self._retry = retry
        self._interval = heartbeat_interval_s
        self._sleep = sleep
        self._lock = threading.Lock()
        self._registered = False
        self._deregistered = False
        self._last_heartbeat: Optional[float] = None
        self._failures = 0

    @property
    def instance(self) -> InstanceInfo:
        return self._instance

    def snapshot(self) -> RegistrationSnapshot:
        with self._lock:
            return RegistrationSnapshot(
                instance_id=self._instance.instance_id,
                registered=self._registered,
                deregistered=self._deregistered,
                last_heartbeat=self._last_heartbeat,
                consecutive_failures=self._failures,
            )

    def _mark_alive(self) -> None:
        with self._lock:
            self._registered = True
            self._failures = 0
            self._last_heartbeat = time.monotonic()

    def _mark_failed(self) -> int:
        HEARTBEAT_FAILURES.inc()
        with self._lock:
            self._failures += 1
            return self._failures

    async def register(self) -> None:
        """Register, retrying transient failures with capped exponential backoff.

        Raises RegistryRejected at once on a permanent refusal, and
        RegistryUnreachable once ``retry.max_attempts`` attempts have failed.
        """
        attempts = self._retry.max_attempts
        last_exc: RegistryUnreachable | None = None

        for i in range(attempts):
            try:
                await self._client.register(self._instance)
            except RegistryUnreachable as e:
                last_exc = e
                log.warning("Registration attempt %d/%d failed: %s", i + 1, attempts, e)
                if i + 1 < attempts:
                    await self._sleep(self._retry.backoff(i))
                continue
            self._mark_alive()
            log.info(
                "Registered %s as %s at %s:%d via %r",
                self._instance.service_name,
                self._instance.instance_id,
                self._instance.host,
                self._instance.port,
                self._client,
            )
            return

        raise RegistryUnreachable(
            f"Registry unreachable after {attempts} attempts: {last_exc}"
        ) from last_exc

    async def beat(self) -> bool:
        """Run one heartbeat tick. Returns True when the registration is fresh.

        Failures are logged and counted, never raised. Once
        ``heartbeat_max_failures`` heartbeats failed in a row, ticks attempt a
        full re-registration instead.
        """
        with self._lock:
            if self._deregistered:
                return False
            failures = self._failures

        if failures >= self._retry.heartbeat_max_failures:
            return await self._reregister()

        try:
            await self._client.heartbeat(self._instance)
        except HeartbeatLost as e:
            log.warning("Heartbeat lost: %s; re-registering", e)
            return await self._reregister()
        except (RegistryUnreachable, RegistryRejected) as e:
            n = self._mark_failed()
            log.warning("Heartbeat failed (%d consecutive): %s", n, e)
            if n >= self._retry.heartbeat_max_failures:
                log.error(
                    "Heartbeat lost after %d consecutive failures; will re-register on next tick", n
                )
            return False

        self._mark_alive()
        log.debug("Heartbeat ok for %s", self._instance.instance_id)
        return True

    async def _reregister(self) -> bool:
        REREGISTRATIONS.inc()
        try:
            await self._client.register(self._instance)
        except (RegistryUnreachable, RegistryRejected) as e:
            n = self._mark_failed()
            log.warning("Re-registration failed (%d consecutive): %s", n, e)
            return False
        self._mark_alive()
        log.info("Re-registered %s", self._instance.instance_id)
        return True

    async def heartbeat_loop(self) -> None:
        """Heartbeat every interval until cancelled."""
        while True:
            await self._sleep(self._interval)
            try:
                await self.beat()
            except Exception:
                log.exception("Heartbeat tick failed; retrying next interval")

    async def deregister(self) -> bool:
        """Remove the registry entry. Only the first call ever contacts the registry.

        Returns True when the registry confirmed the removal.
        """
        with self._lock:
            if self._deregistered:
                return False
            self._deregistered = True
            registered = self._registered
        if not registered:
            log.info("Not registered; skipping deregistration")
            return False

        try:
            await self._client.deregister(self._instance)
        except (RegistryUnreachable, RegistryRejected) as e:
            log.warning("Deregistration failed: %s", e)
            return False

        with self._lock:
            self._registered = False
        log.info("Deregistered %s", self._instance.instance_id)
        return True
