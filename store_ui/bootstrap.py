"""Service bootstrapper: owns the store-ui process lifecycle.

    Initializing -> Registering -> Serving -> Draining -> Stopped

The HTTP listener is bound and accepting before the instance is registered, and
the instance is only reported ready once registration succeeded. On the first
SIGTERM/SIGINT the heartbeat stops, the instance is deregistered, then uvicorn
stops accepting and drains in-flight requests within the grace period. A second
signal skips whatever is left and exits with status 130.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import socket
import sys
from typing import Optional, Sequence

import httpx
import uvicorn

from store_ui.core.config import ListenConfig, Settings, load_settings
from store_ui.core.errors import BindFailed, BootstrapError, ConfigMissing, ShutdownTimeout
from store_ui.core.logging import setup_logging
from store_ui.main import create_app
from store_ui.models.schemas import InstanceInfo
from store_ui.services.lifecycle import Lifecycle, State
from store_ui.services.registration import Registrar
from store_ui.services.registry_client import create_registry_client

EXIT_OK = 0
EXIT_STARTUP_FAILED = 1
EXIT_FORCED = 130

FORCED_EXIT_WAIT_S = 1.0

log = logging.getLogger("store-ui.bootstrap")


class _Server(uvicorn.Server):
    """uvicorn server whose signals are handled by the Bootstrapper."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def bind_socket(listen: ListenConfig) -> socket.socket:
    """Bind the listener socket; uvicorn starts listening on it."""
    family = socket.AF_INET6 if ":" in listen.address else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((listen.address, listen.port))
    except OSError as e:
        sock.close()
        raise BindFailed(f"Cannot bind {listen.address}:{listen.port}: {e}") from e
    sock.set_inheritable(True)
    return sock


async def _wait_or_event(task: asyncio.Future, event: asyncio.Event, timeout: Optional[float] = None) -> bool:
    """Wait for ``task`` until ``event`` is set or ``timeout`` expires. True if it finished."""
    waiter = asyncio.ensure_future(event.wait())
    try:
        await asyncio.wait({task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
    return task.done()


async def _cancel(task: asyncio.Future) -> None:
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


class Bootstrapper:
    """Start, register, serve, deregister and drain one store-ui instance."""

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        install_signal_handlers: bool = True,
    ):
        self.settings = settings
        self.lifecycle = Lifecycle()
        self.instance = InstanceInfo.from_settings(settings)
        self.registrar: Optional[Registrar] = None
        self.server: Optional[_Server] = None
        self._http = http_client
        self._install_signals = install_signal_handlers
        self._stop_requested = asyncio.Event()
        self._forced = asyncio.Event()
        self._stop_calls = 0

    def request_stop(self) -> None:
        """First call starts an orderly shutdown; any later call forces exit."""
        self._stop_calls += 1
        if self._stop_calls == 1:
            log.info("Termination requested; shutting down")
            self._stop_requested.set()
            return
        log.warning("Second termination request; skipping drain")
        self._forced.set()
        if self.server is not None:
            self.server.should_exit = True
            self.server.force_exit = True

    def _on_signal(self, sig: signal.Signals) -> None:
        log.info("Received %s", sig.name)
        self.request_stop()

    @contextlib.contextmanager
    def _signal_handlers(self):
        if not self._install_signals:
            yield
            return
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                log.debug("Cannot install handler for %s", sig.name)
                continue
            installed.append(sig)
        try:
            yield
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

    async def run(self) -> int:
        """Run the whole lifecycle and return the process exit status."""
        try:
            with self._signal_handlers():
                async with contextlib.AsyncExitStack() as stack:
                    http = self._http
                    if http is None:
                        http = await stack.enter_async_context(
                            httpx.AsyncClient(timeout=self.settings.request_timeout_s)
                        )
                    return await self._run(http)
        except BootstrapError as e:
            log.error("Startup failed: %s: %s", type(e).__name__, e)
            self.lifecycle.advance(State.STOPPED)
            return e.exit_code

    async def _run(self, http: httpx.AsyncClient) -> int:
        settings = self.settings
        client = create_registry_client(settings, http)
        self.registrar = Registrar(
            client, self.instance, settings.retry, settings.registration.heartbeat_interval
        )
        app = create_app(settings, self.lifecycle, self.registrar)

        sock = bind_socket(settings.listen)
        self.server = _Server(uvicorn.Config(app, log_config=None, lifespan="on"))
        serve_task = asyncio.ensure_future(self.server.serve(sockets=[sock]))
        try:
            await self._wait_started(serve_task)
            log.info("Listening on %s:%d", settings.listen.address, settings.listen.port)

            self.lifecycle.advance(State.REGISTERING)
            registering = asyncio.ensure_future(self.registrar.register())
            if not await _wait_or_event(registering, self._stop_requested):
                await _cancel(registering)
                log.info("Termination requested during registration; aborting startup")
                return await self._abort(serve_task)
            registering.result()
        except BootstrapError:
            await self._abort(serve_task)
            sock.close()
            raise

        self.lifecycle.advance(State.SERVING)
        log.info(
            "%s ready: %s at %s", self.instance.service_name, self.instance.instance_id, self.instance.health_check_url
        )
        heartbeat = asyncio.ensure_future(self.registrar.heartbeat_loop())
        if await _wait_or_event(serve_task, self._stop_requested):
            exc = None if serve_task.cancelled() else serve_task.exception()
            log.error("HTTP server exited while serving (%r); deregistering", exc)
        return await self._shutdown(serve_task, heartbeat)

    async def _wait_started(self, serve_task: asyncio.Future) -> None:
        while not self.server.started:
            if serve_task.done():
                exc = serve_task.exception()
                raise BindFailed(f"HTTP server stopped during startup: {exc!r}") from exc
            await asyncio.sleep(0.01)

    async def _shutdown(self, serve_task: asyncio.Future, heartbeat: asyncio.Future) -> int:
        self.lifecycle.advance(State.DRAINING)
        await _cancel(heartbeat)

        deregistering = asyncio.ensure_future(self.registrar.deregister())
        if not await _wait_or_event(deregistering, self._forced):
            await _cancel(deregistering)
            return await self._forced_exit(serve_task)

        self.server.should_exit = True
        grace = self.settings.shutdown_grace_period_s
        if not await _wait_or_event(serve_task, self._forced, timeout=grace):
            if self._forced.is_set():
                return await self._forced_exit(serve_task)
            err = ShutdownTimeout(f"in-flight requests did not drain within {grace:g}s")
            log.warning("%s: %s; forcing exit", type(err).__name__, err)
            self.server.force_exit = True
            await serve_task

        self.lifecycle.advance(State.STOPPED)
        log.info("Stopped")
        return EXIT_OK

    async def _forced_exit(self, serve_task: asyncio.Future) -> int:
        self.server.should_exit = True
        self.server.force_exit = True
        done, _ = await asyncio.wait({serve_task}, timeout=FORCED_EXIT_WAIT_S)
        if not done:
            await _cancel(serve_task)
        self.lifecycle.advance(State.STOPPED)
        log.warning("Forced exit")
        return EXIT_FORCED

    async def _abort(self, serve_task: asyncio.Future) -> int:
        """Stop the listener before it ever served as a registered instance."""
        self.server.should_exit = True
        done, _ = await asyncio.wait({serve_task}, timeout=self.settings.shutdown_grace_period_s)
        if not done:
            self.server.force_exit = True
            await _cancel(serve_task)
        self.lifecycle.advance(State.STOPPED)
        return EXIT_FORCED if self._forced.is_set() else EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Process entry point: arguments are ``--key=value`` configuration overrides."""
    argv = sys.argv[1:] if argv is None else argv
    setup_logging()
    try:
        settings = load_settings(argv)
    except ConfigMissing as e:
        log.error("Startup failed: %s: %s", type(e).__name__, e)
        return EXIT_STARTUP_FAILED
    setup_logging(settings.log_level)
    return asyncio.run(Bootstrapper(settings).run())
