"""Service host for the Load Balancer.

Binds the listening socket, runs uvicorn on its own task and drives the
Running -> Draining -> Stopped lifecycle from a single stop event, which is
set by SIGINT/SIGTERM or by ``ServiceHost.shutdown``.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import socket
from enum import Enum
from typing import Optional

import uvicorn

from rrlb.core.errors import ListenerError

log = logging.getLogger("Load-Balancer.Host")

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)
DEFAULT_GRACE_PERIOD_S = 5.0


class HostState(str, Enum):
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class _Server(uvicorn.Server):
    """uvicorn server that leaves signal handling to ServiceHost."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class ServiceHost:
    """
    Serve an ASGI app until a termination signal, then drain and stop.

    Draining closes the listener at once and gives in-flight requests
    ``grace_period_s`` to finish; whatever is still running after that is
    cancelled.
    """

    def __init__(
        self,
        app,
        host: str = "0.0.0.0",
        port: int = 8080,
        *,
        grace_period_s: float = DEFAULT_GRACE_PERIOD_S,
    ):
        self.host = host
        self.grace_period_s = grace_period_s
        self.config = uvicorn.Config(
            app,
            host=host,
            port=port,
            lifespan="on",
            log_config=None,
            access_log=False,
            proxy_headers=False,
            # Backend Server/Date headers are relayed as-is
            server_header=False,
            date_header=False,
            timeout_graceful_shutdown=grace_period_s,
        )
        self._server = _Server(self.config)
        self._stop = asyncio.Event()
        self._port = port
        self._state: Optional[HostState] = None

    @property
    def state(self) -> Optional[HostState]:
        """Current lifecycle state; ``None`` until ``run`` starts."""
        return self._state

    @property
    def started(self) -> bool:
        """True once the server accepts connections."""
        return self._state is HostState.RUNNING and self._server.started

    @property
    def port(self) -> int:
        """Listening port; a requested port 0 resolves once bound."""
        return self._port

    def bind(self) -> socket.socket:
        """Bind the listening socket; failures surface as ListenerError."""
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.config.port))
        except OSError as e:
            sock.close()
            raise ListenerError(f"cannot listen on {self.host}:{self.config.port}: {e}") from e
        sock.set_inheritable(True)
        self._port = sock.getsockname()[1]
        return sock

    def shutdown(self, sig: Optional[signal.Signals] = None) -> None:
        """Ask the host to start draining. Safe to call more than once."""
        if sig is not None:
            log.info("Received %s", signal.Signals(sig).name)
        self._stop.set()

    async def run(self) -> None:
        """Serve until stopped. Raises ListenerError if the server dies on its own."""
        sock = self.bind()
        loop = asyncio.get_running_loop()
        for sig in HANDLED_SIGNALS:
            loop.add_signal_handler(sig, self.shutdown, sig)

        # Serving runs on its own task so waiting for the stop event never blocks accepts
        serving = asyncio.create_task(self._server.serve(sockets=[sock]))
        stopping = asyncio.create_task(self._stop.wait())
        self._state = HostState.RUNNING
        log.info("──────────────────────────────────────────────")
        log.info("Load balancer started on %s:%d", self.host, self.port)
        log.info("──────────────────────────────────────────────")

        try:
            await asyncio.wait({serving, stopping}, return_when=asyncio.FIRST_COMPLETED)
            if serving.done() and not self._stop.is_set():
                stopping.cancel()
                cause = None if serving.cancelled() else serving.exception()
                raise ListenerError("server stopped unexpectedly") from cause

            self._state = HostState.DRAINING
            log.info("Shutting down gracefully...")
            self._server.should_exit = True
            await serving
        finally:
            for sig in HANDLED_SIGNALS:
                loop.remove_signal_handler(sig)
            sock.close()
            self._state = HostState.STOPPED

        log.info("──────────────────────────────────────────────")
        log.info("Server stopped cleanly. Goodbye!")
        log.info("──────────────────────────────────────────────")
