"""Load Balancer application and process entry point.

Builds the round-robin LoadBalancer from environment settings, wraps it in a
FastAPI app whose only route forwards everything, and serves it until a
termination signal drains and stops the host.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import start_http_server

from rrlb.api.routes import routes
from rrlb.core.config import load_settings
from rrlb.core.errors import ConfigurationError, ListenerError
from rrlb.core.logging import setup_logging
from rrlb.services.balancer import LoadBalancer
from rrlb.services.host import ServiceHost

log = logging.getLogger("Load-Balancer")


def create_app(balancer: LoadBalancer) -> FastAPI:
    """Create the proxy app around an already-built LoadBalancer."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan.

        The LoadBalancer's upstream connection pool lives for the duration of
        the app and is closed once the server has drained.
        """
        async with balancer:
            yield

    app = FastAPI(
        title="LB",
        version="0.1.0",
        lifespan=lifespan,
        routes=routes,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.balancer = balancer
    return app


def main() -> None:
    setup_logging()

    try:
        settings = load_settings()
        balancer = LoadBalancer(
            settings.backends,
            settings.request_timeout_s,
            forward_hop_headers=settings.forward_hop_headers,
        )
    except ConfigurationError as e:
        log.error("failed to create LoadBalancer: %s", e)
        sys.exit(1)

    log.info("Backends configured:")
    for idx, backend in enumerate(balancer.backends, start=1):
        log.info("[%d] %s", idx, backend.url)

    if settings.metrics_port:
        try:
            start_http_server(settings.metrics_port)
        except OSError as e:
            log.error("cannot serve metrics on :%d: %s", settings.metrics_port, e)
            sys.exit(1)
        log.info("Prometheus metrics on :%d", settings.metrics_port)

    host = ServiceHost(
        create_app(balancer),
        settings.host,
        settings.port,
        grace_period_s=settings.shutdown_grace_s,
    )
    try:
        asyncio.run(host.run())
    except ListenerError as e:
        log.error("Server exited with error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
