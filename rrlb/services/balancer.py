"""Round-robin reverse-proxy core for the Load Balancer.

Owns the fixed backend list, the shared selection cursor and the pooled
upstream client. ``LoadBalancer.forward`` sends one client request to the next
backend and streams the upstream response back to the client.
"""
from __future__ import annotations

import asyncio
import logging
import re
import socket
import time
from http.cookiejar import DefaultCookiePolicy
from typing import AsyncIterator, Optional, Sequence

import httpx
from fastapi import Request, Response
from fastapi.responses import PlainTextResponse, StreamingResponse
from prometheus_client import Counter, Histogram
from pydantic import ValidationError
from starlette.requests import ClientDisconnect

from rrlb.core.errors import ConfigurationError, UpstreamTimeout
from rrlb.models.schemas import Backend

from .algorithms.round_robin import RoundRobin

log = logging.getLogger("Load-Balancer.Core")

DEFAULT_TIMEOUT_S = 5.0

# Upstream pool bounds
MAX_CONNECTIONS = 100
MAX_IDLE_CONNECTIONS = 30
IDLE_CONNECTION_EXPIRY_S = 90.0
DIAL_TIMEOUT_S = 5.0
TCP_KEEPALIVE_S = 10

# RFC 9110 hop-by-hop headers
HOP_BY_HOP = {
    b"connection", b"keep-alive", b"proxy-authenticate", b"proxy-authorization",
    b"te", b"trailers", b"transfer-encoding", b"upgrade",
}

# RFC 9110 token, the only valid shape of a request method
_METHOD = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")

FORWARDED = Counter("lb_forwarded_requests_total", "Requests forwarded to backends", ["backend", "outcome"])
UPSTREAM_LATENCY = Histogram("lb_upstream_latency_seconds", "Time until the backend answered or the call failed")


def _keepalive_socket_options() -> list[tuple[int, int, int]]:
    options = [(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)]
    if hasattr(socket, "TCP_KEEPIDLE"):
        options.append((socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, TCP_KEEPALIVE_S))
        options.append((socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, TCP_KEEPALIVE_S))
    return options


def build_client(timeout_s: float) -> httpx.AsyncClient:
    """Create the pooled upstream client shared by every forwarded request."""
    transport = httpx.AsyncHTTPTransport(
        limits=httpx.Limits(
            max_connections=MAX_CONNECTIONS,
            max_keepalive_connections=MAX_IDLE_CONNECTIONS,
            keepalive_expiry=IDLE_CONNECTION_EXPIRY_S,
        ),
        socket_options=_keepalive_socket_options(),
    )
    return httpx.AsyncClient(
        transport=transport,
        timeout=httpx.Timeout(timeout_s, connect=DIAL_TIMEOUT_S, pool=None),
        follow_redirects=False,
        trust_env=False,
    )


def _has_body(request: Request) -> bool:
    return "content-length" in request.headers or "transfer-encoding" in request.headers


async def _stream_body(request: Request, drained: asyncio.Event) -> AsyncIterator[bytes]:
    async for chunk in request.stream():
        if chunk:
            yield chunk
    drained.set()


async def _client_gone(request: Request, drained: asyncio.Event) -> None:
    """Return once the client has closed its connection."""
    # The receive channel carries the request body first; only listen once it is drained.
    await drained.wait()
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return
        await asyncio.sleep(0)


class LoadBalancer:
    """
    Round-robin reverse proxy over a fixed set of backends.

    Holds an httpx.AsyncClient for connection pooling and a single cursor that
    is shared by every concurrent request. Upstream failures are reported to
    the caller as 502/504 and never retried.
    """

    def __init__(
        self,
        backends: Sequence[str],
        timeout_s: Optional[float] = None,
        *,
        forward_hop_headers: bool = False,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if len(backends) < 2:
            raise ConfigurationError("at least 2 backends are required for load balancing")

        parsed: list[Backend] = []
        for raw in backends:
            try:
                parsed.append(Backend(url=raw))
            except ValidationError as e:
                raise ConfigurationError(f"invalid backend URL {raw!r}: {e.errors()[0]['msg']}") from e

        if timeout_s is None:
            timeout_s = DEFAULT_TIMEOUT_S
        if timeout_s <= 0:
            raise ConfigurationError(f"timeout must be positive, got {timeout_s}")

        self._ring: RoundRobin[Backend] = RoundRobin(parsed)
        self._timeout_s = float(timeout_s)
        self._forward_hop_headers = forward_hop_headers
        self._client = client if client is not None else build_client(self._timeout_s)
        # Set-Cookie belongs to the caller; the shared client must never replay it.
        self._client.cookies.jar.set_policy(DefaultCookiePolicy(allowed_domains=[]))

    @property
    def backends(self) -> tuple[Backend, ...]:
        return self._ring.items

    @property
    def timeout_s(self) -> float:
        return self._timeout_s

    def next_backend(self) -> Backend:
        """Return the next backend in round-robin order."""
        return self._ring.pick()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "LoadBalancer":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def forward(self, req: Request) -> Response:
        """Forward `req` to the next backend and stream the response back."""
        backend = self.next_backend()
        drained = asyncio.Event()

        try:
            outbound = self._build_request(req, backend, drained)
        except (httpx.InvalidURL, ValueError) as e:
            self._record(req.method, backend, "internal_error", 0.0, logging.ERROR, f"failed to create request: {e}")
            return PlainTextResponse("Failed to create request", status_code=500)

        start = time.perf_counter()
        try:
            upstream = await self._send(outbound, req, drained)
        except (UpstreamTimeout, httpx.TimeoutException):
            elapsed = time.perf_counter() - start
            self._record(req.method, backend, "timeout", elapsed, logging.WARNING)
            return PlainTextResponse(f"Backend request timed out after {elapsed:.1f}s", status_code=504)
        except ClientDisconnect:
            elapsed = time.perf_counter() - start
            self._record(req.method, backend, "client_closed", elapsed)
            return Response(status_code=499)
        except httpx.HTTPError as e:
            elapsed = time.perf_counter() - start
            self._record(req.method, backend, "unavailable", elapsed, logging.ERROR, str(e))
            return PlainTextResponse("Service temporarily unavailable", status_code=502)

        self._record(req.method, backend, str(upstream.status_code), time.perf_counter() - start)

        resp = StreamingResponse(self._relay(upstream, backend), status_code=upstream.status_code)
        # Appended one by one so repeated headers (Set-Cookie, X-Custom, ...) survive
        resp.raw_headers.extend(self._relay_headers(upstream))
        return resp

    def _build_request(self, req: Request, backend: Backend, drained: asyncio.Event) -> httpx.Request:
        if not _METHOD.match(req.method):
            raise ValueError(f"invalid method {req.method!r}")

        raw_path = req.scope.get("raw_path")
        path = raw_path.split(b"?", 1)[0] if raw_path else req.url.path.encode("utf-8")
        url = backend.target(path, req.scope.get("query_string", b""))

        headers = [
            (name, value)
            for name, value in req.headers.raw
            if name.lower() != b"host" and self._forwardable(name)
        ]

        if _has_body(req):
            content = _stream_body(req, drained)
        else:
            content = None
            drained.set()

        return httpx.Request(
            req.method,
            url,
            headers=headers,
            content=content,
            extensions={"timeout": self._client.timeout.as_dict()},
        )

    async def _send(self, outbound: httpx.Request, req: Request, drained: asyncio.Event) -> httpx.Response:
        """Send upstream, bounded by the timeout and by the client staying connected."""
        started = time.perf_counter()
        sending = asyncio.create_task(self._client.send(outbound, stream=True))
        watching = asyncio.create_task(_client_gone(req, drained))
        try:
            done, _ = await asyncio.wait(
                {sending, watching}, timeout=self._timeout_s, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            watching.cancel()
            if not sending.done():
                sending.cancel()

        if sending in done:
            return sending.result()

        # The send may have completed after the wait returned; its connection must go back to the pool.
        (result,) = await asyncio.gather(sending, return_exceptions=True)
        if isinstance(result, httpx.Response):
            await result.aclose()

        if watching in done:
            raise ClientDisconnect()
        raise UpstreamTimeout(time.perf_counter() - started)

    def _forwardable(self, name: bytes) -> bool:
        return self._forward_hop_headers or name.lower() not in HOP_BY_HOP

    def _relay_headers(self, upstream: httpx.Response) -> list[tuple[bytes, bytes]]:
        return [(name.lower(), value) for name, value in upstream.headers.raw if self._forwardable(name)]

    async def _relay(self, upstream: httpx.Response, backend: Backend) -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            log.warning("relay from %s aborted: %s", backend.netloc, e)
            raise
        finally:
            await upstream.aclose()

    def _record(
        self,
        method: str,
        backend: Backend,
        outcome: str,
        elapsed_s: float,
        level: int = logging.INFO,
        detail: str = "",
    ) -> None:
        FORWARDED.labels(backend=backend.netloc, outcome=outcome).inc()
        UPSTREAM_LATENCY.observe(elapsed_s)
        suffix = f" ({detail})" if detail else ""
        log.log(level, "%s → %s %s %dms%s", method, backend.netloc, outcome, elapsed_s * 1000, suffix)
