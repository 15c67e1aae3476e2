"""API routes for the load balancer.

There is exactly one route: every method on every path is handed to the
application's LoadBalancer, which forwards it to the next backend.
"""
from __future__ import annotations

from fastapi import Request
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from rrlb.services.balancer import LoadBalancer


class Proxy:
    """ASGI endpoint that forwards the request to the next backend in round-robin order."""

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        balancer: LoadBalancer = request.app.state.balancer
        response = await balancer.forward(request)
        await response(scope, receive, send)


# Route only restricts methods for plain function endpoints; an ASGI
# endpoint with methods=None sees every method, extension methods included.
routes = [Route("/{path:path}", Proxy(), methods=None, include_in_schema=False)]
