"""Shared helpers for webhook-balancer tests.

Coroutines are driven with ``run_async`` so no asyncio pytest plugin is
needed. Upstream developers are real aiohttp applications (or raw asyncio
servers when a connection must be cut mid-request) on ephemeral ports.
"""

from __future__ import annotations

import asyncio
import socket
from typing import Any, Coroutine, Optional, TypeVar

import pytest
from aiohttp import web
from aiohttp.abc import AbstractResolver

from webhook_balancer.config import EndpointConfig
from webhook_balancer.proxy import BackendRegistry


T = TypeVar("T")


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine synchronously for testing."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def make_registry(mapping: dict[str, dict[str, str]]) -> BackendRegistry:
    """Registry from {developer: {service: url}}."""
    records = [
        EndpointConfig(backend=developer, service=service, url=url)
        for developer, services in mapping.items()
        for service, url in services.items()
    ]
    return BackendRegistry.from_endpoints(records, declared=list(mapping))


def closed_port() -> int:
    """A localhost port nothing is listening on."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


def make_echo_app(name: str = "backend", status: int = 200, delay: float = 0.0) -> web.Application:
    """Upstream that records each request and answers with JSON.

    Recorded requests are available as ``app["calls"]``.
    """
    calls: list[dict[str, Any]] = []

    async def handler(request: web.Request) -> web.Response:
        body = await request.read()
        calls.append({
            "method": request.method,
            "path_qs": request.path_qs,
            "headers": request.headers.copy(),
            "body": body,
        })
        if delay:
            await asyncio.sleep(delay)
        return web.json_response(
            {"backend": name, "path": request.path_qs},
            status=status,
            headers={"X-Backend": name},
        )

    app = web.Application()
    app["calls"] = calls
    app.router.add_route("*", "/{tail:.*}", handler)
    return app


async def start_flaky_backend(failures: int):
    """Raw TCP upstream that drops the first ``failures`` connections.

    Only bodiless requests (GET) are supported. Returns
    ``(server, base_url, calls)`` where ``calls["count"]`` counts connections.
    """
    calls = {"count": 0}

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        calls["count"] += 1
        try:
            await reader.readuntil(b"\r\n\r\n")
        except (asyncio.IncompleteReadError, ConnectionError):
            writer.close()
            return
        if calls["count"] <= failures:
            writer.close()
            return
        body = b'{"ok": true}'
        writer.write(
            b"HTTP/1.1 200 OK\r\n"
            b"Content-Type: application/json\r\n"
            b"Content-Length: " + str(len(body)).encode() + b"\r\n"
            b"Connection: close\r\n\r\n" + body
        )
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    return server, f"http://127.0.0.1:{port}", calls


class UnresolvableResolver(AbstractResolver):
    """Resolver for which every host name is unknown."""

    def __init__(self):
        self.lookups = 0

    async def resolve(self, host, port=0, family=socket.AF_INET):
        self.lookups += 1
        raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")

    async def close(self):
        pass


def base_url(server) -> str:
    return f"http://127.0.0.1:{server.port}"


@pytest.fixture
def three_developers() -> BackendRegistry:
    """alice, bob and charlie all serving slack_app."""
    return make_registry({
        "alice": {"slack_app": "https://alice.example"},
        "bob": {"slack_app": "https://bob.example"},
        "charlie": {"slack_app": "https://charlie.example"},
    })
