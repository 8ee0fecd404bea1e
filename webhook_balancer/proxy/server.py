"""Load-balancing relay for Slack and Google Sheets webhooks.

Features:
- Multiple load balancing strategies (round_robin, least_connections, random, weighted, sticky)
- Failure-driven health tracking with automatic demotion and recovery
- Verbatim body forwarding so Slack signatures stay valid
- 3-second budget with a single quick retry on transient errors
- Best-effort de-duplication of Slack redeliveries
"""

from __future__ import annotations

import asyncio
import socket
import sys
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from aiohttp import web

from webhook_balancer.config.schema import Config, HeadersConfig
from webhook_balancer.proxy.forwarder import RelayRequest
from webhook_balancer.proxy.router import RouteOutcome, Router
from webhook_balancer.proxy.strategies import STRATEGIES
from webhook_balancer.proxy.tracker import DeliveryKey


@dataclass(frozen=True)
class RelayRoute:
    """An inbound path prefix bound to a service and its affinity sources."""
    prefix: str
    service: str
    affinity: tuple[str, ...]
    post_only: bool = False
    dedup: bool = False


# Affinity sources: "signature", "forwarded_for", "remote"
ROUTES = [
    RelayRoute("/slack/events", "slack_app", ("signature", "forwarded_for"), post_only=True, dedup=True),
    RelayRoute("/slack/interactions", "slack_app", ("signature", "forwarded_for"), post_only=True, dedup=True),
    RelayRoute("/slack/oauth", "slack_oauth", ("forwarded_for", "remote")),
    RelayRoute("/google-sheets/oauth", "google_sheets", ("forwarded_for", "remote")),
    RelayRoute("/slack", "slack_app", ("forwarded_for", "remote")),
]

# Inbound paths per routing service
SERVICES_HANDLED = {
    "slack_app": ["/slack/events", "/slack/interactions", "/slack/*"],
    "slack_oauth": ["/slack/oauth/*"],
    "google_sheets": ["/google-sheets/oauth/*"],
}

SERVICE_DESCRIPTIONS = {
    "slack_app": "Slack app events and interactions",
    "slack_oauth": "Slack OAuth flow",
    "google_sheets": "Google Sheets OAuth flow",
}

AVAILABLE_ENDPOINTS = [
    "/health",
    "/load-balancer",
    "/reset-health",
    "/stats",
    "/developers",
    "/services",
    "/slack/events",
    "/slack/interactions",
    "/slack/oauth/*",
    "/google-sheets/oauth/*",
]


def _get_local_ip() -> str:
    """Get the local IP address accessible from the network."""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return "127.0.0.1"


def log_route(method: str, path: str):
    """Log route access to stderr (unbuffered)."""
    sys.stderr.write(f"[RELAY] {method} {path}\n")
    sys.stderr.flush()


def affinity_key_for(request: web.Request, route: RelayRoute, headers: HeadersConfig) -> Optional[str]:
    """First non-empty affinity source configured for ``route``."""
    for source in route.affinity:
        if source == "signature":
            value = request.headers.get(headers.signature)
        elif source == "forwarded_for":
            value = request.headers.get(headers.forwarded_for)
        else:
            value = request.remote
        if value:
            return value
    return None


def delivery_key_for(request: web.Request, headers: HeadersConfig) -> Optional[DeliveryKey]:
    return DeliveryKey.from_values(
        request.headers.get(headers.signature),
        request.headers.get(headers.timestamp),
        request.headers.get(headers.retry_num),
    )


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Turn unexpected exceptions into JSON 500 responses."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except asyncio.CancelledError:
        raise
    except Exception as e:
        print(f"[ERROR] Unhandled error on {request.method} {request.path}: {e!r}")
        return web.json_response(
            {"error": "Internal server error", "message": str(e)},
            status=500,
        )


class RelayServer:
    """Async webhook relay with load balancing."""

    def __init__(
        self,
        router: Router,
        port: int = 6000,
        headers_config: Optional[HeadersConfig] = None,
        verbose: bool = True,
    ):
        self.router = router
        self.port = port
        self.headers = headers_config or HeadersConfig()
        self.verbose = verbose
        self.app = web.Application(middlewares=[error_middleware])
        self.app.on_startup.append(self._on_startup)
        self.app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()
        self._runner: Optional[web.AppRunner] = None
        # In-flight routing tasks, kept so detached forwards are not garbage collected
        self._pending: set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config: Config) -> "RelayServer":
        return cls(
            Router.from_config(config),
            port=config.balancer.port,
            headers_config=config.headers,
            verbose=config.balancer.verbose,
        )

    def _setup_routes(self):
        self.app.router.add_get("/health", self._handle_health)
        self.app.router.add_get("/load-balancer", self._handle_load_balancer)
        self.app.router.add_post("/reset-health", self._handle_reset_health)
        self.app.router.add_get("/stats", self._handle_stats)
        self.app.router.add_get("/developers", self._handle_developers)
        self.app.router.add_get("/services", self._handle_services)
        # Relay routes (specific prefixes before the /slack catch-all)
        for route in ROUTES:
            self.app.router.add_route("*", route.prefix, self._make_relay_handler(route))
            self.app.router.add_route("*", route.prefix + "/{tail:.*}", self._make_relay_handler(route))
        self.app.router.add_route("*", "/{tail:.*}", self._handle_not_found)

    async def _on_startup(self, app: web.Application):
        await self.router.start()

    async def _on_cleanup(self, app: web.Application):
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self.router.close()

    def _developers(self) -> list[str]:
        return self.router.registry.list_backends()

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        log_route(request.method, "/health")
        return web.json_response({
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "developers": self._developers(),
            "strategy": self.router.strategy,
            "load_balancer_strategy": self.router.strategy,
            "services": self.router.registry.services(),
            "request_counts": self.router.health.request_counts(),
            "health_status": self.router.health.health_status(),
            "services_handled": SERVICES_HANDLED,
        })

    async def _handle_load_balancer(self, request: web.Request) -> web.Response:
        """Load balancer info endpoint."""
        log_route(request.method, "/load-balancer")
        return web.json_response({
            "strategy": self.router.strategy,
            "available_strategies": STRATEGIES,
            "request_counts": self.router.health.request_counts(),
            "health_status": self.router.health.health_status(),
            "developers": self._developers(),
        })

    async def _handle_reset_health(self, request: web.Request) -> web.Response:
        """Reset every backend to healthy."""
        log_route(request.method, "/reset-health")
        health_status = await self.router.health.reset_all()
        if self.verbose:
            print("[HEALTH] Health status reset for all developers")
        return web.json_response({"message": "Health status reset", "health_status": health_status})

    async def _handle_stats(self, request: web.Request) -> web.Response:
        """Return detailed statistics."""
        log_route(request.method, "/stats")
        return web.json_response(self.router.get_stats())

    async def _handle_developers(self, request: web.Request) -> web.Response:
        """Developer -> service -> target URL map."""
        log_route(request.method, "/developers")
        return web.json_response({
            "developers": self.router.registry.to_dict(),
            "strategy": self.router.strategy,
        })

    async def _handle_services(self, request: web.Request) -> web.Response:
        """Inbound paths for each service, with an example URL to configure."""
        log_route(request.method, "/services")
        base = f"{request.scheme}://{request.host}"
        services = {}
        for service, paths in SERVICES_HANDLED.items():
            services[service] = {
                "description": SERVICE_DESCRIPTIONS[service],
                "endpoints": paths,
                "example_url": base + paths[0].replace("*", "callback"),
            }
        return web.json_response({"services": services})

    async def _handle_not_found(self, request: web.Request) -> web.Response:
        return web.json_response(
            {"error": "Endpoint not found", "available_endpoints": AVAILABLE_ENDPOINTS},
            status=404,
        )

    def _make_relay_handler(self, route: RelayRoute):
        async def handler(request: web.Request) -> web.StreamResponse:
            return await self._handle_relay(request, route)
        return handler

    async def _handle_relay(self, request: web.Request, route: RelayRoute) -> web.StreamResponse:
        """Relay a webhook to the backend chosen for ``route.service``."""
        log_route(request.method, request.path)
        if route.post_only and request.method != "POST":
            return web.json_response({"error": "Method not allowed"}, status=405)

        # Raw bytes: the backend verifies the signature over exactly these
        body = await request.read()
        relay_request = RelayRequest(
            method=request.method,
            path_qs=request.path_qs,
            headers=request.headers,
            body=body,
        )
        request_id = uuid.uuid4().hex[:16]
        if self.verbose:
            print(f"[{request_id}] Load balancing {request.path} ({route.service})")

        task = asyncio.ensure_future(self.router.route(
            relay_request,
            route.service,
            service_path=request.path_qs,
            affinity_key=affinity_key_for(request, route, self.headers),
            delivery_key=delivery_key_for(request, self.headers) if route.dedup else None,
            request_id=request_id,
        ))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        # Shielded: a caller disconnect must not cancel the forward mid-flight
        outcome = await asyncio.shield(task)
        if self.verbose:
            elapsed = f"{outcome.duration_ms:.0f}ms" if outcome.duration_ms is not None else "-"
            print(f"[{request_id}] {outcome.status} via {outcome.backend_id or '(none)'} ({elapsed})")
        return self._to_response(outcome)

    def _to_response(self, outcome: RouteOutcome) -> web.Response:
        if not outcome.relayed:
            return web.json_response(outcome.payload, status=outcome.status)
        headers = {
            k: v for k, v in outcome.headers.items()
            if k.lower() not in ("content-type", "server", "date")
        }
        response = web.Response(status=outcome.status, body=outcome.body, headers=headers)
        if outcome.content_type:
            response.headers["Content-Type"] = outcome.content_type
        return response

    async def start(self):
        """Start the relay server."""
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self.port)
        await site.start()

        local_ip = _get_local_ip()
        developers = self._developers()

        print(f"Webhook relay running on http://0.0.0.0:{self.port}")
        print(f"Available developers: {', '.join(developers) or '(none)'}")
        print(f"Load balancer strategy: {self.router.strategy}")
        print(f"")
        print(f"  Local:   http://localhost:{self.port}")
        print(f"  Network: http://{local_ip}:{self.port}")
        print(f"")
        print(f"  Health check:       http://localhost:{self.port}/health")
        print(f"  Load balancer info: http://localhost:{self.port}/load-balancer")
        print(f"")
        print(f"Service URLs for Slack App configuration:")
        print(f"  Events:              http://localhost:{self.port}/slack/events")
        print(f"  Interactions:        http://localhost:{self.port}/slack/interactions")
        print(f"  OAuth:               http://localhost:{self.port}/slack/oauth/callback")
        print(f"  Google Sheets OAuth: http://localhost:{self.port}/google-sheets/oauth/callback")
        for developer, endpoints in self.router.registry.to_dict().items():
            print(f"  {developer}: {endpoints}")

    async def stop(self):
        """Stop the relay server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None


def parse_backends(backend_strs: list[str]) -> list[dict[str, Any]]:
    """Parse backend strings like 'alice:slack_app=https://alice.ngrok-free.app'."""
    records = []
    for s in backend_strs:
        key, url = s.split("=", 1)
        backend, service = key.split(":", 1)
        records.append({"backend": backend, "service": service, "url": url})
    return records
