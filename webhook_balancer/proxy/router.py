"""Request routing: selection, forwarding and health updates."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from webhook_balancer.config.schema import Config
from webhook_balancer.proxy.backend import BackendRegistry, BalancerState
from webhook_balancer.proxy.forwarder import ForwardError, Forwarder, RelayRequest
from webhook_balancer.proxy.health import DEFAULT_FAILURE_THRESHOLD, HealthTracker
from webhook_balancer.proxy.selector import Selector
from webhook_balancer.proxy.tracker import DeliveryKey, DeliveryTracker


@dataclass
class RouteOutcome:
    """What to send back to the webhook caller.

    Either ``payload`` (a JSON document produced by the relay) or ``body``
    (bytes relayed from the backend) is set.
    """
    status: int
    payload: Optional[dict[str, Any]] = None
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    content_type: Optional[str] = None
    backend_id: Optional[str] = None
    duration_ms: Optional[float] = None

    @property
    def relayed(self) -> bool:
        return self.payload is None


class Router:
    """Orchestrate Selector -> Forwarder -> HealthTracker for one request."""

    def __init__(
        self,
        registry: BackendRegistry,
        forwarder: Optional[Forwarder] = None,
        strategy: str = "round_robin",
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        weights: Optional[dict[str, int]] = None,
        deliveries: Optional[DeliveryTracker] = None,
        verbose: bool = False,
        rng=None,
    ):
        self.registry = registry
        self.state = BalancerState.for_registry(registry)
        self.health = HealthTracker(self.state, failure_threshold=failure_threshold, verbose=verbose)
        self.selector = Selector(registry, self.health, strategy=strategy, weights=weights, rng=rng)
        self.forwarder = forwarder or Forwarder(verbose=verbose)
        self.deliveries = deliveries
        self.verbose = verbose

        # Metrics
        self.total_requests = 0
        self.total_errors = 0
        self.start_time = time.time()

    @classmethod
    def from_config(cls, config: Config) -> "Router":
        """Build the registry, forwarder and tracker described by ``config``."""
        b = config.balancer
        registry = BackendRegistry.from_endpoints(config.backends, declared=config.get_weights())
        forwarder = Forwarder(
            attempt_timeout=b.attempt_timeout,
            overall_timeout=b.overall_timeout,
            retry_margin=b.retry_margin,
            max_attempts=b.max_attempts,
            forward_headers=config.headers.forward,
            default_user_agent=config.headers.user_agent,
            verbose=b.verbose,
        )
        deliveries = None
        if config.dedup.enabled:
            deliveries = DeliveryTracker(
                max_entries=config.dedup.max_entries,
                window_seconds=config.dedup.window_seconds,
            )
        return cls(
            registry,
            forwarder=forwarder,
            strategy=b.strategy,
            failure_threshold=b.failure_threshold,
            weights=config.get_weights(),
            deliveries=deliveries,
            verbose=b.verbose,
        )

    @property
    def strategy(self) -> str:
        return self.selector.strategy

    async def start(self):
        await self.forwarder.start()

    async def close(self):
        await self.forwarder.close()

    async def route(
        self,
        request: RelayRequest,
        service: str,
        service_path: Optional[str] = None,
        affinity_key: Optional[str] = None,
        delivery_key: Optional[DeliveryKey] = None,
        request_id: Optional[str] = None,
    ) -> RouteOutcome:
        """Route one inbound request to a backend serving ``service``."""
        self.total_requests += 1
        request_id = request_id or uuid.uuid4().hex[:16]

        if delivery_key is not None and self.deliveries is not None:
            if await self.deliveries.check_and_record(delivery_key):
                if self.verbose:
                    print(f"[{request_id}] Duplicate delivery, not forwarding")
                return RouteOutcome(status=200, payload={"ok": True, "duplicate": True})

        try:
            outcome = await self._route(request, service, service_path, affinity_key, request_id)
        except Exception:
            await self._forget(delivery_key)
            raise
        if outcome.status >= 500 and not outcome.relayed:
            await self._forget(delivery_key)
        return outcome

    async def _forget(self, delivery_key: Optional[DeliveryKey]):
        if delivery_key is not None and self.deliveries is not None:
            await self.deliveries.forget(delivery_key)

    async def _route(
        self,
        request: RelayRequest,
        service: str,
        service_path: Optional[str],
        affinity_key: Optional[str],
        request_id: str,
    ) -> RouteOutcome:
        start = time.monotonic()
        backend = await self.selector.select(service, affinity_key)
        if backend is None:
            self.total_errors += 1
            return RouteOutcome(
                status=503,
                payload={
                    "error": "No available developers",
                    "service": service,
                    "duration_ms": round((time.monotonic() - start) * 1000),
                },
            )

        target = self.registry.get_endpoint(backend, service)
        if not target:
            self.total_errors += 1
            return RouteOutcome(
                status=502,
                payload={
                    "error": "No target URL found for developer and service",
                    "developer": backend,
                    "service": service,
                    "duration_ms": round((time.monotonic() - start) * 1000),
                },
                backend_id=backend,
            )

        if self.verbose:
            print(f"[{request_id}] {request.method} {service_path or request.path_qs} -> {backend} ({target})")

        try:
            result = await self.forwarder.forward(request, target, service_path, request_id=request_id)
        except ForwardError as e:
            self.total_errors += 1
            if e.affects_health:
                await self.health.report_failure(backend, e.transient)
            if self.verbose:
                print(f"[{request_id}] <- {e.status} {e.error_code} after {e.attempts} attempts ({e.duration_ms:.0f}ms)")
            details = e.to_dict()
            payload = {
                "error": details["error"],
                "message": details["message"],
                "developer": backend,
                "service": service,
            }
            payload.update(details)
            return RouteOutcome(
                status=e.status,
                payload=payload,
                backend_id=backend,
                duration_ms=e.duration_ms,
            )
        except Exception as e:
            # Health is left alone: nothing is known about the backend
            self.total_errors += 1
            duration_ms = (time.monotonic() - start) * 1000
            print(f"[{request_id}] [ERROR] Routing to {backend} failed: {e!r}")
            return RouteOutcome(
                status=500,
                payload={
                    "error": "Internal Server Error",
                    "message": str(e) or type(e).__name__,
                    "developer": backend,
                    "service": service,
                    "duration_ms": round(duration_ms),
                    "error_code": "EUNKNOWN",
                },
                backend_id=backend,
                duration_ms=duration_ms,
            )

        await self.health.report_success(backend)
        return RouteOutcome(
            status=result.status,
            body=result.body,
            headers=result.headers,
            content_type=result.content_type,
            backend_id=backend,
            duration_ms=result.duration_ms,
        )

    def get_stats(self) -> dict[str, Any]:
        """Counters for the /stats endpoint."""
        uptime = time.time() - self.start_time
        data = {
            "uptime_seconds": round(uptime, 2),
            "total_requests": self.total_requests,
            "total_errors": self.total_errors,
            "error_rate": round(self.total_errors / max(1, self.total_requests) * 100, 2),
            "requests_per_minute": round(self.total_requests / max(1, uptime / 60), 2),
            "strategy": self.strategy,
            "request_counts": self.health.request_counts(),
            "failure_counts": self.health.failure_counts(),
            "health_status": self.health.health_status(),
        }
        if self.deliveries is not None:
            data["deliveries"] = self.deliveries.get_status()
        return data
