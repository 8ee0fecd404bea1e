"""Eligible-set construction and strategy dispatch."""

from __future__ import annotations

import random
from typing import Optional

from webhook_balancer.proxy.backend import BackendRegistry, BalancerState
from webhook_balancer.proxy.health import HealthTracker
from webhook_balancer.proxy.strategies import select_backend


class Selector:
    """Pick one healthy backend for a service."""

    def __init__(
        self,
        registry: BackendRegistry,
        health: HealthTracker,
        strategy: str = "round_robin",
        weights: Optional[dict[str, int]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.registry = registry
        self.health = health
        self.strategy = strategy
        self.weights = {k.lower(): v for k, v in (weights or {}).items()}
        self.rng = rng or random.Random()

    @property
    def state(self) -> BalancerState:
        return self.health.state

    def eligible(self, service: str) -> list[str]:
        """Backends configured for ``service`` and not marked unhealthy."""
        return [
            b for b in self.registry.list_backends()
            if self.registry.get_endpoint(b, service) and self.health.is_healthy(b)
        ]

    async def select(self, service: str, affinity_key: Optional[str] = None) -> Optional[str]:
        """Return a backend id for ``service`` or None when nothing is eligible.

        The eligible set, counts and cursor are read and the cursor written
        in one critical section.
        """
        async with self.state.lock:
            candidates = self.eligible(service)
            if not candidates:
                return None

            backend, self.state.cursor = select_backend(
                candidates,
                self.strategy,
                self.state.cursor,
                request_counts=self.state.request_counts,
                weights=self.weights,
                affinity_key=affinity_key,
                rng=self.rng,
            )
            return backend
