"""Backend registry and shared balancer state."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Iterable, Optional

from webhook_balancer.config.schema import EndpointConfig

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class Backend:
    """A single developer backend and the services it serves."""
    backend_id: str
    endpoints: dict[str, str] = field(default_factory=dict)

    def endpoint(self, service: str) -> Optional[str]:
        # Empty URLs count as unconfigured
        return self.endpoints.get(service.lower()) or None


class BackendRegistry:
    """Backend id -> service -> base URL, fixed after construction.

    Iteration order is insertion order, which the selection strategies rely
    on for deterministic results.
    """

    def __init__(self, backends: Iterable[Backend] = ()):
        self._backends: dict[str, Backend] = {}
        for backend in backends:
            self._backends[backend.backend_id] = backend

    @classmethod
    def from_endpoints(
        cls,
        records: Iterable[EndpointConfig],
        declared: Iterable[str] = (),
    ) -> "BackendRegistry":
        """Build a registry from endpoint records.

        ``declared`` lists backend ids that exist even without endpoints;
        such backends are registered but never eligible.
        """
        mapping: dict[str, dict[str, str]] = {}
        for name in declared:
            mapping.setdefault(name.lower(), {})
        for record in records:
            endpoints = mapping.setdefault(record.backend.lower(), {})
            endpoints[record.service.lower()] = record.url.rstrip("/")
        return cls(Backend(backend_id=bid, endpoints=eps) for bid, eps in mapping.items())

    def list_backends(self) -> list[str]:
        """All backend ids in registration order."""
        return list(self._backends)

    def get(self, backend_id: str) -> Optional[Backend]:
        return self._backends.get(backend_id.lower())

    def get_endpoint(self, backend_id: str, service: str) -> Optional[str]:
        """Target base URL for a backend/service pair, or None."""
        backend = self.get(backend_id)
        if backend is None:
            return None
        return backend.endpoint(service)

    def services(self) -> list[str]:
        """Every service name configured on any backend."""
        seen: list[str] = []
        for backend in self._backends.values():
            for service in backend.endpoints:
                if service not in seen:
                    seen.append(service)
        return seen

    def to_dict(self) -> dict[str, dict[str, str]]:
        return {bid: dict(b.endpoints) for bid, b in self._backends.items()}


@dataclass
class BalancerState:
    """Mutable routing state shared by the selector and health tracker.

    Every read-modify-write of these fields must happen while ``lock`` is
    held, and the lock is never held across network I/O.
    """
    health: dict[str, str] = field(default_factory=dict)
    failures: dict[str, int] = field(default_factory=dict)
    request_counts: dict[str, int] = field(default_factory=dict)
    cursor: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @classmethod
    def for_registry(cls, registry: BackendRegistry) -> "BalancerState":
        """Create state with every registered backend healthy and idle."""
        state = cls()
        for backend_id in registry.list_backends():
            state.health[backend_id] = HEALTHY
            state.failures[backend_id] = 0
            state.request_counts[backend_id] = 0
        return state
