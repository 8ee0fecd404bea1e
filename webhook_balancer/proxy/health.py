"""Backend health tracking driven by forward outcomes."""

from __future__ import annotations

from webhook_balancer.proxy.backend import HEALTHY, UNHEALTHY, BalancerState

DEFAULT_FAILURE_THRESHOLD = 3


class HealthTracker:
    """Marks backends unhealthy after repeated failures and restores them on success.

    A backend that was never reported on is healthy. Transient failures
    accumulate until ``failure_threshold`` is reached; a refused connection
    demotes the backend at once. Any success clears the counter.
    """

    def __init__(
        self,
        state: BalancerState,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        verbose: bool = False,
    ):
        self.state = state
        self.failure_threshold = failure_threshold
        self.verbose = verbose

    def is_healthy(self, backend_id: str) -> bool:
        backend_id = backend_id.lower()
        return self.state.health.get(backend_id, HEALTHY) != UNHEALTHY

    async def report_success(self, backend_id: str):
        """Record a successful forward."""
        backend_id = backend_id.lower()
        async with self.state.lock:
            self._mark_success(backend_id)

    async def report_failure(self, backend_id: str, transient: bool):
        """Record a transport failure."""
        backend_id = backend_id.lower()
        async with self.state.lock:
            self._mark_failure(backend_id, transient)

    async def reset_all(self) -> dict[str, str]:
        """Set every known backend healthy with a zero failure counter.

        Request counts are left alone. Returns the new health_status map.
        """
        async with self.state.lock:
            for backend_id in list(self.state.health) + list(self.state.failures):
                self.state.health[backend_id] = HEALTHY
                self.state.failures[backend_id] = 0
            return dict(self.state.health)

    def _mark_success(self, backend_id: str):
        state = self.state
        if state.failures.get(backend_id) and self.verbose:
            print(f"[HEALTH] Reset failure counter for {backend_id}")
        if state.health.get(backend_id) == UNHEALTHY and self.verbose:
            print(f"[HEALTH] Backend {backend_id} recovered")
        state.health[backend_id] = HEALTHY
        state.failures[backend_id] = 0
        state.request_counts[backend_id] = state.request_counts.get(backend_id, 0) + 1

    def _mark_failure(self, backend_id: str, transient: bool):
        state = self.state
        if not transient:
            state.health[backend_id] = UNHEALTHY
            if self.verbose:
                print(f"[HEALTH] Marked {backend_id} as unhealthy (connection refused)")
            return

        count = state.failures.get(backend_id, 0) + 1
        state.failures[backend_id] = count
        state.health.setdefault(backend_id, HEALTHY)
        if self.verbose:
            print(f"[HEALTH] Connection issue with {backend_id} ({count}/{self.failure_threshold} failures)")
        if count >= self.failure_threshold:
            state.health[backend_id] = UNHEALTHY
            if self.verbose:
                print(f"[HEALTH] Marked {backend_id} as unhealthy after {count} consecutive failures")

    def health_status(self) -> dict[str, str]:
        return dict(self.state.health)

    def request_counts(self) -> dict[str, int]:
        return dict(self.state.request_counts)

    def failure_counts(self) -> dict[str, int]:
        return dict(self.state.failures)
