"""Load balancing strategies for backend selection."""

from __future__ import annotations

import random
from typing import Optional

# Available strategies
STRATEGIES = ["round_robin", "least_connections", "random", "weighted", "sticky"]

DEFAULT_WEIGHT = 1


def affinity_hash(key: str) -> int:
    """Stable non-negative hash of an affinity key.

    Uses the 31-multiplier string hash over UTF-16 code units, wrapped to
    signed 32 bits, so the same key maps to the same value across processes
    and restarts.
    """
    data = key.encode("utf-16-le", "surrogatepass")
    h = 0
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def select_backend(
    backends: list[str],
    strategy: str,
    current_index: int,
    request_counts: Optional[dict[str, int]] = None,
    weights: Optional[dict[str, int]] = None,
    affinity_key: Optional[str] = None,
    rng: Optional[random.Random] = None,
) -> tuple[str, int]:
    """Select a backend using the specified strategy.

    Args:
        backends: Eligible backend ids, in registry order
        strategy: Load balancing strategy name
        current_index: Current rotation cursor
        request_counts: Successful forwards per backend (least_connections)
        weights: Static weights per backend (weighted)
        affinity_key: Session/signature/IP value (sticky)
        rng: Random source (random, weighted)

    Returns:
        Tuple of (selected backend id, new cursor)
    """
    if not backends:
        raise ValueError("No backends available")

    rng = rng or random
    n = len(backends)

    if strategy == "least_connections":
        counts = request_counts or {}
        # min() keeps the first of equal candidates
        backend = min(backends, key=lambda b: counts.get(b, 0))
        return backend, current_index

    elif strategy == "random":
        return backends[rng.randrange(n)], current_index

    elif strategy == "weighted":
        weights = weights or {}
        total = sum(weights.get(b, DEFAULT_WEIGHT) for b in backends)
        remaining = rng.uniform(0, total)
        for b in backends:
            remaining -= weights.get(b, DEFAULT_WEIGHT)
            if remaining <= 0:
                return b, current_index
        return backends[0], current_index

    elif strategy == "sticky" and affinity_key:
        return backends[affinity_hash(affinity_key) % n], current_index

    # round_robin, sticky without a key, and unknown names
    backend = backends[current_index % n]
    return backend, (current_index + 1) % n
