"""Load-balancing webhook relay."""

from webhook_balancer.proxy.server import RelayServer, parse_backends
from webhook_balancer.proxy.backend import Backend, BackendRegistry, BalancerState
from webhook_balancer.proxy.health import HealthTracker
from webhook_balancer.proxy.selector import Selector
from webhook_balancer.proxy.forwarder import (
    Forwarder,
    ForwardError,
    ForwardTimeout,
    ForwardConnectionError,
    UpstreamError,
    ForwardResult,
    RelayRequest,
)
from webhook_balancer.proxy.router import Router, RouteOutcome
from webhook_balancer.proxy.tracker import DeliveryKey, DeliveryTracker
from webhook_balancer.proxy.strategies import STRATEGIES

__all__ = [
    "RelayServer",
    "parse_backends",
    "Backend",
    "BackendRegistry",
    "BalancerState",
    "HealthTracker",
    "Selector",
    "Forwarder",
    "ForwardError",
    "ForwardTimeout",
    "ForwardConnectionError",
    "UpstreamError",
    "ForwardResult",
    "RelayRequest",
    "Router",
    "RouteOutcome",
    "DeliveryKey",
    "DeliveryTracker",
    "STRATEGIES",
]
