"""
Webhook Balancer - load-balancing relay for Slack webhooks.

This package provides:
- Routing of Slack events, interactions and OAuth callbacks across developer backends
- Pluggable selection strategies (round robin, least connections, random, weighted, sticky)
- Failure-driven backend health tracking
- Signature-preserving forwarding under Slack's 3-second deadline
"""

from webhook_balancer.config import load_config, Config
from webhook_balancer.proxy import RelayServer, Router

__version__ = "0.1.0"

__all__ = [
    "load_config",
    "Config",
    "RelayServer",
    "Router",
    "__version__",
]
