"""Configuration system for webhook-balancer."""

from webhook_balancer.config.schema import (
    Config,
    BalancerConfig,
    DedupConfig,
    EndpointConfig,
    HeadersConfig,
)
from webhook_balancer.config.loader import (
    load_config,
    load_config_or_default,
    apply_env_overrides,
    parse_developer_env,
)

__all__ = [
    "Config",
    "BalancerConfig",
    "DedupConfig",
    "EndpointConfig",
    "HeadersConfig",
    "load_config",
    "load_config_or_default",
    "apply_env_overrides",
    "parse_developer_env",
]
