"""Pydantic configuration schemas for webhook-balancer."""

from typing import Literal, Optional
from pydantic import BaseModel, Field, model_validator


StrategyName = Literal["round_robin", "least_connections", "random", "weighted", "sticky"]

DEFAULT_FORWARD_HEADERS = [
    "Content-Type",
    "User-Agent",
    "X-Slack-Signature",
    "X-Slack-Request-Timestamp",
    "X-Slack-Retry-Num",
    "X-Slack-Retry-Reason",
]


class HeadersConfig(BaseModel):
    """Header names used for forwarding and routing decisions.

    ``forward`` is the allow-list copied onto the outbound request. The
    remaining names pick out the affinity and de-duplication inputs.
    """
    forward: list[str] = Field(
        default_factory=lambda: list(DEFAULT_FORWARD_HEADERS),
        description="Inbound headers copied to the backend",
    )
    signature: str = Field(default="X-Slack-Signature", description="Request signature header")
    timestamp: str = Field(default="X-Slack-Request-Timestamp", description="Request timestamp header")
    retry_num: str = Field(default="X-Slack-Retry-Num", description="Redelivery counter header")
    forwarded_for: str = Field(default="X-Forwarded-For", description="Client address header")
    user_agent: str = Field(default="Flush-Load-Balancer/1.0", description="Fallback User-Agent")


class BalancerConfig(BaseModel):
    """Routing and forwarding configuration."""
    port: int = Field(default=6000, description="Port for the relay server")
    strategy: StrategyName = Field(default="round_robin", description="Load balancing strategy")
    failure_threshold: int = Field(default=3, ge=1, description="Consecutive transient failures before unhealthy")
    attempt_timeout: float = Field(default=2.8, gt=0, description="Per-attempt timeout in seconds")
    overall_timeout: float = Field(default=3.0, gt=0, description="End-to-end budget in seconds")
    retry_margin: float = Field(default=1.5, ge=0, description="Minimum remaining budget to retry, in seconds")
    max_attempts: int = Field(default=2, ge=1, description="Attempts per forward, first try included")
    verbose: bool = Field(default=True, description="Enable verbose logging")

    @model_validator(mode="after")
    def _check_budget(self) -> "BalancerConfig":
        if self.attempt_timeout > self.overall_timeout:
            raise ValueError("attempt_timeout must not exceed overall_timeout")
        return self


class DedupConfig(BaseModel):
    """Redelivery de-duplication (best effort, in memory)."""
    enabled: bool = Field(default=True, description="Answer repeated deliveries without forwarding")
    max_entries: int = Field(default=1000, ge=1, description="Cache capacity")
    window_seconds: float = Field(default=60.0, gt=0, description="How long a delivery key is remembered")


class EndpointConfig(BaseModel):
    """One (backend, service) -> URL record."""
    backend: str = Field(description="Developer/backend identifier (case-insensitive)")
    service: str = Field(description="Service name, e.g. slack_app")
    url: str = Field(default="", description="Target base URL; empty disables the service")


class Config(BaseModel):
    """Root configuration for webhook-balancer."""
    version: str = Field(default="1.0", description="Config schema version")
    balancer: BalancerConfig = Field(default_factory=BalancerConfig, description="Balancer configuration")
    dedup: DedupConfig = Field(default_factory=DedupConfig, description="De-duplication configuration")
    headers: HeadersConfig = Field(default_factory=HeadersConfig, description="Header name configuration")
    backends: list[EndpointConfig] = Field(default_factory=list, description="Backend endpoint records")
    weights: dict[str, int] = Field(default_factory=dict, description="Static weights for the weighted strategy")

    @model_validator(mode="after")
    def _check_weights(self) -> "Config":
        for name, weight in self.weights.items():
            if weight < 1:
                raise ValueError(f"weight for {name!r} must be >= 1")
        return self

    def developer_names(self) -> list[str]:
        """Backend ids in first-seen order."""
        names: list[str] = []
        for record in self.backends:
            name = record.backend.lower()
            if name not in names:
                names.append(name)
        return names

    def get_weights(self) -> dict[str, int]:
        """Weights keyed by lower-cased backend id."""
        return {name.lower(): weight for name, weight in self.weights.items()}
