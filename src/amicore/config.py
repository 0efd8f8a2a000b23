"""
Settings

Loads endpoint, pool and circuit breaker configuration from the environment.

Environment Variables (prefix ``ASTERISK_``, nested delimiter ``__``):
- ASTERISK_CONNECTION__HOST / ASTERISK_CONNECTION__PORT
- ASTERISK_CONNECTION_POOL__ENABLED (default: false)
- ASTERISK_CONNECTION_POOL__MAX_CONNECTIONS (default: 10)
- ASTERISK_CIRCUIT_BREAKER__FAILURE_THRESHOLD (default: 5)
- ASTERISK_CIRCUIT_BREAKER_REDIS_URL: shared circuit store; in-memory when unset

Example:
    >>> settings = AmiSettings()
    >>> settings.connection_pool.max_connections
    10
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from amicore.pooling.models import EndpointConfig, PoolConfig
from amicore.resilience.models import CircuitBreakerConfig
from amicore.resilience.store import (
    CircuitStore,
    InMemoryCircuitStore,
    RedisCircuitStore,
)


class AmiSettings(BaseSettings):
    """Top-level configuration for the pool and circuit breaker."""

    connection: EndpointConfig = Field(default_factory=EndpointConfig)
    connection_pool: PoolConfig = Field(default_factory=PoolConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)

    circuit_breaker_redis_url: str | None = Field(
        default=None,
        description="Redis URL for circuit state shared across workers",
    )
    circuit_name: str = Field(
        default="ami",
        min_length=1,
        description="Circuit guarding calls to the endpoint",
    )

    model_config = SettingsConfigDict(
        env_prefix="ASTERISK_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    def create_circuit_store(self) -> CircuitStore:
        """Build the circuit store named by the settings."""
        if self.circuit_breaker_redis_url:
            return RedisCircuitStore.from_url(self.circuit_breaker_redis_url)
        return InMemoryCircuitStore()
