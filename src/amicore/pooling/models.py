"""Connection pool data models.

Pydantic models for endpoint and pool configuration, and the statistics
reported by pooled connections and the pool manager.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ConnectionState(str, Enum):
    """Pooled connection state enumeration.

    States:
        CONNECTING: Session is being opened
        IDLE: Connected and available for lease
        IN_USE: Leased to exactly one caller
        DISCONNECTED: Closed, either never opened or torn down
        ERROR: Opening the session failed
    """

    CONNECTING = "connecting"
    IDLE = "idle"
    IN_USE = "in_use"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class EndpointConfig(BaseModel):
    """Manager-interface endpoint the pool connects to.

    Only used to label connections and errors. Socket settings belong to the
    session factory; the session open timeout is
    ``PoolConfig.connection_timeout``.
    """

    host: str = Field(default="127.0.0.1", description="Endpoint host")
    port: int = Field(default=5038, ge=1, le=65535, description="Endpoint port")

    model_config = {"frozen": True, "extra": "forbid"}

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


class PoolConfig(BaseModel):
    """Connection pool configuration.

    Controls sizing, warm-up, recycling and health monitoring.
    """

    enabled: bool = Field(
        default=False,
        description="Pool connections; when false every acquire opens a new one",
    )

    min_connections: int = Field(
        default=2,
        ge=0,
        description="Connections kept open even when idle",
    )

    max_connections: int = Field(
        default=10,
        ge=1,
        description="Upper bound on pooled connections",
    )

    max_idle_time: float = Field(
        default=300.0,
        gt=0,
        description="Seconds an idle connection may sit unused before eviction",
    )

    max_connection_age: float = Field(
        default=3600.0,
        gt=0,
        description="Seconds after which a connection is retired",
    )

    health_check_interval: float = Field(
        default=60.0,
        ge=0,
        description="Minimum seconds between liveness checks of one connection",
    )

    connection_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds allowed for opening a session",
    )

    acquire_timeout: float = Field(
        default=5.0,
        ge=0,
        description="Default seconds acquire waits for a free connection",
    )

    cleanup_interval: float = Field(
        default=300.0,
        gt=0,
        description="Seconds between background cleanup sweeps",
    )

    enable_connection_recycling: bool = Field(
        default=True,
        description="Retire connections past their age or request budget",
    )

    enable_health_monitoring: bool = Field(
        default=True,
        description="Check connection liveness every health_check_interval",
    )

    max_requests_per_connection: int = Field(
        default=1000,
        ge=1,
        description="Requests a connection serves before it is recycled",
    )

    model_config = {"frozen": True}

    @property
    def min_pool_size(self) -> int:
        """Floor that cleanup and warm-up fill up to."""
        return min(self.min_connections, self.max_connections)


class PoolStats(BaseModel):
    """Connection pool runtime statistics."""

    enabled: bool
    pool_size: int = Field(default=0, ge=0)
    available_connections: int = Field(default=0, ge=0)
    in_use_connections: int = Field(default=0, ge=0)
    total_created: int = Field(default=0, ge=0)
    total_destroyed: int = Field(default=0, ge=0)
    current_active: int = Field(default=0, ge=0)
    current_idle: int = Field(default=0, ge=0)
    total_requests: int = Field(default=0, ge=0)
    pool_hits: int = Field(default=0, ge=0)
    pool_misses: int = Field(default=0, ge=0)
    connection_errors: int = Field(default=0, ge=0)
    acquire_timeouts: int = Field(default=0, ge=0)
    last_cleanup: datetime | None = None
