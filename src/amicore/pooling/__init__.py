"""Pooled manager-interface connections.

Provides the pooled connection state machine and the pool manager that
lends, reclaims, recycles and health-checks connections.
"""

from amicore.pooling.connection import ConnectionStats, PooledConnection
from amicore.pooling.manager import ConnectionPoolManager
from amicore.pooling.models import (
    ConnectionState,
    EndpointConfig,
    PoolConfig,
    PoolStats,
)

__all__ = [
    "ConnectionPoolManager",
    "PooledConnection",
    "ConnectionStats",
    "ConnectionState",
    "EndpointConfig",
    "PoolConfig",
    "PoolStats",
]
