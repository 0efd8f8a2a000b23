"""Pooled Asterisk manager-interface connections with circuit breaking.

Provides a bounded connection pool with warm-up, recycling and health
checks, and a circuit breaker whose state is shared across workers.
"""

from amicore.client import ManagerClient
from amicore.clock import Clock, ManualClock, SystemClock
from amicore.config import AmiSettings
from amicore.exceptions import (
    ActionExecutionError,
    AmiConnectionError,
    AmiCoreError,
    ConnectionEstablishmentError,
    InvalidStateError,
    PoolExhaustedError,
)
from amicore.metrics import AmiMetricsCollector
from amicore.pooling import (
    ConnectionPoolManager,
    ConnectionState,
    EndpointConfig,
    PoolConfig,
    PooledConnection,
    PoolStats,
)
from amicore.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpenError,
    CircuitBreakerState,
    CircuitStats,
    CircuitStoreError,
    InMemoryCircuitStore,
    RedisCircuitStore,
    ResilienceTimeoutError,
)
from amicore.session import LivenessCheck, Session, SessionFactory

__version__ = "0.1.0"

__all__ = [
    # Pool
    "ConnectionPoolManager",
    "PooledConnection",
    "ConnectionState",
    "EndpointConfig",
    "PoolConfig",
    "PoolStats",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerState",
    "CircuitStats",
    "InMemoryCircuitStore",
    "RedisCircuitStore",
    # Client
    "ManagerClient",
    "AmiSettings",
    "AmiMetricsCollector",
    # Sessions and time
    "Session",
    "SessionFactory",
    "LivenessCheck",
    "Clock",
    "SystemClock",
    "ManualClock",
    # Exceptions
    "AmiCoreError",
    "AmiConnectionError",
    "ConnectionEstablishmentError",
    "PoolExhaustedError",
    "InvalidStateError",
    "ActionExecutionError",
    "CircuitBreakerOpenError",
    "CircuitStoreError",
    "ResilienceTimeoutError",
]
