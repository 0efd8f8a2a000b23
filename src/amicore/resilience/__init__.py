"""Circuit breaking for manager-interface calls.

Provides a named-circuit breaker whose state lives in a shared store, plus
timeout enforcement and configuration presets.
"""

from amicore.resilience.circuit_breaker import CircuitBreaker, circuit_breaker
from amicore.resilience.config import (
    create_ami_circuit_breaker,
    create_default_circuit_breaker,
)
from amicore.resilience.exceptions import (
    CircuitBreakerOpenError,
    CircuitStoreError,
    ResilienceError,
    ResilienceTimeoutError,
)
from amicore.resilience.models import (
    CircuitBreakerConfig,
    CircuitBreakerState,
    CircuitRecord,
    CircuitStats,
)
from amicore.resilience.store import (
    CircuitStore,
    InMemoryCircuitStore,
    RedisCircuitStore,
)
from amicore.resilience.timeout import with_timeout_direct

__all__ = [
    # Circuit Breaker
    "CircuitBreaker",
    "circuit_breaker",
    "CircuitBreakerConfig",
    "CircuitBreakerState",
    "CircuitRecord",
    "CircuitStats",
    # Stores
    "CircuitStore",
    "InMemoryCircuitStore",
    "RedisCircuitStore",
    # Timeout
    "with_timeout_direct",
    # Config Helpers
    "create_default_circuit_breaker",
    "create_ami_circuit_breaker",
    # Exceptions
    "ResilienceError",
    "CircuitBreakerOpenError",
    "CircuitStoreError",
    "ResilienceTimeoutError",
]
