"""
Prometheus Metrics for Pooled Connections and Circuit Breakers

Provides:
- Pool size, active and idle gauges
- Acquisition counters and latency histograms by source (pool, new, direct)
- Circuit state gauges and call outcome counters per circuit
"""

from __future__ import annotations

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

from amicore.pooling.models import PoolStats
from amicore.resilience.models import CircuitBreakerState

logger = structlog.get_logger(__name__)

CIRCUIT_STATE_VALUES: dict[CircuitBreakerState, int] = {
    CircuitBreakerState.CLOSED: 0,
    CircuitBreakerState.HALF_OPEN: 1,
    CircuitBreakerState.OPEN: 2,
}


class AmiMetricsCollector:
    """
    Collects and exposes Prometheus metrics for the pool and circuit breaker.

    Usage:
        ```python
        metrics = AmiMetricsCollector()
        pool = ConnectionPoolManager(factory, config, metrics=metrics)
        breaker = CircuitBreaker(store, metrics=metrics)
        ```
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """
        Initialize metrics collector.

        Args:
            registry: Prometheus registry (creates new if None)
        """
        self._registry = registry or CollectorRegistry()

        self._init_pool_metrics()
        self._init_circuit_metrics()

        logger.info(
            "ami_metrics_initialized",
            registry_id=id(self._registry),
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def _init_pool_metrics(self) -> None:
        """Initialize connection pool gauges, counters and histograms."""
        self.pool_size = Gauge(
            "ami_connection_pool_size",
            "Current connection pool size",
            registry=self._registry,
        )
        self.pool_active = Gauge(
            "ami_connection_pool_active",
            "Active connections in pool",
            registry=self._registry,
        )
        self.pool_idle = Gauge(
            "ami_connection_pool_idle",
            "Idle connections in pool",
            registry=self._registry,
        )
        self.acquisitions_total = Counter(
            "ami_connection_acquisitions_total",
            "Connections handed out, by source",
            ["source"],
            registry=self._registry,
        )
        # Acquire latency ranges from an immediate pool hit to a full
        # acquire timeout spent waiting for a release
        self.acquire_seconds = Histogram(
            "ami_connection_acquire_seconds",
            "Time spent acquiring a connection",
            ["source"],
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
            registry=self._registry,
        )

    def _init_circuit_metrics(self) -> None:
        """Initialize circuit breaker gauges and counters."""
        self.circuit_state = Gauge(
            "ami_circuit_breaker_state",
            "Circuit state (0=closed, 1=half_open, 2=open)",
            ["circuit"],
            registry=self._registry,
        )
        self.circuit_calls_total = Counter(
            "ami_circuit_breaker_calls_total",
            "Calls through the circuit breaker, by outcome",
            ["circuit", "outcome"],
            registry=self._registry,
        )

    def record_connection_acquisition(self, source: str, duration: float) -> None:
        """
        Record one successful acquire.

        Args:
            source: "pool", "new" or "direct"
            duration: Seconds the acquire took
        """
        self.acquisitions_total.labels(source=source).inc()
        self.acquire_seconds.labels(source=source).observe(duration)

    def update_pool(self, stats: PoolStats) -> None:
        """Copy pool statistics into the pool gauges."""
        self.pool_size.set(stats.pool_size)
        self.pool_active.set(stats.in_use_connections)
        self.pool_idle.set(stats.available_connections)

    def record_circuit_state(self, circuit: str, state: CircuitBreakerState) -> None:
        self.circuit_state.labels(circuit=circuit).set(CIRCUIT_STATE_VALUES[state])

    def record_circuit_call(self, circuit: str, outcome: str) -> None:
        """
        Record a call outcome.

        Args:
            circuit: Circuit name
            outcome: "success", "failure" or "rejected"
        """
        self.circuit_calls_total.labels(circuit=circuit, outcome=outcome).inc()
