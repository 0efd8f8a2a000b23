"""
Manager Client

Sends requests over pooled connections under circuit breaker protection.
This is the seam business operations (originate, queue and channel control)
call into.
"""

from __future__ import annotations

from typing import Any, Generic

import structlog

from amicore.config import AmiSettings
from amicore.metrics import AmiMetricsCollector
from amicore.pooling.manager import ConnectionPoolManager
from amicore.resilience.circuit_breaker import CircuitBreaker, Fallback
from amicore.resilience.exceptions import CircuitStoreError
from amicore.session import RequestT, ResponseT, SessionFactory

logger = structlog.get_logger(__name__)


class ManagerClient(Generic[RequestT, ResponseT]):
    """
    Request/response client over a connection pool.

    Each ``send`` acquires a connection, sends one request and releases the
    connection, all inside the circuit named ``circuit_name`` when a breaker
    is configured.
    """

    def __init__(
        self,
        pool: ConnectionPoolManager[RequestT, ResponseT],
        breaker: CircuitBreaker | None = None,
        circuit_name: str = "ami",
    ) -> None:
        """
        Initialize manager client.

        Args:
            pool: Connection pool to lease connections from
            breaker: Optional circuit breaker guarding every send
            circuit_name: Circuit used for this endpoint
        """
        self.pool = pool
        self.breaker = breaker
        self.circuit_name = circuit_name

    @classmethod
    def from_settings(
        cls,
        session_factory: SessionFactory[RequestT, ResponseT],
        settings: AmiSettings | None = None,
        metrics: AmiMetricsCollector | None = None,
    ) -> ManagerClient[RequestT, ResponseT]:
        """Build pool, circuit store and breaker from settings."""
        settings = settings or AmiSettings()

        pool: ConnectionPoolManager[RequestT, ResponseT] = ConnectionPoolManager(
            session_factory,
            settings.connection_pool,
            endpoint=settings.connection,
            metrics=metrics,
        )
        breaker = CircuitBreaker(
            settings.create_circuit_store(),
            settings.circuit_breaker,
            metrics=metrics,
        )
        return cls(pool, breaker, settings.circuit_name)

    async def send(
        self,
        request: RequestT,
        fallback: Fallback = None,
        timeout: float | None = None,
    ) -> ResponseT:
        """
        Send a request over a pooled connection.

        Args:
            request: Opaque request
            fallback: Used when the circuit is open
            timeout: Acquire timeout (defaults to the pool's)

        Returns:
            Response, or the fallback result when the circuit is open
        """

        async def operation() -> ResponseT:
            async with self.pool.connection(timeout) as connection:
                return await connection.send(request)

        if self.breaker is None:
            return await operation()

        return await self.breaker.call(self.circuit_name, operation, fallback)

    async def health(self) -> dict[str, Any]:
        """
        Report pool and circuit health.

        Healthy means the circuit is closed with a low failure rate and, when
        pooling is enabled, a connection is idle or can still be opened. An
        unreachable circuit store reports the circuit as unhealthy.
        """
        pool_stats = self.pool.get_stats()

        pool_ok = (
            not pool_stats.enabled
            or pool_stats.available_connections > 0
            or pool_stats.pool_size < self.pool.config.max_connections
        )

        result: dict[str, Any] = {"pool": pool_stats.model_dump(mode="json")}
        circuit_ok = True

        if self.breaker is not None:
            try:
                circuit_ok = await self.breaker.is_healthy(self.circuit_name)
                stats = await self.breaker.get_stats(self.circuit_name)
                result["circuit"] = stats.model_dump(mode="json")
            except CircuitStoreError as e:
                circuit_ok = False
                result["circuit"] = {"error": str(e)}

        result["healthy"] = pool_ok and circuit_ok

        if not result["healthy"]:
            logger.warning(
                "manager_client_unhealthy",
                pool_ok=pool_ok,
                circuit_ok=circuit_ok,
            )

        return result

    async def start(self) -> None:
        await self.pool.start()

    async def stop(self) -> None:
        await self.pool.stop()

    async def __aenter__(self) -> ManagerClient[RequestT, ResponseT]:
        """Enter async context manager."""
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit async context manager."""
        await self.stop()
