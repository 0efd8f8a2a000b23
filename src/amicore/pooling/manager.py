"""
Connection Pool Manager

Bounded pool of long-lived manager-interface connections with warm-up,
health checking, recycling and periodic cleanup.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Generic
from uuid import uuid4

import structlog

from amicore.clock import Clock, SystemClock
from amicore.exceptions import ConnectionEstablishmentError, PoolExhaustedError
from amicore.pooling.connection import PooledConnection
from amicore.pooling.models import (
    ConnectionState,
    EndpointConfig,
    PoolConfig,
    PoolStats,
)
from amicore.session import RequestT, ResponseT, SessionFactory

if TYPE_CHECKING:
    from amicore.metrics import AmiMetricsCollector

logger = structlog.get_logger(__name__)


@dataclass
class _PoolCounters:
    total_created: int = 0
    total_destroyed: int = 0
    total_requests: int = 0
    pool_hits: int = 0
    pool_misses: int = 0
    connection_errors: int = 0
    acquire_timeouts: int = 0
    last_cleanup: datetime | None = None


class ConnectionPoolManager(Generic[RequestT, ResponseT]):
    """
    Pool of reusable manager-interface connections.

    The connection table lives in this process; all mutations of it happen
    under one asyncio lock. No session I/O runs under that lock: sessions
    are opened against a reserved slot, health checked while leased and closed after
    leaving the table. ``pool_size + reserved <= max_connections`` holds at
    every await point.

    Usage:
        ```python
        async with ConnectionPoolManager(session_factory, config) as pool:
            async with pool.connection() as conn:
                response = await conn.send(request)
        ```
    """

    def __init__(
        self,
        session_factory: SessionFactory[RequestT, ResponseT],
        config: PoolConfig | None = None,
        *,
        endpoint: EndpointConfig | None = None,
        clock: Clock | None = None,
        metrics: AmiMetricsCollector | None = None,
    ) -> None:
        """
        Initialize connection pool manager.

        No connection is opened here; call ``start()`` (or enter the pool as
        an async context manager) to warm up and schedule cleanup.

        Args:
            session_factory: Returns a fresh, unopened session per call
            config: Pool configuration
            endpoint: Endpoint the sessions connect to, for errors and logs
            clock: Time source
            metrics: Optional Prometheus collector
        """
        self._session_factory = session_factory
        self.config = config or PoolConfig()
        self.endpoint = endpoint or EndpointConfig()
        self._clock = clock or SystemClock()
        self._metrics = metrics

        self._connections: dict[str, PooledConnection[RequestT, ResponseT]] = {}
        self._lock = asyncio.Lock()
        self._available = asyncio.Condition(self._lock)
        self._reserved = 0

        self._cleanup_lock = asyncio.Lock()
        self._cleanup_task: asyncio.Task[None] | None = None
        self._started = False

        self._counters = _PoolCounters()

        logger.info(
            "connection_pool_initialized",
            enabled=self.config.enabled,
            endpoint=self.endpoint.address,
            min_connections=self.config.min_connections,
            max_connections=self.config.max_connections,
        )

    def is_enabled(self) -> bool:
        return self.config.enabled

    @property
    def size(self) -> int:
        """Number of connections currently in the pool table."""
        return len(self._connections)

    async def start(self) -> None:
        """Warm up the pool and start the background cleanup task."""
        if self._started:
            logger.warning("connection_pool_already_started")
            return

        self._started = True
        self._counters.last_cleanup = self._clock.now()

        if not self.is_enabled():
            return

        if self.config.min_connections > 0:
            await self.warm_up()

        self._cleanup_task = asyncio.create_task(self._run_cleanup())
        logger.info(
            "connection_pool_started",
            cleanup_interval=self.config.cleanup_interval,
        )

    async def stop(self) -> None:
        """Stop background cleanup and close every connection."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        await self.close_all()
        self._started = False

    async def acquire(
        self, timeout: float | None = None
    ) -> PooledConnection[RequestT, ResponseT]:
        """
        Lease a connection.

        Returns an idle healthy connection when one exists, otherwise opens a
        new one while below ``max_connections``, otherwise waits for a
        release until ``timeout`` elapses.

        Args:
            timeout: Seconds to wait for a free connection
                (defaults to ``acquire_timeout``)

        Returns:
            Connection in IN_USE state, leased to the caller only

        Raises:
            ConnectionEstablishmentError: If a new session cannot be opened
            PoolExhaustedError: If no connection became free in time
        """
        timeout = self.config.acquire_timeout if timeout is None else timeout
        start = self._clock.monotonic()
        self._counters.total_requests += 1

        if not self.is_enabled():
            connection = await self._create_direct_connection()
            self._record_acquire(connection, "direct", start)
            return connection

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            async with self._available:
                while True:
                    candidate = self._lease_idle()
                    if candidate is not None:
                        break

                    if self._can_create_connection():
                        self._reserved += 1
                        break

                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        self._counters.acquire_timeouts += 1
                        logger.warning(
                            "connection_pool_exhausted",
                            endpoint=self.endpoint.address,
                            timeout=timeout,
                            pool_size=len(self._connections),
                        )
                        raise PoolExhaustedError(
                            self.endpoint.host, self.endpoint.port, timeout
                        )

                    try:
                        await asyncio.wait_for(self._available.wait(), remaining)
                    except asyncio.TimeoutError:
                        pass

            if candidate is None:
                break

            # Checked outside the lock; the lease keeps other callers off it
            if await self._check_leased(candidate):
                self._counters.pool_hits += 1
                self._record_acquire(candidate, "pool", start)
                return candidate

        connection = None
        try:
            connection = await self._open_connection()
        finally:
            async with self._available:
                self._reserved -= 1
                if connection is not None:
                    self._register(connection)
                    connection.mark_as_in_use()
                    self._counters.pool_misses += 1
                else:
                    self._available.notify()

        self._record_acquire(connection, "new", start)
        return connection

    async def release(self, connection: PooledConnection[RequestT, ResponseT]) -> None:
        """
        Return a leased connection.

        Unhealthy or exhausted connections are destroyed instead of being
        returned to service. Raises only on cancellation.

        Args:
            connection: Connection previously returned by ``acquire``
        """
        if not self.is_enabled() or not connection.pooled:
            await connection.close()
            return

        if self._connections.get(connection.id) is not connection:
            # Already destroyed, e.g. by close_all while leased
            await connection.close()
            return

        try:
            keep = await connection.is_healthy() and not connection.should_recycle()
        except asyncio.CancelledError:
            await self._discard(connection)
            raise
        except Exception as e:
            logger.error(
                "connection_pool_release_failed",
                connection_id=connection.id,
                error=str(e),
            )
            keep = False

        if not keep:
            await self._discard(connection)
            return

        async with self._available:
            returned = self._connections.get(connection.id) is connection
            if returned:
                connection.mark_as_available()
                connection.last_used_at = self._clock.now()
                self._available.notify()

        if not returned:
            await connection.close()
            return

        logger.debug(
            "connection_pool_release",
            connection_id=connection.id,
            requests_handled=connection.request_count,
            connection_age=connection.age,
        )
        self._update_metrics()

    @asynccontextmanager
    async def connection(
        self, timeout: float | None = None
    ) -> AsyncIterator[PooledConnection[RequestT, ResponseT]]:
        """Lease a connection for the duration of an ``async with`` block."""
        conn = await self.acquire(timeout)
        try:
            yield conn
        finally:
            await self.release(conn)

    async def warm_up(self) -> int:
        """
        Open connections up to ``min_connections``.

        Stops at the first failure.

        Returns:
            Number of connections actually created
        """
        target = self.config.min_pool_size
        created = await self._fill_to(target)

        logger.info(
            "connection_pool_warmed_up",
            target_connections=target,
            created_connections=created,
            pool_size=len(self._connections),
        )
        return created

    async def cleanup(self) -> None:
        """
        Evict idle, aged and unhealthy connections, then refill to the minimum.

        Only IDLE connections are considered. The minimum size is respected
        except for connections past ``max_connection_age``. Connections due a
        liveness check are leased while checked so ``acquire`` skips them. A
        concurrent call while a sweep is running returns immediately.
        """
        if self._cleanup_lock.locked():
            logger.debug("connection_pool_cleanup_skipped")
            return

        async with self._cleanup_lock:
            now = self._clock.now()
            max_idle = self.config.max_idle_time
            max_age = self.config.max_connection_age
            floor = self.config.min_connections

            doomed: list[PooledConnection[RequestT, ResponseT]] = []
            checking: list[tuple[PooledConnection[RequestT, ResponseT], datetime]] = []

            async with self._available:
                remaining = len(self._connections)

                for connection in list(self._connections.values()):
                    if connection.state != ConnectionState.IDLE:
                        continue

                    age = connection.age
                    if remaining <= floor and age < max_age:
                        continue

                    idle_time = (now - connection.last_used_at).total_seconds()

                    if (
                        idle_time > max_idle
                        or age > max_age
                        or not connection.is_available()
                    ):
                        self._forget(connection)
                        doomed.append(connection)
                        remaining -= 1
                    elif connection.health_check_due():
                        checking.append((connection, connection.last_used_at))
                        connection.mark_as_in_use()

                if doomed:
                    self._available.notify(len(doomed))

            for connection in doomed:
                await connection.close()

            for connection, last_used in checking:
                if not await connection.is_healthy():
                    await self._discard(connection)
                    doomed.append(connection)
                    continue

                async with self._available:
                    if self._connections.get(connection.id) is connection:
                        connection.mark_as_available()
                        connection.last_used_at = last_used
                        self._available.notify()

            destroyed = len(doomed)
            created = await self._fill_to(self.config.min_pool_size)

            self._counters.last_cleanup = now
            self._update_metrics()

            logger.info(
                "connection_pool_cleanup_completed",
                destroyed=destroyed,
                created=created,
                pool_size=len(self._connections),
            )

    async def close_all(self) -> None:
        """Destroy every connection, leased or not."""
        async with self._available:
            doomed = list(self._connections.values())
            for connection in doomed:
                self._forget(connection)
            self._available.notify_all()

        for connection in doomed:
            await connection.close()

        self._update_metrics()
        logger.info("connection_pool_closed", destroyed=len(doomed))

    def get_stats(self) -> PoolStats:
        """Get pool statistics."""
        available = self._count_available()
        in_use = self._count_in_use()

        return PoolStats(
            enabled=self.is_enabled(),
            pool_size=len(self._connections),
            available_connections=available,
            in_use_connections=in_use,
            current_active=in_use,
            current_idle=available,
            total_created=self._counters.total_created,
            total_destroyed=self._counters.total_destroyed,
            total_requests=self._counters.total_requests,
            pool_hits=self._counters.pool_hits,
            pool_misses=self._counters.pool_misses,
            connection_errors=self._counters.connection_errors,
            acquire_timeouts=self._counters.acquire_timeouts,
            last_cleanup=self._counters.last_cleanup,
        )

    def get_pool(self) -> dict[str, PooledConnection[RequestT, ResponseT]]:
        """Snapshot of the connection table, for debugging."""
        return dict(self._connections)

    def _lease_idle(self) -> PooledConnection[RequestT, ResponseT] | None:
        """Lease the first IDLE connection unchecked. Caller holds the lock."""
        for connection in self._connections.values():
            if connection.state == ConnectionState.IDLE:
                connection.mark_as_in_use()
                return connection

        return None

    async def _check_leased(
        self, connection: PooledConnection[RequestT, ResponseT]
    ) -> bool:
        """
        Health check a freshly leased connection outside the lock.

        Connections failing the check are destroyed so their slots can be
        refilled.
        """
        try:
            healthy = await connection.is_healthy()
        except asyncio.CancelledError:
            await self._discard(connection)
            raise

        if healthy and connection.is_in_use():
            return True

        logger.info(
            "connection_pool_unhealthy_connection_evicted",
            connection_id=connection.id,
        )
        await self._discard(connection)
        return False

    def _can_create_connection(self) -> bool:
        return len(self._connections) + self._reserved < self.config.max_connections

    async def _open_connection(self) -> PooledConnection[RequestT, ResponseT]:
        """Create and connect a pooled connection without registering it."""
        connection = self._new_connection(pooled=True)

        try:
            await connection.connect()
        except ConnectionEstablishmentError:
            self._counters.connection_errors += 1
            await connection.close()
            raise

        self._counters.total_created += 1
        logger.info(
            "connection_pool_connection_created",
            connection_id=connection.id,
            pool_size=len(self._connections) + 1,
        )
        return connection

    async def _create_direct_connection(self) -> PooledConnection[RequestT, ResponseT]:
        """Open a one-off connection that bypasses the pool."""
        connection = self._new_connection(pooled=False)

        try:
            await connection.connect()
        except ConnectionEstablishmentError:
            self._counters.connection_errors += 1
            await connection.close()
            raise

        connection.mark_as_in_use()
        return connection

    def _new_connection(self, pooled: bool) -> PooledConnection[RequestT, ResponseT]:
        try:
            session = self._session_factory()
        except Exception as e:
            self._counters.connection_errors += 1
            logger.error(
                "connection_pool_session_factory_failed",
                endpoint=self.endpoint.address,
                error=str(e),
            )
            raise ConnectionEstablishmentError(
                self.endpoint.host,
                self.endpoint.port,
                f"Failed to create new pooled connection: {e}",
            ) from e

        return PooledConnection(
            session,
            self._generate_connection_id(),
            self.config,
            endpoint=self.endpoint,
            pooled=pooled,
            clock=self._clock,
        )

    async def _fill_to(self, target: int) -> int:
        """
        Open IDLE connections until the pool holds ``target`` of them.

        Stops at the first creation failure, which is logged and contained.

        Returns:
            Number of connections created
        """
        async with self._available:
            target = min(target, self.config.max_connections)
            needed = target - len(self._connections) - self._reserved
            if needed <= 0:
                return 0
            self._reserved += needed

        created = 0
        try:
            for _ in range(needed):
                try:
                    connection = await self._open_connection()
                except ConnectionEstablishmentError as e:
                    logger.error(
                        "connection_pool_fill_failed",
                        error=str(e),
                        created=created,
                        needed=needed,
                    )
                    break

                async with self._available:
                    self._reserved -= 1
                    created += 1
                    self._register(connection)
                    connection.mark_as_available()
                    self._available.notify()
        finally:
            leftover = needed - created
            if leftover:
                async with self._available:
                    self._reserved -= leftover
                    self._available.notify(leftover)

        self._update_metrics()
        return created

    def _register(self, connection: PooledConnection[RequestT, ResponseT]) -> None:
        """Add a connection to the table. Caller holds the lock."""
        self._connections[connection.id] = connection

    def _forget(self, connection: PooledConnection[RequestT, ResponseT]) -> None:
        """Drop a connection from the table. Caller holds the lock and closes it."""
        if self._connections.pop(connection.id, None) is None:
            return

        self._counters.total_destroyed += 1
        logger.debug(
            "connection_pool_connection_destroyed",
            connection_id=connection.id,
            pool_size=len(self._connections),
        )

    async def _discard(self, connection: PooledConnection[RequestT, ResponseT]) -> None:
        """Drop a connection from the table, then close it outside the lock."""
        async with self._available:
            self._forget(connection)
            self._available.notify()

        await connection.close()
        self._update_metrics()

    async def _run_cleanup(self) -> None:
        """Run ``cleanup`` every ``cleanup_interval`` seconds."""
        while True:
            try:
                await asyncio.sleep(self.config.cleanup_interval)
                await self.cleanup()
            except asyncio.CancelledError:
                logger.info("connection_pool_cleanup_cancelled")
                break
            except Exception as e:
                logger.error(
                    "connection_pool_cleanup_failed",
                    error=str(e),
                    exc_info=True,
                )

    def _record_acquire(
        self,
        connection: PooledConnection[RequestT, ResponseT],
        source: str,
        start: float,
    ) -> None:
        duration = self._clock.monotonic() - start

        logger.debug(
            "connection_pool_acquire",
            connection_id=connection.id,
            source=source,
            execution_time=duration,
        )

        if self._metrics is not None:
            self._metrics.record_connection_acquisition(source, duration)
        self._update_metrics()

    def _update_metrics(self) -> None:
        if self._metrics is not None:
            self._metrics.update_pool(self.get_stats())

    def _count_available(self) -> int:
        return sum(1 for c in self._connections.values() if c.is_available())

    def _count_in_use(self) -> int:
        return sum(1 for c in self._connections.values() if c.is_in_use())

    def _generate_connection_id(self) -> str:
        return f"conn_{uuid4().hex[:12]}_{os.getpid()}"

    async def __aenter__(self) -> ConnectionPoolManager[RequestT, ResponseT]:
        """Enter async context manager."""
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit async context manager."""
        await self.stop()
