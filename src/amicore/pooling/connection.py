"""
Pooled Connection

Wraps one manager-interface session with lease state, health monitoring,
usage statistics and recycling policy.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Generic

import structlog

from amicore.clock import Clock, SystemClock
from amicore.exceptions import (
    ActionExecutionError,
    ConnectionEstablishmentError,
    InvalidStateError,
)
from amicore.pooling.models import ConnectionState, EndpointConfig, PoolConfig
from amicore.session import LivenessCheck, RequestT, ResponseT, Session

logger = structlog.get_logger(__name__)

# Transport failures tolerated before a connection is marked unhealthy
MAX_FAILED_REQUESTS = 5

# Failed liveness checks tolerated before a connection must be recycled
MAX_HEALTH_CHECK_FAILURES = 3


@dataclass
class ConnectionStats:
    """Per-connection usage counters."""

    requests_handled: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_connect_time: float = 0.0
    total_execution_time: float = 0.0
    health_check_failures: int = 0
    last_error: str | None = None


class PooledConnection(Generic[RequestT, ResponseT]):
    """
    One pooled session and its operating state.

    State transitions:
    - DISCONNECTED -> CONNECTING -> IDLE: connect() succeeded
    - CONNECTING -> ERROR: connect() failed
    - IDLE <-> IN_USE: mark_as_in_use() / mark_as_available()
    - any -> DISCONNECTED: close()
    """

    def __init__(
        self,
        session: Session[RequestT, ResponseT],
        connection_id: str,
        config: PoolConfig | None = None,
        *,
        endpoint: EndpointConfig | None = None,
        pooled: bool = True,
        clock: Clock | None = None,
    ) -> None:
        """
        Initialize pooled connection.

        Args:
            session: Underlying transport session (not yet opened)
            connection_id: Unique connection identifier
            config: Pool configuration providing recycling and health limits
            endpoint: Endpoint the session talks to, for error reporting
            pooled: False for direct connections handed out with pooling disabled
            clock: Time source
        """
        self._session = session
        self._id = connection_id
        self.config = config or PoolConfig()
        self.endpoint = endpoint or EndpointConfig()
        self._pooled = pooled
        self._clock = clock or SystemClock()

        self._state = ConnectionState.DISCONNECTED
        self._healthy = True
        self._last_error: dict[str, Any] | None = None

        now = self._clock.now()
        self._created_at = now
        self.last_used_at = now
        self._last_health_check_at: datetime | None = None

        self.stats = ConnectionStats()

    @property
    def id(self) -> str:
        return self._id

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def pooled(self) -> bool:
        return self._pooled

    @property
    def created_at(self) -> datetime:
        return self._created_at

    @property
    def last_health_check_at(self) -> datetime | None:
        return self._last_health_check_at

    @property
    def last_error(self) -> dict[str, Any] | None:
        return self._last_error

    @property
    def request_count(self) -> int:
        return self.stats.requests_handled

    @property
    def age(self) -> float:
        """Seconds since the connection was created."""
        return (self._clock.now() - self._created_at).total_seconds()

    async def connect(self) -> None:
        """
        Open the underlying session.

        Raises:
            ConnectionEstablishmentError: If the session cannot be opened
                within ``connection_timeout``
        """
        start = self._clock.monotonic()
        self._state = ConnectionState.CONNECTING

        try:
            await asyncio.wait_for(
                self._session.open(), timeout=self.config.connection_timeout
            )
        except asyncio.CancelledError:
            # The transport may be half open
            logger.warning(
                "pooled_connection_connect_cancelled",
                connection_id=self._id,
            )
            await self.close()
            raise
        except Exception as e:
            reason = str(e) or type(e).__name__
            self._state = ConnectionState.ERROR
            self._healthy = False
            self._record_error("connection_error", reason)

            logger.error(
                "pooled_connection_failed",
                connection_id=self._id,
                endpoint=self.endpoint.address,
                error=reason,
            )

            raise ConnectionEstablishmentError(
                self.endpoint.host,
                self.endpoint.port,
                f"Failed to connect pooled connection: {reason}",
            ) from e

        connect_time = self._clock.monotonic() - start
        self._state = ConnectionState.IDLE
        self._healthy = True
        self._last_error = None
        self.stats.total_connect_time += connect_time

        logger.debug(
            "pooled_connection_established",
            connection_id=self._id,
            connect_time=connect_time,
        )

    async def close(self) -> None:
        """Close the session. Safe to call any number of times."""
        try:
            if self._state != ConnectionState.DISCONNECTED:
                await self._session.close()
        except Exception as e:
            logger.warning(
                "pooled_connection_close_failed",
                connection_id=self._id,
                error=str(e),
            )
        finally:
            self._state = ConnectionState.DISCONNECTED
            self._healthy = False

    async def send(self, request: RequestT) -> ResponseT:
        """
        Send a request over the leased connection.

        Args:
            request: Opaque request passed through to the session

        Returns:
            Opaque response from the session

        Raises:
            InvalidStateError: If the connection is not leased
            ActionExecutionError: If the transport fails
        """
        if self._state != ConnectionState.IN_USE:
            raise InvalidStateError(self._id, self._state.value, "send")

        start = self._clock.monotonic()

        try:
            response = await self._session.send(request)
        except asyncio.CancelledError:
            # Response may be half-read; never lease this session again
            self._healthy = False
            raise
        except Exception as e:
            reason = str(e) or type(e).__name__
            self._update_stats(False, self._clock.monotonic() - start, reason)
            raise ActionExecutionError(self._id, reason) from e

        self._update_stats(True, self._clock.monotonic() - start)
        return response

    def mark_as_in_use(self) -> None:
        """Lease the connection. Only IDLE connections change state."""
        if self._state == ConnectionState.IDLE:
            self._state = ConnectionState.IN_USE
            self.last_used_at = self._clock.now()

    def mark_as_available(self) -> None:
        """Return the connection to IDLE from IN_USE or CONNECTING."""
        if self._state in (ConnectionState.IN_USE, ConnectionState.CONNECTING):
            self._state = ConnectionState.IDLE
            self.last_used_at = self._clock.now()

    def is_available(self) -> bool:
        """Check if the connection can be leased without checking it."""
        return self._state == ConnectionState.IDLE and self._healthy

    def is_in_use(self) -> bool:
        return self._state == ConnectionState.IN_USE

    async def is_healthy(self) -> bool:
        """
        Check connection health.

        Returns False at once for a connection already marked unhealthy.
        Otherwise checks liveness when ``health_check_interval`` has elapsed
        since the previous check.
        """
        if not self._healthy:
            return False

        if self.health_check_due():
            return await self.perform_health_check()

        return True

    def health_check_due(self) -> bool:
        """Check whether ``is_healthy`` would check the session now."""
        if not self.config.enable_health_monitoring:
            return False

        last = self._last_health_check_at
        return (
            last is None
            or (self._clock.now() - last).total_seconds()
            >= self.config.health_check_interval
        )

    async def perform_health_check(self) -> bool:
        """
        Check the connection and update its health flag.

        The liveness check is bounded by ``connection_timeout``; a check that
        times out counts as failed.
        """
        self._last_health_check_at = self._clock.now()

        if self._state in (ConnectionState.DISCONNECTED, ConnectionState.ERROR):
            self._healthy = False
            return False

        if isinstance(self._session, LivenessCheck):
            try:
                alive = await asyncio.wait_for(
                    self._session.ping(), timeout=self.config.connection_timeout
                )
                error = None if alive else "liveness check returned false"
            except Exception as e:
                alive = False
                error = str(e) or type(e).__name__

            if not alive:
                self._healthy = False
                self.stats.health_check_failures += 1
                self._record_error("health_check_error", error)

                logger.warning(
                    "pooled_connection_health_check_failed",
                    connection_id=self._id,
                    failures=self.stats.health_check_failures,
                    error=error,
                )
                return False

        self._healthy = True
        return True

    def should_recycle(self) -> bool:
        """
        Check whether the connection has exceeded its age, usage or health budget.

        Note: ``is_healthy`` stops checking once a check has failed, so the pool
        never drives ``health_check_failures`` past one. The health budget
        below only trips for callers invoking ``perform_health_check``
        directly; the pool discards such connections as unhealthy anyway.
        """
        if not self.config.enable_connection_recycling:
            return False

        if self.stats.requests_handled >= self.config.max_requests_per_connection:
            return True

        if self.age >= self.config.max_connection_age:
            return True

        return self.stats.health_check_failures > MAX_HEALTH_CHECK_FAILURES

    def get_stats(self) -> dict[str, Any]:
        """Get connection statistics."""
        return {
            **asdict(self.stats),
            "connection_id": self._id,
            "state": self._state.value,
            "healthy": self._healthy,
            "pooled": self._pooled,
            "age_seconds": self.age,
            "created_at": self._created_at.isoformat(),
            "last_used": self.last_used_at.isoformat(),
            "last_health_check": (
                self._last_health_check_at.isoformat()
                if self._last_health_check_at
                else None
            ),
            "should_recycle": self.should_recycle(),
            "last_error": self._last_error,
        }

    def _update_stats(
        self, success: bool, execution_time: float, error: str | None = None
    ) -> None:
        self.stats.requests_handled += 1
        self.stats.total_execution_time += execution_time

        if success:
            self.stats.successful_requests += 1
            return

        self.stats.failed_requests += 1
        self.stats.last_error = error

        if self.stats.failed_requests > MAX_FAILED_REQUESTS:
            self._healthy = False

    def _record_error(self, error_type: str, message: str | None) -> None:
        self._last_error = {
            "message": message,
            "timestamp": self._clock.now().isoformat(),
            "type": error_type,
        }

    def __str__(self) -> str:
        return f"PooledConnection[{self._id}:{self._state.value}]"
