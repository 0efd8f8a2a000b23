"""Pooled connection state machine tests."""

from __future__ import annotations

import asyncio

import pytest

from amicore.clock import ManualClock
from amicore.exceptions import (
    ActionExecutionError,
    ConnectionEstablishmentError,
    InvalidStateError,
)
from amicore.pooling.connection import PooledConnection
from amicore.pooling.models import ConnectionState, PoolConfig


class TestPooledConnectionLifecycle:
    """Test connect, lease and close transitions."""

    @pytest.fixture
    def config(self) -> PoolConfig:
        """Create test configuration."""
        return PoolConfig(
            enabled=True,
            connection_timeout=0.1,
            health_check_interval=60,
            max_requests_per_connection=3,
            max_connection_age=100)

    @pytest.fixture
    def connection(self, session, config, endpoint, clock) -> PooledConnection:
        """Create unopened pooled connection."""
        return PooledConnection(
            session, "conn_test_1", config, endpoint=endpoint, clock=clock)

    async def test_initial_state_disconnected(self, connection) -> None:
        """Test a new connection starts DISCONNECTED and not available."""
        assert connection.state == ConnectionState.DISCONNECTED
        assert connection.id == "conn_test_1"
        assert connection.pooled is True
        assert not connection.is_available()
        assert not connection.is_in_use()

    async def test_connect_moves_to_idle(self, connection, session) -> None:
        """Test a successful connect leaves the connection IDLE."""
        await connection.connect()

        assert connection.state == ConnectionState.IDLE
        assert connection.is_available()
        assert session.open_calls == 1
        assert connection.last_error is None

    async def test_connect_failure_moves_to_error(self, connection, session) -> None:
        """Test a failed connect raises and leaves the connection in ERROR."""
        session.fail_open = True

        with pytest.raises(ConnectionEstablishmentError) as exc_info:
            await connection.connect()

        assert connection.state == ConnectionState.ERROR
        assert not connection.is_available()
        assert exc_info.value.host == "pbx.test"
        assert exc_info.value.port == 5038
        assert "Connection refused" in str(exc_info.value)
        assert connection.last_error["type"] == "connection_error"

    async def test_connect_timeout(self, connection, session) -> None:
        """Test a session that never opens is abandoned after connection_timeout."""
        session.open_delay = 5.0

        with pytest.raises(ConnectionEstablishmentError) as exc_info:
            await connection.connect()

        assert connection.state == ConnectionState.ERROR
        assert "TimeoutError" in exc_info.value.reason

    async def test_cancelled_connect_closes_session(self, session, clock) -> None:
        """Test cancelling a slow connect closes the half-open session."""
        config = PoolConfig(enabled=True, connection_timeout=5.0)
        connection = PooledConnection(session, "conn_cancel", config, clock=clock)
        session.open_delay = 1.0

        task = asyncio.create_task(connection.connect())
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert connection.state == ConnectionState.DISCONNECTED
        assert session.close_calls == 1
        assert not connection.is_available()

    async def test_lease_round_trip(self, connection, clock: ManualClock) -> None:
        """Test IDLE -> IN_USE -> IDLE stamps last_used_at each time."""
        await connection.connect()
        created = connection.last_used_at

        clock.advance(5)
        connection.mark_as_in_use()
        assert connection.state == ConnectionState.IN_USE
        assert connection.is_in_use()
        assert not connection.is_available()
        assert (connection.last_used_at - created).total_seconds() == 5

        clock.advance(5)
        connection.mark_as_available()
        assert connection.state == ConnectionState.IDLE
        assert (connection.last_used_at - created).total_seconds() == 10

    async def test_mark_as_in_use_ignores_non_idle(self, connection) -> None:
        """Test only IDLE connections can be leased."""
        connection.mark_as_in_use()
        assert connection.state == ConnectionState.DISCONNECTED

    async def test_mark_as_available_ignores_error(self, connection, session) -> None:
        """Test a failed connection never returns to IDLE."""
        session.fail_open = True
        with pytest.raises(ConnectionEstablishmentError):
            await connection.connect()

        connection.mark_as_available()
        assert connection.state == ConnectionState.ERROR

    async def test_close_is_idempotent(self, connection, session) -> None:
        """Test close reaches DISCONNECTED and only closes the session once."""
        await connection.connect()

        await connection.close()
        await connection.close()

        assert connection.state == ConnectionState.DISCONNECTED
        assert session.close_calls == 1

    async def test_close_error_swallowed(self, connection, session) -> None:
        """Test a failing session close still ends DISCONNECTED."""
        await connection.connect()
        session.fail_close = True

        await connection.close()

        assert connection.state == ConnectionState.DISCONNECTED

    async def test_str(self, connection) -> None:
        """Test the string form names the id and state."""
        assert str(connection) == "PooledConnection[conn_test_1:disconnected]"


class TestPooledConnectionSend:
    """Test sending requests over a leased connection."""

    @pytest.fixture
    async def leased(self, session, clock) -> PooledConnection:
        """Create connected, leased connection."""
        config = PoolConfig(enabled=True, max_requests_per_connection=3)
        connection = PooledConnection(session, "conn_send", config, clock=clock)
        await connection.connect()
        connection.mark_as_in_use()
        return connection

    async def test_send_returns_response(self, leased, session) -> None:
        """Test send passes the request through and counts it."""
        response = await leased.send("Ping")

        assert response == {"Response": "Success", "ActionID": "Ping"}
        assert session.sent == ["Ping"]
        assert leased.request_count == 1
        assert leased.stats.successful_requests == 1

    async def test_send_requires_lease(self, session, clock) -> None:
        """Test send on an IDLE connection raises InvalidStateError."""
        connection = PooledConnection(session, "conn_idle", clock=clock)
        await connection.connect()

        with pytest.raises(InvalidStateError) as exc_info:
            await connection.send("Ping")

        assert exc_info.value.state == "idle"
        assert exc_info.value.operation == "send"
        assert session.sent == []

    async def test_send_failure_raises_action_error(self, leased, session) -> None:
        """Test a transport failure is counted and wrapped."""
        session.fail_send = True

        with pytest.raises(ActionExecutionError) as exc_info:
            await leased.send("Ping")

        assert exc_info.value.connection_id == "conn_send"
        assert leased.stats.failed_requests == 1
        assert leased.stats.last_error == "Broken pipe"

    async def test_repeated_failures_mark_unhealthy(self, leased, session) -> None:
        """Test more than five failed sends make the connection unhealthy."""
        session.fail_send = True

        for _ in range(5):
            with pytest.raises(ActionExecutionError):
                await leased.send("Ping")
        assert await leased.is_healthy()

        with pytest.raises(ActionExecutionError):
            await leased.send("Ping")
        assert not await leased.is_healthy()

    async def test_cancelled_send_marks_unhealthy(self, leased, session) -> None:
        """Test a cancelled send never goes back into service."""
        session.send_delay = 5.0

        task = asyncio.create_task(leased.send("Ping"))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert not await leased.is_healthy()


class TestPooledConnectionHealth:
    """Test health checks and recycling policy."""

    @pytest.fixture
    def config(self) -> PoolConfig:
        """Create test configuration."""
        return PoolConfig(
            enabled=True,
            health_check_interval=60,
            max_connection_age=600,
            max_requests_per_connection=2)

    async def test_liveness_checked_once_per_interval(
        self, pingable_session, config, clock: ManualClock
    ) -> None:
        """Test liveness is checked at most once per health_check_interval."""
        connection = PooledConnection(pingable_session, "conn_ping", config, clock=clock)
        await connection.connect()

        assert await connection.is_healthy()
        assert await connection.is_healthy()
        assert pingable_session.ping_calls == 1

        clock.advance(60)
        assert await connection.is_healthy()
        assert pingable_session.ping_calls == 2

    async def test_failed_ping_marks_unhealthy(
        self, pingable_session, config, clock: ManualClock
    ) -> None:
        """Test a false liveness check is recorded as a health check failure."""
        connection = PooledConnection(pingable_session, "conn_ping", config, clock=clock)
        await connection.connect()
        pingable_session.alive = False

        assert not await connection.perform_health_check()
        assert connection.stats.health_check_failures == 1
        assert connection.last_error["type"] == "health_check_error"
        assert not connection.is_available()

    async def test_slow_ping_counts_as_failure(
        self, pingable_session, clock
    ) -> None:
        """Test a ping slower than connection_timeout fails the health check."""
        config = PoolConfig(enabled=True, connection_timeout=0.1)
        connection = PooledConnection(pingable_session, "conn_slow", config, clock=clock)
        await connection.connect()
        pingable_session.ping_delay = 5.0

        assert not await connection.perform_health_check()
        assert connection.stats.health_check_failures == 1
        assert connection.last_error["message"] == "TimeoutError"

    async def test_failed_check_not_repeated(
        self, pingable_session, config, clock: ManualClock
    ) -> None:
        """Test is_healthy stops pinging once a health check has failed."""
        connection = PooledConnection(pingable_session, "conn_dead", config, clock=clock)
        await connection.connect()
        pingable_session.alive = False

        assert not await connection.is_healthy()
        clock.advance(60)
        assert not await connection.is_healthy()

        assert pingable_session.ping_calls == 1
        assert connection.stats.health_check_failures == 1
        assert not connection.should_recycle()

    async def test_session_without_ping_is_healthy(
        self, session, config, clock
    ) -> None:
        """Test sessions without a liveness check count as healthy once open."""
        connection = PooledConnection(session, "conn_plain", config, clock=clock)
        await connection.connect()

        assert await connection.perform_health_check()
        assert connection.last_health_check_at == clock.now()

    async def test_disconnected_is_unhealthy(self, session, config, clock) -> None:
        """Test a closed connection fails its health check."""
        connection = PooledConnection(session, "conn_closed", config, clock=clock)

        assert not await connection.perform_health_check()

    async def test_recycle_after_request_budget(
        self, session, config, clock
    ) -> None:
        """Test a connection is recycled once it served max requests."""
        connection = PooledConnection(session, "conn_busy", config, clock=clock)
        await connection.connect()
        connection.mark_as_in_use()

        await connection.send("a")
        assert not connection.should_recycle()

        await connection.send("b")
        assert connection.should_recycle()

    async def test_recycle_after_max_age(
        self, session, config, clock: ManualClock
    ) -> None:
        """Test a connection is recycled once it reaches max_connection_age."""
        connection = PooledConnection(session, "conn_old", config, clock=clock)
        await connection.connect()

        clock.advance(599)
        assert not connection.should_recycle()

        clock.advance(1)
        assert connection.age == 600
        assert connection.should_recycle()

    async def test_recycle_after_repeated_health_check_failures(
        self, pingable_session, config, clock
    ) -> None:
        """Test more than three failed liveness checks force recycling."""
        connection = PooledConnection(pingable_session, "conn_flaky", config, clock=clock)
        await connection.connect()
        pingable_session.alive = False

        for _ in range(3):
            await connection.perform_health_check()
        assert not connection.should_recycle()

        await connection.perform_health_check()
        assert connection.should_recycle()

    async def test_recycling_disabled(self, session, clock: ManualClock) -> None:
        """Test should_recycle is always False when recycling is disabled."""
        config = PoolConfig(
            enable_connection_recycling=False,
            max_connection_age=10,
            max_requests_per_connection=1)
        connection = PooledConnection(session, "conn_forever", config, clock=clock)
        await connection.connect()
        clock.advance(1000)

        assert not connection.should_recycle()

    async def test_get_stats(self, session, clock, endpoint) -> None:
        """Test connection statistics snapshot."""
        connection = PooledConnection(
            session, "conn_stats", endpoint=endpoint, pooled=False, clock=clock)
        await connection.connect()

        stats = connection.get_stats()

        assert stats["connection_id"] == "conn_stats"
        assert stats["state"] == "idle"
        assert stats["healthy"] is True
        assert stats["pooled"] is False
        assert stats["requests_handled"] == 0
        assert stats["last_health_check"] is None
        assert stats["should_recycle"] is False
