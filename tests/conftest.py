"""Root-level pytest configuration for all tests."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from amicore.clock import ManualClock
from amicore.pooling.models import EndpointConfig, PoolConfig


class FakeSession:
    """In-memory manager-interface session."""

    def __init__(
        self,
        *,
        fail_open: bool = False,
        fail_send: bool = False,
        fail_close: bool = False,
        open_delay: float = 0.0,
        send_delay: float = 0.0,
    ) -> None:
        self.fail_open = fail_open
        self.fail_send = fail_send
        self.fail_close = fail_close
        self.open_delay = open_delay
        self.send_delay = send_delay
        self.opened = False
        self.open_calls = 0
        self.close_calls = 0
        self.sent: list[Any] = []

    async def open(self) -> None:
        self.open_calls += 1
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.fail_open:
            raise OSError("Connection refused")
        self.opened = True

    async def close(self) -> None:
        self.close_calls += 1
        self.opened = False
        if self.fail_close:
            raise OSError("Socket already closed")

    async def send(self, request: Any) -> dict[str, Any]:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.fail_send:
            raise OSError("Broken pipe")
        self.sent.append(request)
        return {"Response": "Success", "ActionID": request}


class PingableSession(FakeSession):
    """Session that also answers liveness checks."""

    def __init__(
        self, *, alive: bool = True, ping_delay: float = 0.0, **kwargs: Any
    ) -> None:
        super().__init__(**kwargs)
        self.alive = alive
        self.ping_delay = ping_delay
        self.ping_calls = 0

    async def ping(self) -> bool:
        self.ping_calls += 1
        if self.ping_delay:
            await asyncio.sleep(self.ping_delay)
        return self.alive


class FakeSessionFactory:
    """Session factory recording every session it hands out."""

    def __init__(self, session_class: type[FakeSession] = FakeSession) -> None:
        self.session_class = session_class
        self.sessions: list[FakeSession] = []
        self.fail_open = False
        self.fail_create = False
        self.fail_after: int | None = None
        self.session_kwargs: dict[str, Any] = {}

    def __call__(self) -> FakeSession:
        if self.fail_create:
            raise RuntimeError("Session factory misconfigured")
        fail_open = self.fail_open or (
            self.fail_after is not None and len(self.sessions) >= self.fail_after
        )
        session = self.session_class(fail_open=fail_open, **self.session_kwargs)
        self.sessions.append(session)
        return session


@pytest.fixture
def clock() -> ManualClock:
    """Create manual clock."""
    return ManualClock()


@pytest.fixture
def session_factory() -> FakeSessionFactory:
    """Create fake session factory."""
    return FakeSessionFactory()


@pytest.fixture
def endpoint() -> EndpointConfig:
    """Create test endpoint."""
    return EndpointConfig(host="pbx.test", port=5038)


@pytest.fixture
def pool_config() -> PoolConfig:
    """Create enabled pool configuration."""
    return PoolConfig(
        enabled=True,
        min_connections=2,
        max_connections=4,
        max_idle_time=300,
        max_connection_age=3600,
        health_check_interval=60,
        acquire_timeout=0.2,
        max_requests_per_connection=100)


@pytest.fixture
def pingable_session_factory() -> FakeSessionFactory:
    """Create fake session factory whose sessions answer liveness checks."""
    return FakeSessionFactory(PingableSession)


@pytest.fixture
def session() -> FakeSession:
    """Create unopened fake session."""
    return FakeSession()


@pytest.fixture
def pingable_session() -> PingableSession:
    """Create unopened fake session with a liveness check."""
    return PingableSession()
