"""Circuit breaker data models.

Pydantic models for circuit breaker configuration, the per-circuit record
kept in the shared store, and the statistics derived from it.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class CircuitBreakerState(str, Enum):
    """Circuit breaker state enumeration.

    States:
        CLOSED: Normal operation, calls pass through
        OPEN: Failing, calls are short-circuited
        HALF_OPEN: Probation, calls are attempted to test recovery
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker configuration.

    Shared by every circuit unless a per-circuit override is supplied.
    """

    enabled: bool = Field(
        default=True,
        description="When false, calls run without any circuit accounting",
    )

    failure_threshold: int = Field(
        default=5,
        ge=1,
        description="Number of failures before opening circuit",
    )

    success_threshold: int = Field(
        default=3,
        ge=1,
        description="Number of successes in HALF_OPEN to close circuit",
    )

    recovery_timeout_seconds: float = Field(
        default=60.0,
        ge=0,
        description="Seconds after the last failure before OPEN allows a trial call",
    )

    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-call timeout; a timed out call counts as a failure",
    )

    monitor_window_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Circuit records are kept for twice this window",
    )

    model_config = {"frozen": True}

    @property
    def record_ttl_seconds(self) -> int:
        return int(self.monitor_window_seconds * 2)


class CircuitRecord(BaseModel):
    """Persisted state of one named circuit."""

    state: CircuitBreakerState = Field(
        default=CircuitBreakerState.CLOSED,
        description="Current circuit state",
    )

    failures: int = Field(
        default=0,
        ge=0,
        description="Failures since the circuit last closed",
    )

    successes: int = Field(
        default=0,
        ge=0,
        description="Successes since the circuit last closed or went HALF_OPEN",
    )

    last_failure_time: datetime | None = Field(
        default=None,
        description="Timestamp of last failure",
    )

    last_success_time: datetime | None = Field(
        default=None,
        description="Timestamp of last success",
    )

    total_calls: int = Field(
        default=0,
        ge=0,
        description="Calls executed (short-circuited calls excluded)",
    )

    total_response_time: float = Field(
        default=0.0,
        ge=0,
        description="Sum of successful call durations in milliseconds",
    )

    avg_response_time: float = Field(
        default=0.0,
        ge=0,
        description="total_response_time / total_calls in milliseconds",
    )

    created_at: datetime = Field(..., description="Record creation time")
    updated_at: datetime = Field(..., description="Last persisted time")

    @property
    def failure_rate(self) -> float:
        """Failures as a percentage of executed calls."""
        if self.total_calls == 0:
            return 0.0
        return self.failures / self.total_calls * 100.0

    @property
    def uptime_percentage(self) -> float:
        if self.total_calls == 0:
            return 100.0
        return (self.total_calls - self.failures) / self.total_calls * 100.0


class CircuitStats(BaseModel):
    """Circuit statistics exposed to callers and health checks."""

    name: str
    state: CircuitBreakerState
    failures: int
    successes: int
    last_failure_time: datetime | None
    last_success_time: datetime | None
    total_calls: int
    avg_response_time: float
    failure_rate: float
    uptime_percentage: float
