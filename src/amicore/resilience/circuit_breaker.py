"""Circuit breaker pattern implementation.

Three-state circuit breaker (CLOSED -> OPEN -> HALF_OPEN -> CLOSED) keyed by
circuit name, with state kept in a store shared across worker processes.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Mapping
from functools import wraps
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from amicore.clock import Clock, SystemClock
from amicore.resilience.exceptions import CircuitBreakerOpenError, CircuitStoreError
from amicore.resilience.models import (
    CircuitBreakerConfig,
    CircuitBreakerState,
    CircuitRecord,
    CircuitStats,
)
from amicore.resilience.store import CircuitStore, InMemoryCircuitStore
from amicore.resilience.timeout import with_timeout_direct

if TYPE_CHECKING:
    from amicore.metrics import AmiMetricsCollector

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# A fallback is a value, a callable returning one, or a coroutine function
Fallback = Any


class CircuitBreaker:
    """Circuit breaker for calls to the manager-interface endpoint.

    Implements the circuit breaker pattern with three states per circuit:
    - CLOSED: Normal operation, calls pass through
    - OPEN: Failing, calls are short-circuited to the fallback
    - HALF_OPEN: Probation, calls are attempted to test recovery

    State transitions:
    - CLOSED -> OPEN: When failures reach failure_threshold
    - OPEN -> HALF_OPEN: When recovery_timeout_seconds have passed since the
      last failure
    - HALF_OPEN -> CLOSED: When successes reach success_threshold
    - HALF_OPEN -> OPEN: On any failure

    ``failures`` is only cleared when a circuit closes, so a HALF_OPEN
    circuit still carries the failures that opened it.

    Each read-modify-write of a circuit record runs under the store's lock
    for that circuit. The operation itself runs outside the lock.

    When the store fails before the operation runs, the call is treated like
    an open circuit. When it fails while recording the outcome, the failure is
    logged and the operation's result or error is kept.
    """

    def __init__(
        self,
        store: CircuitStore | None = None,
        config: CircuitBreakerConfig | None = None,
        *,
        overrides: Mapping[str, CircuitBreakerConfig] | None = None,
        clock: Clock | None = None,
        metrics: AmiMetricsCollector | None = None,
    ) -> None:
        """Initialize circuit breaker.

        Args:
            store: Shared circuit store (in-memory when None)
            config: Configuration shared by all circuits
            overrides: Per-circuit configuration replacing ``config``
            clock: Time source
            metrics: Optional Prometheus collector
        """
        self._clock = clock or SystemClock()
        self._store = store if store is not None else InMemoryCircuitStore(self._clock)
        self.config = config or CircuitBreakerConfig()
        self._overrides = dict(overrides or {})
        self._metrics = metrics
        self._circuits: set[str] = set()

        logger.info(
            "circuit_breaker_initialized",
            enabled=self.config.enabled,
            failure_threshold=self.config.failure_threshold,
            recovery_timeout_seconds=self.config.recovery_timeout_seconds,
            overrides=sorted(self._overrides),
        )

    def config_for(self, name: str) -> CircuitBreakerConfig:
        """Configuration governing one circuit."""
        return self._overrides.get(name, self.config)

    async def call(
        self,
        name: str,
        operation: Callable[[], Awaitable[T]],
        fallback: Fallback = None,
    ) -> T:
        """Execute operation through the named circuit.

        Args:
            name: Circuit name
            operation: Async callable to execute
            fallback: Value, callable or coroutine function used when the
                circuit is open

        Returns:
            Operation result, or fallback result when short-circuited, when
            this call's failure opened the circuit, or when the circuit store
            is unavailable

        Raises:
            CircuitBreakerOpenError: If short-circuited without a fallback
            CircuitStoreError: If the circuit store is unavailable before the
                operation runs and no fallback was given
            ResilienceTimeoutError: If the operation timed out without
                opening the circuit
            Exception: If operation fails without opening the circuit
        """
        config = self.config_for(name)
        if not config.enabled:
            return await operation()

        self._circuits.add(name)

        try:
            record, short_circuit = await self._admit(name, config)
        except CircuitStoreError as e:
            logger.error(
                "circuit_breaker_store_unavailable",
                circuit=name,
                error=str(e),
                fallback=fallback is not None,
            )
            if self._metrics is not None:
                self._metrics.record_circuit_call(name, "rejected")
            if fallback is None:
                raise
            return await self._resolve_fallback(fallback)

        if short_circuit:
            logger.warning(
                "circuit_breaker_rejected",
                circuit=name,
                failures=record.failures,
                last_failure=record.last_failure_time,
            )
            if self._metrics is not None:
                self._metrics.record_circuit_call(name, "rejected")
            return await self._handle_fallback(name, record, config, fallback)

        start = self._clock.monotonic()
        try:
            result = await with_timeout_direct(
                operation, config.timeout_seconds, name
            )
        except Exception as e:
            try:
                tripped, record = await self._record_failure(name, config, e)
            except CircuitStoreError as store_error:
                self._log_record_failed(name, "failure", store_error)
                tripped = False
            if tripped:
                return await self._handle_fallback(
                    name, record, config, fallback, cause=e
                )
            raise

        duration_ms = (self._clock.monotonic() - start) * 1000
        try:
            await self._record_success(name, config, duration_ms)
        except CircuitStoreError as e:
            self._log_record_failed(name, "success", e)
        return result

    async def get_state(self, name: str) -> CircuitBreakerState:
        record = await self._load(name, self.config_for(name))
        return record.state

    async def get_stats(self, name: str) -> CircuitStats:
        """Get statistics for one circuit.

        Args:
            name: Circuit name

        Returns:
            Circuit statistics
        """
        record = await self._load(name, self.config_for(name))

        return CircuitStats(
            name=name,
            state=record.state,
            failures=record.failures,
            successes=record.successes,
            last_failure_time=record.last_failure_time,
            last_success_time=record.last_success_time,
            total_calls=record.total_calls,
            avg_response_time=record.avg_response_time,
            failure_rate=record.failure_rate,
            uptime_percentage=record.uptime_percentage,
        )

    async def get_all_stats(self) -> dict[str, CircuitStats]:
        """Get statistics for every circuit this instance has used."""
        return {name: await self.get_stats(name) for name in sorted(self._circuits)}

    async def reset(self, name: str) -> None:
        """Force a circuit CLOSED with zeroed counters."""
        config = self.config_for(name)
        self._circuits.add(name)

        async with self._store.lock(name):
            record = self._new_record()
            await self._persist(name, record, config)

        if self._metrics is not None:
            self._metrics.record_circuit_state(name, record.state)

        logger.info("circuit_breaker_reset", circuit=name)

    async def open(self, name: str, reason: str = "manual") -> None:
        """Force a circuit OPEN.

        The open is stamped as a failure time, so the circuit waits a full
        recovery timeout before a trial call.

        Args:
            name: Circuit name
            reason: Why the circuit was opened, for the log
        """
        config = self.config_for(name)
        self._circuits.add(name)

        async with self._store.lock(name):
            record = await self._load(name, config)
            record.last_failure_time = self._clock.now()
            self._set_state(name, record, CircuitBreakerState.OPEN)
            await self._persist(name, record, config)

        logger.warning(
            "circuit_breaker_manually_opened",
            circuit=name,
            reason=reason,
        )

    async def is_healthy(self, name: str) -> bool:
        """Check that a circuit is CLOSED with a failure rate below 50%."""
        record = await self._load(name, self.config_for(name))
        return record.state == CircuitBreakerState.CLOSED and record.failure_rate < 50.0

    async def _admit(
        self, name: str, config: CircuitBreakerConfig
    ) -> tuple[CircuitRecord, bool]:
        """Load the circuit and decide whether the call is short-circuited.

        An OPEN circuit past its recovery timeout moves to HALF_OPEN here.
        """
        async with self._store.lock(name):
            record = await self._load(name, config)

            if record.state != CircuitBreakerState.OPEN:
                return record, False

            if not self._should_attempt_reset(record, config):
                return record, True

            self._set_state(name, record, CircuitBreakerState.HALF_OPEN)
            await self._persist(name, record, config)

        logger.info("circuit_breaker_half_open", circuit=name)
        return record, False

    async def _load(self, name: str, config: CircuitBreakerConfig) -> CircuitRecord:
        """Load a circuit record, creating and persisting it on first use."""
        record = await self._store.get(name)
        if record is None:
            record = self._new_record()
            await self._persist(name, record, config)
        return record

    def _new_record(self) -> CircuitRecord:
        now = self._clock.now()
        return CircuitRecord(created_at=now, updated_at=now)

    async def _persist(
        self, name: str, record: CircuitRecord, config: CircuitBreakerConfig
    ) -> None:
        record.updated_at = self._clock.now()
        await self._store.put(name, record, config.record_ttl_seconds)

    async def _record_success(
        self, name: str, config: CircuitBreakerConfig, duration_ms: float
    ) -> None:
        """Record a successful call and close a recovered HALF_OPEN circuit."""
        async with self._store.lock(name):
            record = await self._load(name, config)

            record.successes += 1
            record.total_calls += 1
            record.total_response_time += duration_ms
            record.avg_response_time = record.total_response_time / record.total_calls
            record.last_success_time = self._clock.now()

            if (
                record.state == CircuitBreakerState.HALF_OPEN
                and record.successes >= config.success_threshold
            ):
                successes = record.successes
                self._set_state(name, record, CircuitBreakerState.CLOSED)
                logger.info(
                    "circuit_breaker_closed",
                    circuit=name,
                    successes=successes,
                )

            await self._persist(name, record, config)

        if self._metrics is not None:
            self._metrics.record_circuit_call(name, "success")

    async def _record_failure(
        self, name: str, config: CircuitBreakerConfig, error: Exception
    ) -> tuple[bool, CircuitRecord]:
        """Record a failed call.

        Returns:
            Whether this failure moved the circuit to OPEN, and the record
        """
        async with self._store.lock(name):
            record = await self._load(name, config)

            record.failures += 1
            record.total_calls += 1
            record.last_failure_time = self._clock.now()

            logger.warning(
                "circuit_breaker_failure",
                circuit=name,
                state=record.state,
                failures=record.failures,
                threshold=config.failure_threshold,
                error=str(error) or type(error).__name__,
            )

            tripped = record.state == CircuitBreakerState.HALF_OPEN or (
                record.state == CircuitBreakerState.CLOSED
                and record.failures >= config.failure_threshold
            )
            if tripped:
                self._set_state(name, record, CircuitBreakerState.OPEN)
                logger.error(
                    "circuit_breaker_opened",
                    circuit=name,
                    failures=record.failures,
                    threshold=config.failure_threshold,
                )

            await self._persist(name, record, config)

        if self._metrics is not None:
            self._metrics.record_circuit_call(name, "failure")

        return tripped, record

    def _set_state(
        self, name: str, record: CircuitRecord, state: CircuitBreakerState
    ) -> None:
        """Move a record to ``state``, resetting counters on entry."""
        previous = record.state
        record.state = state

        if state == CircuitBreakerState.CLOSED:
            record.failures = 0
            record.successes = 0
        elif state == CircuitBreakerState.HALF_OPEN:
            record.successes = 0

        logger.info(
            "circuit_breaker_state_changed",
            circuit=name,
            previous_state=previous,
            new_state=state,
        )

        if self._metrics is not None:
            self._metrics.record_circuit_state(name, state)

    def _should_attempt_reset(
        self, record: CircuitRecord, config: CircuitBreakerConfig
    ) -> bool:
        if record.last_failure_time is None:
            return True

        elapsed = (self._clock.now() - record.last_failure_time).total_seconds()
        return elapsed >= config.recovery_timeout_seconds

    async def _handle_fallback(
        self,
        name: str,
        record: CircuitRecord,
        config: CircuitBreakerConfig,
        fallback: Fallback,
        cause: Exception | None = None,
    ) -> Any:
        """Resolve the fallback for an open circuit.

        Errors raised by the fallback itself propagate unchanged.
        """
        if fallback is None:
            raise CircuitBreakerOpenError(
                name=name,
                failure_count=record.failures,
                threshold=config.failure_threshold,
            ) from cause

        return await self._resolve_fallback(fallback)

    async def _resolve_fallback(self, fallback: Fallback) -> Any:
        if not callable(fallback):
            return fallback

        result = fallback()
        if inspect.isawaitable(result):
            return await result
        return result

    def _log_record_failed(
        self, name: str, outcome: str, error: CircuitStoreError
    ) -> None:
        """Log an outcome the store could not record; the call result stands."""
        logger.error(
            "circuit_breaker_record_failed",
            circuit=name,
            outcome=outcome,
            error=str(error),
        )


def circuit_breaker(
    breaker: CircuitBreaker,
    name: str,
    fallback: Fallback = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorator for wrapping async functions with a named circuit.

    Args:
        breaker: Circuit breaker holding the circuit state
        name: Circuit name
        fallback: Fallback passed to every call

    Returns:
        Decorator function

    Example:
        @circuit_breaker(breaker, "ami")
        async def originate(request):
            async with pool.connection() as conn:
                return await conn.send(request)
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await breaker.call(name, lambda: func(*args, **kwargs), fallback)

        return wrapper

    return decorator
