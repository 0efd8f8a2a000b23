"""Resilience pattern exceptions.

Exceptions raised by the circuit breaker and timeout enforcement.
"""

from __future__ import annotations

from amicore.exceptions import AmiCoreError


class ResilienceError(AmiCoreError):
    """Base exception for all resilience pattern errors."""


class CircuitBreakerOpenError(ResilienceError):
    """Exception raised when a call is short-circuited.

    Raised when the circuit is OPEN (or a call just opened it) and the caller
    supplied no fallback.
    """

    def __init__(
        self,
        name: str,
        failure_count: int,
        threshold: int,
    ) -> None:
        """Initialize circuit breaker open error.

        Args:
            name: Circuit name
            failure_count: Current failure count
            threshold: Failure threshold
        """
        self.name = name
        self.failure_count = failure_count
        self.threshold = threshold
        super().__init__(
            f"Circuit breaker '{name}' is OPEN and no fallback provided: "
            f"{failure_count}/{threshold} failures"
        )


class ResilienceTimeoutError(ResilienceError):
    """Exception raised when operation times out.

    Raised when an operation exceeds its configured timeout duration; the
    operation itself is cancelled.
    """

    def __init__(
        self,
        operation: str,
        timeout_seconds: float,
    ) -> None:
        """Initialize resilience timeout error.

        Args:
            operation: Operation that timed out
            timeout_seconds: Timeout value in seconds
        """
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Operation '{operation}' timed out after {timeout_seconds}s"
        )


class CircuitStoreError(ResilienceError):
    """Exception raised when the shared circuit store cannot be used.

    Covers an unreachable store and a circuit lock that could not be taken
    in time.
    """

    def __init__(self, key: str, reason: str) -> None:
        """Initialize circuit store error.

        Args:
            key: Circuit key being read or written
            reason: Failure description
        """
        self.key = key
        self.reason = reason
        super().__init__(f"Circuit store unavailable for '{key}': {reason}")
