"""Connection and pool exceptions.

Exception hierarchy for connection establishment, pool exhaustion, invalid
connection state and request execution failures.
"""

from __future__ import annotations


class AmiCoreError(Exception):
    """Base exception for all amicore errors."""

    def __init__(self, message: str) -> None:
        """Initialize error.

        Args:
            message: Error description
        """
        self.message = message
        super().__init__(message)


class AmiConnectionError(AmiCoreError):
    """Base exception for errors reaching the manager-interface endpoint."""

    def __init__(self, host: str, port: int, message: str) -> None:
        self.host = host
        self.port = port
        super().__init__(message)


class ConnectionEstablishmentError(AmiConnectionError):
    """Exception raised when a session to the endpoint cannot be opened.

    Fatal for the attempt that raised it: the connection is discarded and
    never enters the pool.
    """

    def __init__(self, host: str, port: int, reason: str) -> None:
        """Initialize connection establishment error.

        Args:
            host: Endpoint host
            port: Endpoint port
            reason: Underlying failure description
        """
        self.reason = reason
        super().__init__(
            host, port, f"Network error connecting to {host}:{port} - {reason}"
        )


class PoolExhaustedError(AmiConnectionError):
    """Exception raised when no connection became available in time.

    Raised by ``acquire`` when the pool is at capacity and every connection
    stayed leased for the whole acquire timeout.
    """

    def __init__(self, host: str, port: int, timeout_seconds: float) -> None:
        """Initialize pool exhaustion error.

        Args:
            host: Endpoint host
            port: Endpoint port
            timeout_seconds: Acquire timeout that elapsed
        """
        self.timeout_seconds = timeout_seconds
        super().__init__(
            host,
            port,
            f"Connection pool for {host}:{port} exhausted: "
            f"no connection available after {timeout_seconds}s",
        )


class InvalidStateError(AmiCoreError):
    """Exception raised when a connection is used in a state that forbids it."""

    def __init__(self, connection_id: str, state: str, operation: str) -> None:
        """Initialize invalid state error.

        Args:
            connection_id: Connection identifier
            state: Current connection state
            operation: Operation that was attempted
        """
        self.connection_id = connection_id
        self.state = state
        self.operation = operation
        super().__init__(
            f"Cannot {operation} on connection {connection_id}: "
            f"connection is not in use (current state: {state})"
        )


class ActionExecutionError(AmiCoreError):
    """Exception raised when the transport fails while sending a request."""

    def __init__(self, connection_id: str, reason: str) -> None:
        self.connection_id = connection_id
        self.reason = reason
        super().__init__(
            f"Action execution failed on pooled connection {connection_id}: {reason}"
        )
