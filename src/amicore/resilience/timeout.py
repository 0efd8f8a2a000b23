"""Timeout enforcement for circuit breaker calls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from amicore.resilience.exceptions import ResilienceTimeoutError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def with_timeout_direct(
    operation: Callable[..., Awaitable[T]],
    timeout_seconds: float,
    operation_name: str = "operation",
    *args: Any,
    **kwargs: Any,
) -> T:
    """Execute operation with a hard timeout.

    The operation is cancelled when the timeout elapses, so a hung call is
    aborted rather than measured after the fact.

    Args:
        operation: Async callable to execute
        timeout_seconds: Timeout in seconds
        operation_name: Name for error messages
        *args: Positional arguments for operation
        **kwargs: Keyword arguments for operation

    Returns:
        Operation result

    Raises:
        ResilienceTimeoutError: If operation times out
        Exception: If operation fails

    Example:
        result = await with_timeout_direct(
            pool_send,
            5.0,
            "ami",
            request,
        )
    """
    try:
        return await asyncio.wait_for(
            operation(*args, **kwargs),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        logger.warning(
            "timeout_exceeded",
            operation=operation_name,
            timeout_seconds=timeout_seconds,
        )
        raise ResilienceTimeoutError(
            operation=operation_name,
            timeout_seconds=timeout_seconds,
        ) from e
