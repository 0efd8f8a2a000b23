"""Transport session protocols.

The pool never speaks the manager-interface wire protocol itself. It drives
sessions produced by an injected factory and treats requests and responses
as opaque values.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol, TypeVar, runtime_checkable

RequestT = TypeVar("RequestT")
ResponseT = TypeVar("ResponseT")
RequestT_contra = TypeVar("RequestT_contra", contravariant=True)
ResponseT_co = TypeVar("ResponseT_co", covariant=True)


class Session(Protocol[RequestT_contra, ResponseT_co]):
    """One underlying connection to the endpoint."""

    async def open(self) -> None:
        """Establish the session. Raises on failure."""
        ...

    async def close(self) -> None:
        """Close the session. Best-effort and idempotent."""
        ...

    async def send(self, request: RequestT_contra) -> ResponseT_co:
        """Send a request and return its response."""
        ...


@runtime_checkable
class LivenessCheck(Protocol):
    """Optional session capability used by connection health checks."""

    async def ping(self) -> bool:
        """Return True when the remote side still answers."""
        ...


SessionFactory = Callable[[], Session[RequestT, ResponseT]]
