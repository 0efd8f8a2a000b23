"""
Circuit State Stores

Shared key-value storage for circuit records so that every worker process
agrees on whether a dependency is currently unhealthy.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime, timedelta
from typing import Protocol

import redis.asyncio as aioredis
import structlog

from amicore.clock import Clock, SystemClock
from amicore.resilience.exceptions import CircuitStoreError
from amicore.resilience.models import CircuitRecord

logger = structlog.get_logger(__name__)


class CircuitStore(Protocol):
    """Storage for circuit records keyed by string."""

    async def get(self, key: str) -> CircuitRecord | None:
        """Return the stored record, or None when absent or expired."""
        ...

    async def put(self, key: str, record: CircuitRecord, ttl_seconds: int) -> None:
        """Store a record for ``ttl_seconds``."""
        ...

    def lock(self, key: str) -> AbstractAsyncContextManager[object]:
        """Critical section for a read-modify-write of one record."""
        ...


class InMemoryCircuitStore:
    """
    Process-local circuit store.

    Records are deep-copied on the way in and out so callers never share a
    mutable record with the store.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._records: dict[str, tuple[CircuitRecord, datetime]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def get(self, key: str) -> CircuitRecord | None:
        entry = self._records.get(key)
        if entry is None:
            return None

        record, expires_at = entry
        if self._clock.now() >= expires_at:
            del self._records[key]
            return None

        return record.model_copy(deep=True)

    async def put(self, key: str, record: CircuitRecord, ttl_seconds: int) -> None:
        expires_at = self._clock.now() + timedelta(seconds=ttl_seconds)
        self._records[key] = (record.model_copy(deep=True), expires_at)

    def lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def delete(self, key: str) -> None:
        self._records.pop(key, None)


class RedisCircuitStore:
    """
    Redis-backed circuit store shared by all workers.

    Records are stored as JSON with an expiry. The per-key lock is a Redis
    lock, so two workers recording a failure on the same circuit serialize
    their updates instead of losing one. Redis failures surface as
    ``CircuitStoreError``.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        key_prefix: str = "ami_circuit_breaker:",
        lock_timeout_seconds: float = 10.0,
        lock_blocking_timeout_seconds: float = 5.0,
    ) -> None:
        """
        Initialize Redis circuit store.

        Args:
            client: Redis client (bytes or decoded responses)
            key_prefix: Prefix for record and lock keys
            lock_timeout_seconds: Lock expiry, bounding a crashed holder
            lock_blocking_timeout_seconds: Maximum wait to take the lock
        """
        self._client = client
        self._key_prefix = key_prefix
        self._lock_timeout = lock_timeout_seconds
        self._lock_blocking_timeout = lock_blocking_timeout_seconds

    @classmethod
    def from_url(
        cls, redis_url: str, key_prefix: str = "ami_circuit_breaker:"
    ) -> RedisCircuitStore:
        """Create a store with a client built from a Redis URL."""
        client = aioredis.from_url(redis_url, decode_responses=False)
        return cls(client, key_prefix=key_prefix)

    def _record_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def _lock_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}:lock"

    async def get(self, key: str) -> CircuitRecord | None:
        try:
            payload = await self._client.get(self._record_key(key))
        except aioredis.RedisError as e:
            raise CircuitStoreError(key, str(e) or type(e).__name__) from e

        if payload is None:
            return None

        return CircuitRecord.model_validate_json(payload)

    async def put(self, key: str, record: CircuitRecord, ttl_seconds: int) -> None:
        try:
            await self._client.set(
                self._record_key(key),
                record.model_dump_json(),
                ex=max(ttl_seconds, 1),
            )
        except aioredis.RedisError as e:
            raise CircuitStoreError(key, str(e) or type(e).__name__) from e

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[object]:
        """
        Hold the Redis lock for one circuit.

        Raises:
            CircuitStoreError: If Redis fails or the lock is not acquired
                within ``lock_blocking_timeout_seconds``
        """
        lock = self._client.lock(
            self._lock_key(key),
            timeout=self._lock_timeout,
            blocking_timeout=self._lock_blocking_timeout,
        )
        try:
            acquired = await lock.acquire()
        except aioredis.RedisError as e:
            raise CircuitStoreError(key, str(e) or type(e).__name__) from e

        if not acquired:
            raise CircuitStoreError(
                key,
                f"lock not acquired within {self._lock_blocking_timeout}s",
            )

        try:
            yield lock
        finally:
            try:
                await lock.release()
            except aioredis.RedisError as e:
                # Lock expires after lock_timeout_seconds
                logger.warning(
                    "circuit_store_lock_release_failed",
                    key=key,
                    error=str(e) or type(e).__name__,
                )

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(self._record_key(key))
        except aioredis.RedisError as e:
            raise CircuitStoreError(key, str(e) or type(e).__name__) from e

    async def close(self) -> None:
        """Close the Redis client."""
        await self._client.aclose()
        logger.info("redis_circuit_store_closed")
