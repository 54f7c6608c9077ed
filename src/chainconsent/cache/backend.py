"""Cache backends: protocol and implementations.

Backends store opaque strings. They may raise on any call; QueryCache is
responsible for keeping those faults away from callers.
"""

from __future__ import annotations

import asyncio
import fnmatch
import time
from typing import TYPE_CHECKING, Protocol

import redis

if TYPE_CHECKING:
    from collections.abc import Callable

__all__ = [
    "CacheBackendProtocol",
    "InMemoryCacheBackend",
    "RedisCacheBackend",
    "get_redis_client",
]


class CacheBackendProtocol(Protocol):
    async def get(self, key: str) -> str | None:
        ...

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    async def delete_by_pattern(self, pattern: str) -> int:
        """Delete every key matching the glob *pattern*. Returns keys removed."""
        ...

    async def ping(self) -> None:
        ...


# ── In-memory implementation (dev / tests) ──────────────


class InMemoryCacheBackend:
    """Dict with per-key expiry, no external deps."""

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._data: dict[str, tuple[str, float]] = {}
        self._clock = clock or time.monotonic
        self.available = True

    def _check(self) -> None:
        if not self.available:
            msg = "cache backend unavailable"
            raise ConnectionError(msg)

    async def ping(self) -> None:
        self._check()

    async def get(self, key: str) -> str | None:
        self._check()
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        self._check()
        self._data[key] = (value, self._clock() + ttl_seconds)

    async def delete_by_pattern(self, pattern: str) -> int:
        self._check()
        doomed = [k for k in self._data if fnmatch.fnmatchcase(k, pattern)]
        for key in doomed:
            del self._data[key]
        return len(doomed)

    def keys(self) -> list[str]:
        return list(self._data)


# ── Redis implementation ─────────────────────────────────


def get_redis_client(url: str = "redis://localhost:6379/0") -> redis.Redis:  # type: ignore[type-arg]
    """Create a Redis client."""
    return redis.Redis.from_url(
        url, decode_responses=True, socket_timeout=2, socket_connect_timeout=2
    )


class RedisCacheBackend:
    """Redis-backed cache. Blocking calls run in a worker thread."""

    def __init__(self, client: redis.Redis, prefix: str = "chainconsent:") -> None:  # type: ignore[type-arg]
        self._client = client
        self._prefix = prefix

    def _delete_by_pattern(self, pattern: str) -> int:
        # SCAN rather than KEYS: never block the server on a large keyspace
        removed = 0
        batch: list[str] = []
        for key in self._client.scan_iter(match=self._prefix + pattern, count=500):
            batch.append(key)
            if len(batch) >= 500:
                removed += self._client.delete(*batch)
                batch.clear()
        if batch:
            removed += self._client.delete(*batch)
        return removed

    async def ping(self) -> None:
        await asyncio.to_thread(self._client.ping)

    async def get(self, key: str) -> str | None:
        return await asyncio.to_thread(self._client.get, self._prefix + key)

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        await asyncio.to_thread(self._client.set, self._prefix + key, value, ex=ttl_seconds)

    async def delete_by_pattern(self, pattern: str) -> int:
        return await asyncio.to_thread(self._delete_by_pattern, pattern)

    def close(self) -> None:
        self._client.close()
