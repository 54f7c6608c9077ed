"""Read-through query cache.

A cache fault never reaches the caller: a failed read is a miss, a failed
write or invalidation is logged and dropped. Results are serialised with a
pydantic ``TypeAdapter`` so cached and freshly computed values are the same
types.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import TYPE_CHECKING, TypeVar

from pydantic import ValidationError as PydanticValidationError

from chainconsent import metrics

if TYPE_CHECKING:
    from pydantic import TypeAdapter

    from chainconsent.cache.backend import CacheBackendProtocol

__all__ = ["QueryCache"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class QueryCache:
    def __init__(
        self,
        backend: CacheBackendProtocol | None,
        *,
        enabled: bool = True,
        timeout: float = 2.0,
    ) -> None:
        self._backend = backend
        self._enabled = enabled and backend is not None
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def _read(
        self, backend: CacheBackendProtocol, key: str, adapter: TypeAdapter[T]
    ) -> T | None:
        try:
            raw = await asyncio.wait_for(backend.get(key), timeout=self._timeout)
        except Exception:
            logger.warning("Cache read failed for %s", key, exc_info=True)
            metrics.increment("cache_errors")
            return None
        if raw is None:
            return None
        try:
            return adapter.validate_json(raw)
        except PydanticValidationError:
            logger.warning("Discarding undecodable cache entry %s", key)
            metrics.increment("cache_errors")
            return None

    async def _write(
        self,
        backend: CacheBackendProtocol,
        key: str,
        value: T,
        ttl: int,
        adapter: TypeAdapter[T],
    ) -> None:
        try:
            payload = adapter.dump_json(value).decode()
            await asyncio.wait_for(
                backend.set_with_ttl(key, payload, ttl), timeout=self._timeout
            )
        except Exception:
            logger.warning("Cache write failed for %s", key, exc_info=True)
            metrics.increment("cache_errors")

    async def get_or_load(
        self,
        key: str,
        adapter: TypeAdapter[T],
        loader: Callable[[], Awaitable[T]],
        ttl: int | Callable[[T], int],
    ) -> T:
        """Return the cached value for *key*, or load, store and return it.

        *ttl* may be a function of the loaded value (e.g. settled requests
        are kept longer than pending ones). Loader errors propagate and are
        never cached.
        """
        backend = self._backend
        if not self._enabled or backend is None:
            return await loader()

        cached = await self._read(backend, key, adapter)
        if cached is not None:
            metrics.increment("cache_hits")
            return cached

        metrics.increment("cache_misses")
        value = await loader()
        seconds = ttl(value) if callable(ttl) else ttl
        await self._write(backend, key, value, seconds, adapter)
        return value

    async def invalidate(self, patterns: Iterable[str]) -> int:
        """Delete every key matching any pattern. Returns keys removed."""
        backend = self._backend
        if not self._enabled or backend is None:
            return 0
        removed = 0
        for pattern in patterns:
            try:
                removed += await asyncio.wait_for(
                    backend.delete_by_pattern(pattern), timeout=self._timeout
                )
            except Exception:
                logger.warning("Cache invalidation failed for %s", pattern, exc_info=True)
                metrics.increment("cache_errors")
        logger.debug("Cache invalidated %d keys", removed)
        return removed
