"""Readiness probes against the collaborators the service runs with."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from chainconsent.cache.backend import CacheBackendProtocol
    from chainconsent.ledger.client import LedgerClientProtocol
    from chainconsent.storage.event_index import EventIndexProtocol

__all__ = ["check_cache", "check_event_index", "check_ledger"]

logger = logging.getLogger(__name__)

_TIMEOUT = 2  # seconds, readiness fails fast


async def _reachable(name: str, call: Awaitable[Any]) -> bool:
    try:
        await asyncio.wait_for(call, timeout=_TIMEOUT)
    except Exception:
        logger.warning("%s health-check failed", name, exc_info=True)
        return False
    return True


async def check_event_index(index: EventIndexProtocol | None) -> bool:
    """SELECT 1 on the open event index. False when none could be opened."""
    if index is None:
        return False
    return await _reachable("Event index", index.ping())


async def check_cache(backend: CacheBackendProtocol | None) -> bool:
    """PING the cache backend in use. False when caching has no backend."""
    if backend is None:
        return False
    return await _reachable("Cache", backend.ping())


async def check_ledger(ledger: LedgerClientProtocol | None) -> bool:
    """Read the current block height. Returns False on any failure."""
    if ledger is None:
        return False
    try:
        height = await asyncio.wait_for(ledger.current_block_height(), timeout=_TIMEOUT)
    except Exception:
        logger.warning("Ledger health-check failed", exc_info=True)
        return False
    return height >= 0
