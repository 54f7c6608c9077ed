"""In-process counters exposed on /metrics."""

from __future__ import annotations

import time
from typing import Any

__all__ = ["increment", "record_request", "reset", "snapshot"]

# Replaced by prometheus_client in production; this is a zero-dep baseline.
_metrics: dict[str, Any] = {}


def reset() -> None:
    _metrics.clear()
    _metrics.update(
        {
            "requests_total": 0,
            "requests_by_status": {},
            "cache_hits": 0,
            "cache_misses": 0,
            "cache_errors": 0,
            "ledger_fetch_errors": 0,
            "index_fallbacks": 0,
            "listing_items_skipped": 0,
            "start_time": time.time(),
        }
    )


def record_request(status: int) -> None:
    """Call from middleware to track request counts."""
    _metrics["requests_total"] += 1
    key = str(status)
    _metrics["requests_by_status"][key] = _metrics["requests_by_status"].get(key, 0) + 1


def increment(name: str, amount: int = 1) -> None:
    _metrics[name] = _metrics.get(name, 0) + amount


def snapshot() -> dict[str, Any]:
    return {**_metrics, "requests_by_status": dict(_metrics["requests_by_status"])}


reset()
