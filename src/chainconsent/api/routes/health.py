"""Health, readiness, and metrics endpoints."""

from __future__ import annotations

import time

from fastapi import APIRouter, Request, Response
from starlette.responses import JSONResponse

from chainconsent import metrics as counters
from chainconsent.healthchecks import check_cache, check_event_index, check_ledger

router = APIRouter()

__all__ = ["router"]


@router.get("/health", summary="Liveness probe", operation_id="health")
async def health() -> dict[str, str]:
    """Liveness: app process is running."""
    return {"status": "ok"}


@router.get("/ready", summary="Readiness probe", operation_id="ready")
async def ready(request: Request) -> JSONResponse:
    """Readiness: downstream dependencies reachable.

    Only dependencies that are switched on are probed. Returns 200 when all
    probed checks pass, 503 otherwise.
    """
    state = request.app.state
    settings = state.settings
    checks: dict[str, bool] = {
        "ledger": await check_ledger(getattr(state, "ledger", None)),
    }
    if settings.indexer_enabled:
        checks["event_index"] = await check_event_index(getattr(state, "event_index", None))
    if settings.cache_enabled:
        checks["cache"] = await check_cache(getattr(state, "cache_backend", None))

    all_ok = all(checks.values())
    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={"ready": all_ok, "checks": checks},
    )


@router.get("/metrics", summary="Prometheus metrics", operation_id="metrics")
async def metrics() -> Response:
    """Prometheus text exposition format."""
    snap = counters.snapshot()
    uptime = time.time() - snap["start_time"]

    lines = [
        "# HELP chainconsent_up Consent query service is up",
        "# TYPE chainconsent_up gauge",
        "chainconsent_up 1",
        "",
        "# HELP chainconsent_uptime_seconds Seconds since process start",
        "# TYPE chainconsent_uptime_seconds gauge",
        f"chainconsent_uptime_seconds {uptime:.1f}",
        "",
        "# HELP chainconsent_requests_total Total HTTP requests",
        "# TYPE chainconsent_requests_total counter",
        f"chainconsent_requests_total {snap['requests_total']}",
        "",
    ]

    # Per-status breakdown
    for status, count in sorted(snap["requests_by_status"].items()):
        lines.append(f'chainconsent_requests_total{{status="{status}"}} {count}')

    lines += [
        "",
        "# HELP chainconsent_cache_lookups_total Query cache lookups",
        "# TYPE chainconsent_cache_lookups_total counter",
        f'chainconsent_cache_lookups_total{{result="hit"}} {snap["cache_hits"]}',
        f'chainconsent_cache_lookups_total{{result="miss"}} {snap["cache_misses"]}',
        "",
        "# HELP chainconsent_cache_errors_total Cache backend faults absorbed",
        "# TYPE chainconsent_cache_errors_total counter",
        f"chainconsent_cache_errors_total {snap['cache_errors']}",
        "",
        "# HELP chainconsent_ledger_fetch_errors_total Ledger sub-queries degraded to empty",
        "# TYPE chainconsent_ledger_fetch_errors_total counter",
        f"chainconsent_ledger_fetch_errors_total {snap['ledger_fetch_errors']}",
        "",
        "# HELP chainconsent_index_fallbacks_total Queries served without the event index",
        "# TYPE chainconsent_index_fallbacks_total counter",
        f"chainconsent_index_fallbacks_total {snap['index_fallbacks']}",
        "",
        "# HELP chainconsent_listing_items_skipped_total Listing items dropped on error",
        "# TYPE chainconsent_listing_items_skipped_total counter",
        f"chainconsent_listing_items_skipped_total {snap['listing_items_skipped']}",
        "",
    ]

    return Response(content="\n".join(lines), media_type="text/plain; charset=utf-8")
