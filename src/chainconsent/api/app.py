"""FastAPI application factory."""

from __future__ import annotations

import inspect
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from chainconsent import metrics
from chainconsent.api.routes import cache, consent, events, health, requests
from chainconsent.cache.backend import RedisCacheBackend, get_redis_client
from chainconsent.cache.query_cache import QueryCache
from chainconsent.errors import ConsentServiceError
from chainconsent.indexing.indexer import HybridIndexer
from chainconsent.ledger.client import InMemoryLedger
from chainconsent.ledger.http import HttpLedgerClient
from chainconsent.logging import configure_logging, new_correlation_id
from chainconsent.resolution.resolver import StateResolver
from chainconsent.service import ConsentQueryService
from chainconsent.settings import Settings
from chainconsent.storage.event_index import PostgresEventIndex
from chainconsent.storage.postgres import get_connection

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from datetime import datetime

    from chainconsent.cache.backend import CacheBackendProtocol
    from chainconsent.ledger.client import LedgerClientProtocol
    from chainconsent.storage.event_index import EventIndexProtocol

__all__ = ["Collaborators", "build_service", "create_app"]

logger = logging.getLogger(__name__)


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Inject correlation_id and record request metrics."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        cid = request.headers.get("x-correlation-id") or new_correlation_id()
        request.state.request_id = cid

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        response.headers["x-correlation-id"] = cid
        response.headers["x-request-duration-ms"] = f"{duration * 1000:.1f}"

        metrics.record_request(response.status_code)

        return response


def _resolve_request_id(request: Request) -> str:
    state_request_id = getattr(request.state, "request_id", "")
    if state_request_id:
        return state_request_id
    header_request_id = request.headers.get("x-correlation-id", "")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = new_correlation_id()
    request.state.request_id = generated
    return generated


def _error_payload(error_code: str, message: str, request_id: str, *, details: Any = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error_code": error_code,
        "message": message,
        "request_id": request_id,
    }
    if details is not None:
        payload["details"] = details
    return payload


async def _service_exception_handler(request: Request, exc: ConsentServiceError) -> JSONResponse:
    request_id = _resolve_request_id(request)
    if exc.status_code >= 500:
        logger.warning("%s failed: %s", request.url.path, exc.message)
    headers = {"retry-after": "5"} if exc.retryable else None
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(exc.code, exc.message, request_id, details=exc.details or None),
        headers=headers,
    )


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    request_id = _resolve_request_id(request)
    status_code = exc.status_code
    error_code = "INVALID_REQUEST" if 400 <= status_code < 500 else "INTERNAL_ERROR"
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=status_code,
        content=_error_payload(error_code, message, request_id),
    )


async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    request_id = _resolve_request_id(request)
    return JSONResponse(
        status_code=422,
        content=_error_payload(
            "INVALID_REQUEST",
            "Request validation failed",
            request_id,
            details=exc.errors(),
        ),
    )


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = _resolve_request_id(request)
    logger.exception("Unhandled application exception", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=_error_payload("INTERNAL_ERROR", "Internal server error", request_id),
    )


# ── Composition root ─────────────────────────────────────


@dataclass
class Collaborators:
    """Pre-built dependencies. Anything left as None is built from Settings."""

    ledger: LedgerClientProtocol | None = None
    event_index: EventIndexProtocol | None = None
    cache_backend: CacheBackendProtocol | None = None
    clock: Callable[[], datetime] | None = None
    owned: list[Any] = field(default_factory=list)


def build_service(
    settings: Settings,
    ledger: LedgerClientProtocol,
    event_index: EventIndexProtocol | None = None,
    cache_backend: CacheBackendProtocol | None = None,
    clock: Callable[[], datetime] | None = None,
) -> tuple[ConsentQueryService, HybridIndexer]:
    indexer = HybridIndexer(
        ledger,
        event_index,
        genesis_block=settings.genesis_block,
        ledger_timeout=settings.ledger_read_timeout,
        store_timeout=settings.store_timeout,
        batch_size=settings.resolve_batch_size,
    )
    resolver = StateResolver(
        indexer,
        ledger,
        batch_size=settings.resolve_batch_size,
        ledger_timeout=settings.ledger_read_timeout,
        clock=clock,
    )
    query_cache = QueryCache(cache_backend, enabled=settings.cache_enabled)
    service = ConsentQueryService(resolver, query_cache, max_block_range=settings.max_block_range)
    return service, indexer


async def _open_event_index(settings: Settings) -> PostgresEventIndex | None:
    if not (settings.indexer_enabled and settings.pg_dsn):
        return None
    try:
        index = PostgresEventIndex(get_connection(settings.pg_dsn))
        await index.ensure_schema()
    except Exception:
        logger.warning("Event index unavailable; serving every query from the ledger", exc_info=True)
        return None
    return index


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Startup
    settings: Settings = app.state.settings
    configure_logging(json_output=settings.log_json, level=settings.log_level)
    deps: Collaborators = app.state.collaborators

    ledger = deps.ledger
    if ledger is None:
        if settings.ledger_url:
            ledger = HttpLedgerClient(settings.ledger_url, timeout=settings.ledger_read_timeout)
        else:
            logger.warning("No ledger_url configured; using an empty in-memory ledger")
            ledger = InMemoryLedger()
        deps.owned.append(ledger)

    event_index = deps.event_index
    if event_index is None:
        event_index = await _open_event_index(settings)
        if event_index is not None:
            deps.owned.append(event_index)

    cache_backend = deps.cache_backend
    if cache_backend is None and settings.cache_enabled and settings.redis_url:
        cache_backend = RedisCacheBackend(get_redis_client(settings.redis_url))
        deps.owned.append(cache_backend)

    service, indexer = build_service(settings, ledger, event_index, cache_backend, deps.clock)
    if indexer.enabled:
        try:
            await indexer.catch_up()
        except ConsentServiceError as e:
            logger.warning("Initial index catch-up failed: %s", e.message)

    app.state.ledger = ledger
    app.state.event_index = event_index
    app.state.cache_backend = cache_backend
    app.state.indexer = indexer
    app.state.service = service

    yield

    # Shutdown: close only what we opened
    for resource in reversed(deps.owned):
        result = resource.close()
        if inspect.isawaitable(result):
            await result
    deps.owned.clear()


def create_app(
    settings: Settings | None = None,
    collaborators: Collaborators | None = None,
) -> FastAPI:
    app = FastAPI(
        title="Chain Consent Query Service",
        version="0.1.0",
        description="Read-side consent and access-request state resolved from ledger events.",
        lifespan=lifespan,
    )
    app.state.settings = settings or Settings()
    app.state.collaborators = collaborators or Collaborators()
    app.add_exception_handler(ConsentServiceError, _service_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_exception_handler)
    app.add_middleware(ObservabilityMiddleware)
    app.include_router(health.router, tags=["health"])
    app.include_router(consent.router, tags=["consent"])
    app.include_router(requests.router, tags=["requests"])
    app.include_router(events.router, tags=["events"])
    app.include_router(cache.router, tags=["cache"])
    return app


app = create_app()
