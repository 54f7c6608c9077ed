"""Shared fixtures for integration tests.

These tests exercise the real read path end-to-end:
    ledger events → hybrid indexer → event index → resolver → cache → HTTP

No mocks on internal components. The ledger and the index are the
in-memory implementations so CI stays deterministic; the write side is
driven through the ledger's helpers and announced on /api/cache/invalidate
the way a transaction submitter would.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from factories import fixed_clock
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from chainconsent.api.app import Collaborators, create_app
from chainconsent.cache.backend import InMemoryCacheBackend
from chainconsent.ledger.client import InMemoryLedger
from chainconsent.settings import Settings
from chainconsent.storage.event_index import InMemoryEventIndex


# ── Deterministic settings (no external deps) ────────────────────


@pytest.fixture()
def integration_settings() -> Settings:
    """Index and cache on; every external URL empty."""
    return Settings(
        environment="dev",
        ledger_url="",
        pg_dsn="",
        redis_url="",
        indexer_enabled=True,
        cache_enabled=True,
        log_json=False,
    )


@pytest.fixture()
def chain() -> InMemoryLedger:
    return InMemoryLedger(clock=fixed_clock)


@pytest.fixture()
def index() -> InMemoryEventIndex:
    return InMemoryEventIndex()


@pytest.fixture()
def app(
    integration_settings: Settings, chain: InMemoryLedger, index: InMemoryEventIndex
) -> FastAPI:
    return create_app(
        integration_settings,
        Collaborators(
            ledger=chain,
            event_index=index,
            cache_backend=InMemoryCacheBackend(),
            clock=fixed_clock,
        ),
    )


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    """Full ASGI client against the real FastAPI app, lifespan included."""
    transport = ASGITransport(app=app)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
