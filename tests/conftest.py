"""Shared fixtures for unit tests."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from factories import fixed_clock

from chainconsent import metrics
from chainconsent.cache.backend import InMemoryCacheBackend
from chainconsent.indexing.indexer import HybridIndexer
from chainconsent.ledger.client import InMemoryLedger
from chainconsent.resolution.resolver import StateResolver
from chainconsent.settings import Settings
from chainconsent.storage.event_index import InMemoryEventIndex


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_metrics() -> Iterator[None]:
    metrics.reset()
    yield


@pytest.fixture()
def ledger() -> InMemoryLedger:
    return InMemoryLedger(clock=fixed_clock)


@pytest.fixture()
def event_index() -> InMemoryEventIndex:
    return InMemoryEventIndex()


@pytest.fixture()
def indexer(ledger: InMemoryLedger, event_index: InMemoryEventIndex) -> HybridIndexer:
    return HybridIndexer(ledger, event_index, ledger_timeout=5, store_timeout=5)


@pytest.fixture()
def resolver(ledger: InMemoryLedger, indexer: HybridIndexer) -> StateResolver:
    return StateResolver(indexer, ledger, ledger_timeout=5, clock=fixed_clock)


@pytest.fixture()
def cache_backend() -> InMemoryCacheBackend:
    return InMemoryCacheBackend()


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        environment="dev",
        ledger_url="",
        pg_dsn="",
        indexer_enabled=False,
        redis_url="",
        cache_enabled=True,
        log_json=False,
        ledger_read_timeout=5,
        store_timeout=5,
    )
