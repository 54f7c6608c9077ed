"""Shared fixtures for contract tests.

Contract tests validate that every HTTP response body conforms to the JSON
schemas shipped in ``contracts/`` at the repository root. Clients of the
query service code against those schemas, not against this package.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
from factories import fixed_clock
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from chainconsent.api.app import Collaborators, create_app
from chainconsent.cache.backend import InMemoryCacheBackend
from chainconsent.ledger.client import InMemoryLedger
from chainconsent.settings import Settings

# ── Schema resolution ────────────────────────────────────────────

_REPO_ROOT = Path(__file__).resolve().parents[2]
_CONTRACTS = _REPO_ROOT / "contracts"


def _load_schema(name: str) -> dict[str, Any]:
    candidate = _CONTRACTS / name
    if not candidate.is_file():
        msg = f"Schema '{name}' not found in: {_CONTRACTS}"
        raise FileNotFoundError(msg)
    return json.loads(candidate.read_text(encoding="utf-8"))  # type: ignore[no-any-return]


# ── Fixtures ─────────────────────────────────────────────────────


@pytest.fixture()
def error_schema() -> dict[str, Any]:
    return _load_schema("error.schema.json")


@pytest.fixture()
def envelope_schema() -> dict[str, Any]:
    return _load_schema("envelope.schema.json")


@pytest.fixture()
def contract_ledger() -> InMemoryLedger:
    return InMemoryLedger(clock=fixed_clock)


@pytest.fixture()
def contract_app(contract_ledger: InMemoryLedger) -> FastAPI:
    settings = Settings(
        ledger_url="", pg_dsn="", redis_url="", indexer_enabled=False, log_json=False
    )
    return create_app(
        settings,
        Collaborators(
            ledger=contract_ledger, cache_backend=InMemoryCacheBackend(), clock=fixed_clock
        ),
    )


@pytest.fixture()
async def contract_client(contract_app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=contract_app, raise_app_exceptions=False)
    async with contract_app.router.lifespan_context(contract_app):
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
