"""Tests for the cache-fronted query facade."""

from __future__ import annotations

from typing import Any

import pytest
from factories import PATIENT, PROVIDER, fixed_clock

from chainconsent.cache.backend import InMemoryCacheBackend
from chainconsent.cache.query_cache import QueryCache
from chainconsent.errors import InvalidAddressError, InvalidIdError, ValidationError
from chainconsent.indexing.indexer import HybridIndexer
from chainconsent.ledger.client import InMemoryLedger
from chainconsent.resolution.resolver import StateResolver
from chainconsent.service import ConsentQueryService
from chainconsent.storage.event_index import InMemoryEventIndex

MR = "medical_records"


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _service(
    ledger: InMemoryLedger, backend: InMemoryCacheBackend | None
) -> ConsentQueryService:
    indexer = HybridIndexer(ledger, InMemoryEventIndex())
    resolver = StateResolver(indexer, ledger, clock=fixed_clock)
    return ConsentQueryService(resolver, QueryCache(backend), max_block_range=100)


class TestValidation:
    def setup_method(self) -> None:
        self.ledger = InMemoryLedger(clock=fixed_clock)
        self.service = _service(self.ledger, InMemoryCacheBackend())

    @pytest.mark.anyio()
    async def test_bad_address_rejected_before_io(self) -> None:
        with pytest.raises(InvalidAddressError):
            await self.service.get_consent_status("0x123", PROVIDER, MR)
        assert self.ledger.query_calls == []

    @pytest.mark.anyio()
    async def test_empty_data_type_rejected(self) -> None:
        with pytest.raises(ValidationError):
            await self.service.get_consent_status(PATIENT, PROVIDER, " ")

    @pytest.mark.anyio()
    async def test_negative_id_rejected(self) -> None:
        with pytest.raises(InvalidIdError):
            await self.service.get_consent_record(-1)

    @pytest.mark.anyio()
    async def test_unknown_status_filter_rejected(self) -> None:
        with pytest.raises(ValidationError):
            await self.service.list_patient_requests(PATIENT, "expired")

    @pytest.mark.anyio()
    async def test_block_range_is_capped(self) -> None:
        with pytest.raises(ValidationError):
            await self.service.get_consent_events(None, 0, 101)
        assert self.ledger.query_calls == []

    @pytest.mark.anyio()
    async def test_addresses_are_normalised(self) -> None:
        self.ledger.grant_consent(PATIENT, PROVIDER, [MR], ["treatment"])
        status = await self.service.get_consent_status(
            PATIENT.upper().replace("0X", "0x"), PROVIDER.upper().replace("0X", "0x"), MR
        )
        assert status.has_consent is True


class _BrokenBackend(InMemoryCacheBackend):
    def __init__(self) -> None:
        super().__init__()
        self.available = False


async def _scenario(ledger: InMemoryLedger, backend: InMemoryCacheBackend | None) -> dict[str, Any]:
    service = _service(ledger, backend)
    return {
        "status": await service.get_consent_status(PATIENT, PROVIDER, MR),
        "record": await service.get_consent_record(0),
        "patient": await service.list_patient_consents(PATIENT, include_expired=True),
        "provider": await service.list_provider_consents(PROVIDER),
        "requests": await service.list_patient_requests(PATIENT),
        "pending": await service.list_pending_requests(PATIENT),
        "provider_pending": await service.list_provider_pending_requests(PROVIDER),
        "events": await service.get_consent_events(PATIENT),
        "request_events": await service.get_access_request_events(),
        "history": await service.get_consent_history(PATIENT),
    }


@pytest.mark.anyio()
async def test_cache_outage_changes_nothing_but_latency() -> None:
    ledger = InMemoryLedger(clock=fixed_clock)
    cid = ledger.grant_consent(PATIENT, PROVIDER, [MR, "imaging"], ["treatment"])
    ledger.revoke_consent(cid)
    ledger.grant_consent(PATIENT, PROVIDER, [MR], ["treatment"])
    answered = ledger.request_access(PROVIDER, PATIENT, ["labs"], ["research"])
    ledger.respond(answered, approved=True)
    ledger.request_access(PROVIDER, PATIENT, ["labs"], ["billing"])

    healthy_backend = InMemoryCacheBackend()
    healthy = await _scenario(ledger, healthy_backend)
    served_from_cache = await _scenario(ledger, healthy_backend)
    broken = await _scenario(ledger, _BrokenBackend())
    uncached = await _scenario(ledger, None)

    assert healthy == served_from_cache == broken == uncached
    assert healthy["status"].consent_id == 1


class TestInvalidation:
    def setup_method(self) -> None:
        self.ledger = InMemoryLedger(clock=fixed_clock)
        self.backend = InMemoryCacheBackend()
        self.service = _service(self.ledger, self.backend)

    @pytest.mark.anyio()
    async def test_revoke_hook_refreshes_status(self) -> None:
        cid = self.ledger.grant_consent(PATIENT, PROVIDER, [MR], ["treatment"])
        assert (await self.service.get_consent_status(PATIENT, PROVIDER, MR)).has_consent

        self.ledger.revoke_consent(cid)
        # Still cached until the write is announced
        assert (await self.service.get_consent_status(PATIENT, PROVIDER, MR)).has_consent

        removed = await self.service.on_consent_revoked(PATIENT, cid)

        assert removed >= 1
        assert not (await self.service.get_consent_status(PATIENT, PROVIDER, MR)).has_consent

    @pytest.mark.anyio()
    async def test_approval_clears_request_and_consent_keys(self) -> None:
        rid = self.ledger.request_access(PROVIDER, PATIENT, [MR], ["treatment"])
        await self.service.get_access_request(rid)
        await self.service.list_pending_requests(PATIENT)
        await self.service.list_provider_consents(PROVIDER)
        await self.service.get_consent_status(PATIENT, PROVIDER, MR)

        cid = self.ledger.respond(rid, approved=True)
        await self.service.on_access_responded(PATIENT, rid, True, cid)

        assert self.backend.keys() == []
        assert (await self.service.get_consent_status(PATIENT, PROVIDER, MR)).consent_id == cid

    @pytest.mark.anyio()
    async def test_request_hook_leaves_consent_keys(self) -> None:
        self.ledger.grant_consent(PATIENT, PROVIDER, [MR], ["treatment"])
        await self.service.get_consent_status(PATIENT, PROVIDER, MR)
        await self.service.list_patient_requests(PATIENT, "all")

        await self.service.on_access_requested(PATIENT)

        assert self.backend.keys() == [f"consent:status:{PATIENT}:{PROVIDER}:{MR}"]


@pytest.mark.anyio()
async def test_settled_requests_outlive_pending_ones() -> None:
    ledger = InMemoryLedger(clock=fixed_clock)
    clock = _Clock()
    backend = InMemoryCacheBackend(clock=clock)
    service = _service(ledger, backend)
    pending = ledger.request_access(PROVIDER, PATIENT, [MR], ["treatment"])
    settled = ledger.request_access(PROVIDER, PATIENT, [MR], ["treatment"])
    ledger.respond(settled, approved=False)

    await service.get_access_request(pending)
    await service.get_access_request(settled)
    clock.now = 60

    assert await backend.get(f"request:{pending}") is None
    assert await backend.get(f"request:{settled}") is not None
