"""Tests for the hybrid indexer: range planning, watermarks and degradation."""

from __future__ import annotations

from typing import Any

import pytest
from factories import PATIENT, PROVIDER, event, fixed_clock

from chainconsent import metrics
from chainconsent.errors import ConnectivityError
from chainconsent.indexing.indexer import HybridIndexer
from chainconsent.ledger.client import InMemoryLedger
from chainconsent.models import (
    CONSENT_EVENT_TYPES,
    Event,
    EventFilter,
    EventType,
    RawConsentRecord,
)
from chainconsent.resolution.resolver import StateResolver
from chainconsent.storage.event_index import InMemoryEventIndex

GRANTED = EventType.CONSENT_GRANTED
REVOKED = EventType.CONSENT_REVOKED


class _RejectingInsertIndex(InMemoryEventIndex):
    """Watermarks work; inserts fail until ``rejecting`` is cleared."""

    def __init__(self) -> None:
        super().__init__()
        self.rejecting = True

    async def insert_events(self, events: list[Event]) -> int:
        if self.rejecting:
            msg = "insert failed"
            raise ConnectionError(msg)
        return await super().insert_events(events)


class _FlakyReadLedger(InMemoryLedger):
    """Record reads time out for the ids in ``unreadable``."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.unreadable: set[int] = set()

    async def read_consent(self, consent_id: int) -> RawConsentRecord:
        if consent_id in self.unreadable:
            raise ConnectivityError("read_consent timed out", operation="read_consent")
        return await super().read_consent(consent_id)


def _seed(ledger: InMemoryLedger, count: int = 2) -> list[int]:
    return [
        ledger.grant_consent(PATIENT, PROVIDER, ["medical_records"], ["treatment"])
        for _ in range(count)
    ]


class TestResolveFetchRange:
    @pytest.mark.anyio()
    async def test_without_index_fetches_requested_range(self, ledger: InMemoryLedger) -> None:
        indexer = HybridIndexer(ledger, None, genesis_block=7)

        plan = await indexer.resolve_fetch_range(GRANTED)

        assert not plan.use_index_only
        assert (plan.fetch_from, plan.fetch_to) == (7, None)
        plan = await indexer.resolve_fetch_range(GRANTED, 20, 30)
        assert (plan.fetch_from, plan.fetch_to) == (20, 30)

    @pytest.mark.anyio()
    async def test_range_at_or_below_watermark_is_index_only(
        self, indexer: HybridIndexer, event_index: InMemoryEventIndex
    ) -> None:
        await event_index.set_watermark(GRANTED, 10)

        assert (await indexer.resolve_fetch_range(GRANTED, None, 10)).use_index_only
        assert (await indexer.resolve_fetch_range(GRANTED, 2, 8)).use_index_only

    @pytest.mark.anyio()
    async def test_never_refetches_indexed_blocks(
        self, indexer: HybridIndexer, event_index: InMemoryEventIndex
    ) -> None:
        await event_index.set_watermark(GRANTED, 10)

        assert (await indexer.resolve_fetch_range(GRANTED)).fetch_from == 11
        assert (await indexer.resolve_fetch_range(GRANTED, 3, None)).fetch_from == 11
        assert (await indexer.resolve_fetch_range(GRANTED, 25, 40)).fetch_from == 25
        assert (await indexer.resolve_fetch_range(GRANTED, 3, 40)).fetch_to == 40

    @pytest.mark.anyio()
    async def test_index_outage_degrades_to_full_range(
        self, indexer: HybridIndexer, event_index: InMemoryEventIndex
    ) -> None:
        await event_index.set_watermark(GRANTED, 10)
        event_index.available = False

        plan = await indexer.resolve_fetch_range(GRANTED)

        assert not plan.use_index_only
        assert plan.fetch_from == 0
        assert metrics.snapshot()["index_fallbacks"] == 1


class TestWatermark:
    @pytest.mark.anyio()
    async def test_advance_is_monotonic(
        self, indexer: HybridIndexer, event_index: InMemoryEventIndex
    ) -> None:
        await indexer.advance_watermark(GRANTED, 50)
        await indexer.advance_watermark(GRANTED, 49)
        await indexer.advance_watermark(GRANTED, 50)
        assert await event_index.get_watermark(GRANTED) == 50

        await indexer.advance_watermark(GRANTED, 51)
        assert await event_index.get_watermark(GRANTED) == 51

    @pytest.mark.anyio()
    async def test_unfiltered_fetch_advances_to_max_block(
        self, ledger: InMemoryLedger, indexer: HybridIndexer, event_index: InMemoryEventIndex
    ) -> None:
        _seed(ledger, 3)

        events = await indexer.fetch_events(CONSENT_EVENT_TYPES)

        assert len(events) == 3
        assert await event_index.get_watermark(GRANTED) == 3
        # No revocations observed: nothing proves that type is indexed
        assert await event_index.get_watermark(REVOKED) is None

    @pytest.mark.anyio()
    async def test_second_fetch_is_incremental(
        self, ledger: InMemoryLedger, indexer: HybridIndexer
    ) -> None:
        _seed(ledger, 2)
        await indexer.fetch_events([GRANTED])
        _seed(ledger, 1)
        ledger.query_calls.clear()

        events = await indexer.fetch_events([GRANTED])

        assert [e.consent_id for e in events] == [0, 1, 2]
        assert ledger.query_calls == [(GRANTED, None, 3, None)]

    @pytest.mark.anyio()
    async def test_patient_filtered_fetch_does_not_advance(
        self, ledger: InMemoryLedger, indexer: HybridIndexer, event_index: InMemoryEventIndex
    ) -> None:
        _seed(ledger, 2)

        await indexer.fetch_events([GRANTED], patient=PATIENT)

        assert await event_index.get_watermark(GRANTED) is None
        # The events themselves are still kept
        assert len(await event_index.query_events(EventFilter())) == 2

    @pytest.mark.anyio()
    async def test_window_above_genesis_does_not_advance(
        self, ledger: InMemoryLedger, indexer: HybridIndexer, event_index: InMemoryEventIndex
    ) -> None:
        _seed(ledger, 4)

        await indexer.fetch_events([GRANTED], from_block=3)

        assert await event_index.get_watermark(GRANTED) is None


class TestDegradation:
    @pytest.mark.anyio()
    async def test_failed_store_keeps_watermark(self, ledger: InMemoryLedger) -> None:
        index = _RejectingInsertIndex()
        indexer = HybridIndexer(ledger, index)
        _seed(ledger, 1)

        events = await indexer.fetch_events([GRANTED])

        assert [e.consent_id for e in events] == [0]
        assert await index.get_watermark(GRANTED) is None

        index.rejecting = False
        events = await indexer.fetch_events([GRANTED])

        assert [e.consent_id for e in events] == [0]
        assert len(await index.query_events(EventFilter())) == 1
        assert await index.get_watermark(GRANTED) == 1

    @pytest.mark.anyio()
    async def test_store_reports_failure(self, ledger: InMemoryLedger) -> None:
        indexer = HybridIndexer(ledger, _RejectingInsertIndex())
        _seed(ledger, 1)
        events = await ledger.query_events(GRANTED)

        assert await indexer.store_events(events) is False
        assert await indexer.store_events([]) is True
        assert await HybridIndexer(ledger, None).store_events(events) is False

    @pytest.mark.anyio()
    async def test_index_outage_serves_everything_from_ledger(
        self, ledger: InMemoryLedger, indexer: HybridIndexer, event_index: InMemoryEventIndex
    ) -> None:
        _seed(ledger, 2)
        await indexer.fetch_events([GRANTED])
        event_index.available = False
        ledger.query_calls.clear()

        events = await indexer.fetch_events([GRANTED])

        assert [e.consent_id for e in events] == [0, 1]
        assert ledger.query_calls == [(GRANTED, None, 0, None)]

    @pytest.mark.anyio()
    async def test_failed_sub_filter_yields_zero_events(
        self, ledger: InMemoryLedger, indexer: HybridIndexer
    ) -> None:
        [cid, _] = _seed(ledger, 2)
        ledger.revoke_consent(cid)
        ledger.failing_event_types = {REVOKED}

        events = await indexer.fetch_events(CONSENT_EVENT_TYPES)

        assert {e.type for e in events} == {GRANTED}
        assert metrics.snapshot()["ledger_fetch_errors"] == 1

    @pytest.mark.anyio()
    async def test_everything_down_raises_connectivity_error(self, ledger: InMemoryLedger) -> None:
        _seed(ledger, 1)
        ledger.failing_event_types = set(CONSENT_EVENT_TYPES)
        indexer = HybridIndexer(ledger, None)

        with pytest.raises(ConnectivityError):
            await indexer.fetch_events(CONSENT_EVENT_TYPES)

    @pytest.mark.anyio()
    async def test_ledger_down_with_index_serves_indexed_history(
        self, ledger: InMemoryLedger, indexer: HybridIndexer
    ) -> None:
        _seed(ledger, 2)
        await indexer.fetch_events([GRANTED])
        ledger.failing_event_types = {GRANTED}

        events = await indexer.fetch_events([GRANTED])

        assert [e.consent_id for e in events] == [0, 1]


class TestEnrichment:
    @pytest.mark.anyio()
    async def test_thin_logs_are_enriched_from_records(self) -> None:
        ledger = InMemoryLedger(full_events=False, clock=fixed_clock)
        _seed(ledger, 3)
        indexer = HybridIndexer(ledger, None, batch_size=2)

        events = await indexer.fetch_events([GRANTED])

        assert all(e.provider == PROVIDER for e in events)
        assert all(e.data_types == ("medical_records",) for e in events)

    @pytest.mark.anyio()
    async def test_failed_lookup_keeps_event(self) -> None:
        ledger = InMemoryLedger(full_events=False, clock=fixed_clock)
        _seed(ledger, 1)
        ledger.fail_reads = True
        indexer = HybridIndexer(ledger, None)

        [thin] = await indexer.fetch_events([GRANTED])

        assert thin.consent_id == 0
        assert thin.provider is None

    @pytest.mark.anyio()
    async def test_unreadable_record_is_not_indexed(self) -> None:
        ledger = _FlakyReadLedger(full_events=False, clock=fixed_clock)
        index = InMemoryEventIndex()
        _seed(ledger, 3)
        ledger.unreadable = {1}
        indexer = HybridIndexer(ledger, index)

        events = await indexer.fetch_events([GRANTED])

        assert [e.provider for e in events] == [PROVIDER, None, PROVIDER]
        assert [e.consent_id for e in await index.query_events(EventFilter())] == [0, 2]
        # Block 2 holds the thin event, so only block 1 counts as indexed
        assert await index.get_watermark(GRANTED) == 1

        ledger.unreadable = set()
        ledger.query_calls.clear()
        events = await indexer.fetch_events([GRANTED])

        assert ledger.query_calls == [(GRANTED, None, 2, None)]
        assert all(e.provider == PROVIDER for e in events)
        assert len(await index.query_events(EventFilter())) == 3
        assert await index.get_watermark(GRANTED) == 3

    @pytest.mark.anyio()
    async def test_consent_visible_after_failed_catch_up(self) -> None:
        ledger = InMemoryLedger(full_events=False, clock=fixed_clock)
        index = InMemoryEventIndex()
        indexer = HybridIndexer(ledger, index)
        [cid] = _seed(ledger, 1)
        ledger.fail_reads = True

        await indexer.catch_up()

        assert await index.query_events(EventFilter()) == []

        ledger.fail_reads = False
        resolver = StateResolver(indexer, ledger, clock=fixed_clock)
        status = await resolver.resolve_consent_status(PATIENT, PROVIDER, "medical_records")

        assert (status.has_consent, status.consent_id) == (True, cid)
        [stored] = await index.query_events(EventFilter())
        assert stored.provider == PROVIDER

        await indexer.catch_up()
        assert await index.get_watermark(GRANTED) == 1

    @pytest.mark.anyio()
    async def test_missing_record_does_not_hold_watermark(
        self, event_index: InMemoryEventIndex
    ) -> None:
        ledger = _FlakyReadLedger(full_events=False, clock=fixed_clock)
        ledger.append(event(GRANTED, 4, consent_id=99))
        indexer = HybridIndexer(ledger, event_index)

        [orphan] = await indexer.fetch_events([GRANTED])

        assert orphan.provider is None
        assert await event_index.get_watermark(GRANTED) == 4


@pytest.mark.anyio()
async def test_catch_up_indexes_every_type(
    ledger: InMemoryLedger, indexer: HybridIndexer, event_index: InMemoryEventIndex
) -> None:
    [cid] = _seed(ledger, 1)
    ledger.revoke_consent(cid)
    rid = ledger.request_access(PROVIDER, PATIENT, ["imaging"], ["research"])
    ledger.respond(rid, approved=True)

    assert await indexer.catch_up() == 4
    assert await event_index.get_watermark(REVOKED) == 2
    assert await event_index.get_watermark(EventType.ACCESS_APPROVED) == 4


@pytest.mark.anyio()
async def test_catch_up_without_index_is_noop(ledger: InMemoryLedger) -> None:
    assert await HybridIndexer(ledger, None).catch_up() == 0
