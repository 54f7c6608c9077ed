"""Hybrid indexer: serve history from the event index, fetch the rest from the ledger."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from chainconsent import metrics
from chainconsent.errors import (
    ConnectivityError,
    ConsentServiceError,
    NotFoundError,
    call_with_timeout,
)
from chainconsent.indexing.merge import merge_events
from chainconsent.models import (
    CONSENT_EVENT_TYPES,
    REQUEST_EVENT_TYPES,
    Event,
    EventFilter,
    EventType,
    RawConsentRecord,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from chainconsent.ledger.client import LedgerClientProtocol
    from chainconsent.storage.event_index import EventIndexProtocol

__all__ = ["FetchRange", "HybridIndexer", "LEDGER_EVENT_TYPES"]

logger = logging.getLogger(__name__)

LEDGER_EVENT_TYPES: tuple[EventType, ...] = CONSENT_EVENT_TYPES + REQUEST_EVENT_TYPES


def _is_thin(event: Event, unresolved: set[int]) -> bool:
    return (
        event.type in CONSENT_EVENT_TYPES
        and event.consent_id in unresolved
        and not event.provider
    )


@dataclass(frozen=True)
class FetchRange:
    """How much of a query must come from the ledger.

    ``fetch_to=None`` means the latest block.
    """

    use_index_only: bool
    fetch_from: int
    fetch_to: int | None
    watermark: int | None = None


class HybridIndexer:
    """Combines the persisted event index with incremental ledger fetches."""

    def __init__(
        self,
        ledger: LedgerClientProtocol,
        index: EventIndexProtocol | None = None,
        *,
        genesis_block: int = 0,
        ledger_timeout: float = 30.0,
        store_timeout: float = 30.0,
        batch_size: int = 50,
    ) -> None:
        self._ledger = ledger
        self._index = index
        self._genesis = genesis_block
        self._ledger_timeout = ledger_timeout
        self._store_timeout = store_timeout
        self._batch_size = max(1, batch_size)

    @property
    def enabled(self) -> bool:
        return self._index is not None

    # -- range planning -----------------------------------------------------

    def _full_range(self, from_block: int | None, to_block: int | None) -> FetchRange:
        start = self._genesis if from_block is None else from_block
        return FetchRange(use_index_only=False, fetch_from=start, fetch_to=to_block)

    async def resolve_fetch_range(
        self,
        event_type: EventType,
        from_block: int | None = None,
        to_block: int | None = None,
    ) -> FetchRange:
        if self._index is None:
            return self._full_range(from_block, to_block)
        try:
            watermark = await call_with_timeout(
                self._index.get_watermark(event_type), self._store_timeout, "get_watermark"
            )
        except Exception:
            logger.warning(
                "Event index unavailable reading watermark for %s; fetching full range",
                event_type.value,
                exc_info=True,
            )
            metrics.increment("index_fallbacks")
            return self._full_range(from_block, to_block)

        if watermark is None:
            return self._full_range(from_block, to_block)
        if to_block is not None and to_block <= watermark:
            start = self._genesis if from_block is None else from_block
            return FetchRange(True, start, to_block, watermark)
        start = watermark + 1 if from_block is None else max(from_block, watermark + 1)
        return FetchRange(False, start, to_block, watermark)

    # -- persistence --------------------------------------------------------

    async def advance_watermark(self, event_type: EventType, block_number: int) -> None:
        """Raise the watermark. Non-increasing values are a no-op in the store."""
        if self._index is None:
            return
        await call_with_timeout(
            self._index.set_watermark(event_type, block_number),
            self._store_timeout,
            "set_watermark",
        )

    async def store_events(self, events: list[Event]) -> bool:
        """Persist *events*. Returns False if the index rejected the batch."""
        if self._index is None:
            return False
        if not events:
            return True
        try:
            await call_with_timeout(
                self._index.insert_events(events), self._store_timeout, "insert_events"
            )
        except Exception:
            logger.warning("Failed to persist %d events to index", len(events), exc_info=True)
            return False
        return True

    # -- fetch --------------------------------------------------------------

    async def _read_index(
        self,
        event_types: Sequence[EventType],
        patient: str | None,
        from_block: int | None,
        to_block: int | None,
    ) -> tuple[list[Event], bool]:
        if self._index is None:
            return [], False
        filters = EventFilter(
            event_types=tuple(event_types),
            patient=patient,
            from_block=from_block,
            to_block=to_block,
        )
        try:
            events = await call_with_timeout(
                self._index.query_events(filters), self._store_timeout, "index_query_events"
            )
        except Exception:
            logger.warning("Event index query failed; falling back to ledger", exc_info=True)
            metrics.increment("index_fallbacks")
            return [], False
        return events, True

    async def _fetch_ledger(
        self,
        event_type: EventType,
        patient: str | None,
        fetch_range: FetchRange,
    ) -> list[Event] | None:
        """One sub-filter. Returns None if the ledger query failed."""
        try:
            return await call_with_timeout(
                self._ledger.query_events(
                    event_type,
                    patient=patient,
                    from_block=fetch_range.fetch_from,
                    to_block=fetch_range.fetch_to,
                ),
                self._ledger_timeout,
                f"query_events:{event_type.value}",
            )
        except ConsentServiceError:
            logger.warning(
                "Ledger query for %s failed; treating as zero new events",
                event_type.value,
                exc_info=True,
            )
            metrics.increment("ledger_fetch_errors")
            return None

    async def _read_record(self, consent_id: int) -> tuple[RawConsentRecord | None, bool]:
        """Record read for enrichment. The flag is False when the read failed."""
        try:
            record = await call_with_timeout(
                self._ledger.read_consent(consent_id), self._ledger_timeout, "read_consent"
            )
        except NotFoundError:
            logger.warning("Consent %s has no record to enrich from", consent_id)
            return None, True
        except ConsentServiceError as e:
            logger.warning("Could not enrich consent %s: %s", consent_id, e.message)
            return None, False
        return record, True

    async def enrich_consent_events(
        self, events: list[Event]
    ) -> tuple[list[Event], set[int]]:
        """Fill provider, data types, purposes and expiration from record reads.

        Also returns the consent ids whose read failed; their events are still
        thin and have to be fetched again.
        """
        missing = sorted(
            {
                e.consent_id
                for e in events
                if e.type in CONSENT_EVENT_TYPES and e.consent_id is not None and not e.provider
            }
        )
        if not missing:
            return events, set()

        records: dict[int, RawConsentRecord] = {}
        unresolved: set[int] = set()
        for i in range(0, len(missing), self._batch_size):
            batch = missing[i : i + self._batch_size]
            results = await asyncio.gather(*(self._read_record(cid) for cid in batch))
            for cid, (record, ok) in zip(batch, results, strict=True):
                if record is not None:
                    records[cid] = record
                elif not ok:
                    unresolved.add(cid)

        out: list[Event] = []
        for event in events:
            record = records.get(event.consent_id) if event.consent_id is not None else None
            if record is None or event.provider or event.type not in CONSENT_EVENT_TYPES:
                out.append(event)
                continue
            out.append(
                event.model_copy(
                    update={
                        "provider": record.provider,
                        "data_types": event.data_types or record.data_types,
                        "purposes": event.purposes or record.purposes,
                        "expiration_time": event.expiration_time or record.expiration_time,
                    }
                )
            )
        return out, unresolved

    async def fetch_events(
        self,
        event_types: Sequence[EventType],
        *,
        patient: str | None = None,
        from_block: int | None = None,
        to_block: int | None = None,
    ) -> list[Event]:
        """Canonical sequence for *event_types*, optionally scoped to a patient.

        Raises ConnectivityError only when no source produced anything: the
        index is off or down and every ledger sub-filter failed.
        """
        plans = await asyncio.gather(
            *(self.resolve_fetch_range(t, from_block, to_block) for t in event_types)
        )
        ranges = dict(zip(event_types, plans, strict=True))

        indexed, index_ok = await self._read_index(event_types, patient, from_block, to_block)
        if not index_ok:
            # Without indexed history, watermarks do not tell us what we hold
            ranges = {t: self._full_range(from_block, to_block) for t in event_types}

        to_fetch = [t for t in event_types if not ranges[t].use_index_only]
        results = await asyncio.gather(
            *(self._fetch_ledger(t, patient, ranges[t]) for t in to_fetch)
        )
        fetched = dict(zip(to_fetch, results, strict=True))

        if to_fetch and all(r is None for r in results) and not index_ok:
            names = ",".join(t.value for t in to_fetch)
            raise ConnectivityError(
                f"Ledger unreachable for {names}", operation="fetch_events"
            )

        fresh = [e for events in fetched.values() if events for e in events]
        fresh, unresolved = await self.enrich_consent_events(fresh)

        if index_ok:
            # Thin events stay out of the index and hold their type's watermark
            complete: list[Event] = []
            held: dict[EventType, int] = {}
            for e in fresh:
                if _is_thin(e, unresolved):
                    held[e.type] = min(held.get(e.type, e.block_number), e.block_number)
                else:
                    complete.append(e)
            stored = await self.store_events(complete)
            if stored and patient is None:
                await self._advance_after_fetch(ranges, fetched, held)

        return merge_events(indexed, fresh)

    async def _advance_after_fetch(
        self,
        ranges: dict[EventType, FetchRange],
        fetched: dict[EventType, list[Event] | None],
        held: dict[EventType, int],
    ) -> None:
        for event_type, events in fetched.items():
            if not events:
                continue
            plan = ranges[event_type]
            floor = self._genesis if plan.watermark is None else plan.watermark + 1
            if plan.fetch_from > floor:
                # A gap below the fetched window is still unindexed
                continue
            target = max(e.block_number for e in events)
            if event_type in held:
                target = min(target, held[event_type] - 1)
                if target < plan.fetch_from:
                    continue
            try:
                await self.advance_watermark(event_type, target)
            except Exception:
                logger.warning(
                    "Failed to advance watermark for %s", event_type.value, exc_info=True
                )

    async def catch_up(self, event_types: Sequence[EventType] = LEDGER_EVENT_TYPES) -> int:
        """Unfiltered incremental sync of every type. Returns events now known."""
        if self._index is None:
            return 0
        events = await self.fetch_events(event_types)
        logger.info("Event index caught up: %d events", len(events))
        return len(events)
