"""State resolver: current consent and request state from ledger events.

Single records are resolved by two strategies tried in order:

1. ``LedgerRecordStrategy``: a direct "current record" read from the ledger.
2. ``EventReplayStrategy``: replay of the canonical event sequence.

A NotFoundError from the direct read is final. Any other ledger error
(timeout, method missing after a contract upgrade, undecodable payload)
falls through to replay.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol, TypeVar

from chainconsent import metrics
from chainconsent.errors import ConsentServiceError, NotFoundError, call_with_timeout
from chainconsent.indexing.indexer import LEDGER_EVENT_TYPES
from chainconsent.indexing.merge import backfill_request_details
from chainconsent.models import (
    CONSENT_EVENT_TYPES,
    REQUEST_EVENT_TYPES,
    AccessRequest,
    ConsentRecord,
    ConsentStatus,
    Event,
    EventType,
    RequestStatus,
    to_access_request,
    to_consent_record,
)
from chainconsent.storage import projections

if TYPE_CHECKING:
    from chainconsent.indexing.indexer import HybridIndexer
    from chainconsent.ledger.client import LedgerClientProtocol

__all__ = [
    "EventReplayStrategy",
    "LedgerRecordStrategy",
    "RecordStrategy",
    "StateResolver",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RecordStrategy(Protocol):
    name: str

    async def consent_record(
        self, consent_id: int, events: Sequence[Event] | None = None
    ) -> ConsentRecord:
        ...

    async def access_request(
        self, request_id: int, events: Sequence[Event] | None = None
    ) -> AccessRequest:
        ...


class LedgerRecordStrategy:
    """Direct record reads. Ignores any events handed in."""

    name = "ledger"

    def __init__(self, ledger: LedgerClientProtocol, *, timeout: float, clock: Clock) -> None:
        self._ledger = ledger
        self._timeout = timeout
        self._clock = clock

    async def consent_record(
        self, consent_id: int, events: Sequence[Event] | None = None
    ) -> ConsentRecord:
        raw = await call_with_timeout(
            self._ledger.read_consent(consent_id), self._timeout, "read_consent"
        )
        return to_consent_record(raw, consent_id, self._clock())

    async def access_request(
        self, request_id: int, events: Sequence[Event] | None = None
    ) -> AccessRequest:
        raw = await call_with_timeout(
            self._ledger.read_access_request(request_id), self._timeout, "read_access_request"
        )
        return to_access_request(raw, request_id, self._clock())


class EventReplayStrategy:
    """Rebuild records from events.

    Uses the events handed in when the caller already holds a sequence that
    covers the id; otherwise fetches the full history.
    """

    name = "replay"

    def __init__(self, indexer: HybridIndexer, *, clock: Clock) -> None:
        self._indexer = indexer
        self._clock = clock

    async def _events(
        self, events: Sequence[Event] | None, event_types: Sequence[EventType]
    ) -> list[Event]:
        if events is None:
            events = await self._indexer.fetch_events(event_types)
        return backfill_request_details(list(events))

    async def consent_record(
        self, consent_id: int, events: Sequence[Event] | None = None
    ) -> ConsentRecord:
        replay = await self._events(events, LEDGER_EVENT_TYPES)
        record = projections.project_consent_records(replay, self._clock()).get(consent_id)
        if record is None:
            raise NotFoundError("Consent", consent_id)
        return record

    async def access_request(
        self, request_id: int, events: Sequence[Event] | None = None
    ) -> AccessRequest:
        replay = await self._events(events, REQUEST_EVENT_TYPES)
        request = projections.project_access_requests(replay, self._clock()).get(request_id)
        if request is None:
            raise NotFoundError("Access request", request_id)
        return request


class StateResolver:
    """Replays canonical event sequences into consent and request state."""

    def __init__(
        self,
        indexer: HybridIndexer,
        ledger: LedgerClientProtocol,
        *,
        batch_size: int = 50,
        ledger_timeout: float = 30.0,
        clock: Clock | None = None,
        strategies: Sequence[RecordStrategy] | None = None,
    ) -> None:
        self._indexer = indexer
        self._clock = clock or _utcnow
        self._batch_size = max(1, batch_size)
        self.strategies: tuple[RecordStrategy, ...] = tuple(
            strategies
            or (
                LedgerRecordStrategy(ledger, timeout=ledger_timeout, clock=self._clock),
                EventReplayStrategy(indexer, clock=self._clock),
            )
        )

    # -- event sequences ----------------------------------------------------

    async def consent_events(
        self,
        patient: str | None = None,
        from_block: int | None = None,
        to_block: int | None = None,
    ) -> list[Event]:
        return await self._indexer.fetch_events(
            CONSENT_EVENT_TYPES, patient=patient, from_block=from_block, to_block=to_block
        )

    async def access_request_events(
        self,
        patient: str | None = None,
        from_block: int | None = None,
        to_block: int | None = None,
    ) -> list[Event]:
        events = await self._indexer.fetch_events(
            REQUEST_EVENT_TYPES, patient=patient, from_block=from_block, to_block=to_block
        )
        return backfill_request_details(events)

    async def _all_events(self, patient: str | None = None) -> list[Event]:
        events = await self._indexer.fetch_events(LEDGER_EVENT_TYPES, patient=patient)
        return backfill_request_details(events)

    # -- single records -----------------------------------------------------

    async def _first_success(
        self,
        label: str,
        identifier: int,
        attempt: Callable[[RecordStrategy], Awaitable[T]],
    ) -> T:
        last_error: ConsentServiceError | None = None
        for strategy in self.strategies:
            try:
                return await attempt(strategy)
            except NotFoundError:
                raise
            except ConsentServiceError as e:
                logger.warning(
                    "%s %s via %s failed (%s); trying next strategy",
                    label,
                    identifier,
                    strategy.name,
                    e.message,
                )
                last_error = e
        if last_error is None:
            raise NotFoundError(label, identifier)
        raise last_error

    async def get_consent_record(
        self, consent_id: int, events: Sequence[Event] | None = None
    ) -> ConsentRecord:
        return await self._first_success(
            "Consent", consent_id, lambda s: s.consent_record(consent_id, events)
        )

    async def get_access_request(
        self, request_id: int, events: Sequence[Event] | None = None
    ) -> AccessRequest:
        return await self._first_success(
            "Access request", request_id, lambda s: s.access_request(request_id, events)
        )

    # -- status -------------------------------------------------------------

    async def resolve_consent_status(
        self, patient: str, provider: str, data_type: str
    ) -> ConsentStatus:
        events = await self._all_events(patient)
        return projections.resolve_consent_status(events, provider, data_type, self._clock())

    # -- listings -----------------------------------------------------------

    async def _skip_on_error(self, label: str, ident: int, coro: Awaitable[T]) -> T | None:
        try:
            return await coro
        except ConsentServiceError as e:
            # Listings are best-effort over ids that may be revoked or unreadable
            logger.warning("Skipping %s %s in listing: %s", label, ident, e.message)
            metrics.increment("listing_items_skipped")
            return None

    async def _resolve_many(
        self,
        label: str,
        ids: Sequence[int],
        fetch: Callable[[int], Awaitable[T]],
    ) -> list[T]:
        """Resolve ids in fixed-size concurrent batches, dropping failures."""
        out: list[T] = []
        for i in range(0, len(ids), self._batch_size):
            batch = ids[i : i + self._batch_size]
            results = await asyncio.gather(
                *(self._skip_on_error(label, ident, fetch(ident)) for ident in batch)
            )
            out.extend(r for r in results if r is not None)
        return out

    @staticmethod
    def _live(records: list[ConsentRecord], include_expired: bool) -> list[ConsentRecord]:
        if include_expired:
            return records
        return [r for r in records if r.is_active and not r.is_expired]

    async def list_patient_consents(
        self, patient: str, include_expired: bool = False
    ) -> list[ConsentRecord]:
        events = await self._all_events(patient)
        ids = projections.minted_consent_ids(events)
        records = await self._resolve_many(
            "consent", ids, lambda cid: self.get_consent_record(cid, events)
        )
        return self._live([r for r in records if r.patient == patient], include_expired)

    async def list_provider_consents(
        self, provider: str, include_expired: bool = False
    ) -> list[ConsentRecord]:
        # Direct grants and approved requests both mint consent ids
        events = await self._all_events()
        ids = projections.minted_consent_ids(events)
        records = await self._resolve_many(
            "consent", ids, lambda cid: self.get_consent_record(cid, events)
        )
        mine = [r for r in records if r.provider.lower() == provider.lower()]
        return self._live(mine, include_expired)

    async def list_patient_requests(
        self, patient: str, status: str = "all"
    ) -> list[AccessRequest]:
        events = await self.access_request_events(patient)
        ids = list(
            dict.fromkeys(
                e.request_id
                for e in events
                if e.type is EventType.ACCESS_REQUESTED and e.request_id is not None
            )
        )
        requests = await self._resolve_many(
            "request", ids, lambda rid: self.get_access_request(rid, events)
        )
        if status == "all":
            return requests
        return [r for r in requests if r.status is RequestStatus(status)]

    async def list_pending_requests(self, patient: str) -> list[AccessRequest]:
        events = await self.access_request_events(patient)
        return await self._resolve_pending(projections.pending_request_ids(events), events)

    async def list_provider_pending_requests(self, provider: str) -> list[AccessRequest]:
        events = await self.access_request_events()
        ids = projections.pending_request_ids(events, requester=provider)
        return await self._resolve_pending(ids, events)

    async def _resolve_pending(
        self, ids: list[int], events: list[Event]
    ) -> list[AccessRequest]:
        requests = await self._resolve_many(
            "request", ids, lambda rid: self.get_access_request(rid, events)
        )
        return [r for r in requests if r.status is RequestStatus.PENDING]

    # -- history ------------------------------------------------------------

    async def consent_history(self, patient: str) -> list[Event]:
        events = await self._all_events(patient)
        return projections.consent_history(events, self._clock())
