"""Ledger client contract + in-memory implementation."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

from chainconsent.errors import ConnectivityError, NotFoundError
from chainconsent.models import (
    Event,
    EventType,
    RawAccessRequest,
    RawConsentRecord,
    RequestStatus,
)

__all__ = ["InMemoryLedger", "LedgerClientProtocol"]


class LedgerClientProtocol(Protocol):
    """Read-only view of the append-only ledger."""

    async def query_events(
        self,
        event_type: EventType,
        *,
        patient: str | None = None,
        from_block: int = 0,
        to_block: int | None = None,
    ) -> list[Event]:
        """Events of one type in ``[from_block, to_block]`` (None = latest)."""
        ...

    async def read_consent(self, consent_id: int) -> RawConsentRecord:
        """Current consent record. Raises NotFoundError."""
        ...

    async def read_access_request(self, request_id: int) -> RawAccessRequest:
        """Current access request. Raises NotFoundError."""
        ...

    async def current_block_height(self) -> int:
        ...

    async def close(self) -> None:
        ...


# ── In-memory implementation (dev / tests) ──────────────


class InMemoryLedger:
    """Append-only ledger backed by a plain list, no external deps.

    The write helpers emit the same events the consent contract does. With
    ``full_events=False`` consent logs carry only patient and ids, as they do
    on chain, and must be enriched from ``read_consent``.
    """

    def __init__(
        self,
        *,
        full_events: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._events: list[Event] = []
        self._consents: dict[int, RawConsentRecord] = {}
        self._requests: dict[int, RawAccessRequest] = {}
        self._block = 0
        self._next_consent_id = 0
        self._next_request_id = 0
        self._full = full_events
        self._clock = clock or (lambda: datetime.now(UTC))
        # Failure injection
        self.fail_reads = False
        self.failing_event_types: set[EventType] = set()
        self.query_calls: list[tuple[EventType, str | None, int, int | None]] = []

    # -- protocol -----------------------------------------------------------

    async def query_events(
        self,
        event_type: EventType,
        *,
        patient: str | None = None,
        from_block: int = 0,
        to_block: int | None = None,
    ) -> list[Event]:
        self.query_calls.append((event_type, patient, from_block, to_block))
        if event_type in self.failing_event_types:
            raise ConnectivityError(f"{event_type.value} query failed", operation="query_events")
        return [
            e
            for e in self._events
            if e.type is event_type
            and (patient is None or e.patient == patient)
            and e.block_number >= from_block
            and (to_block is None or e.block_number <= to_block)
        ]

    async def read_consent(self, consent_id: int) -> RawConsentRecord:
        if self.fail_reads:
            raise ConnectivityError("read_consent unsupported", operation="read_consent")
        try:
            return self._consents[consent_id]
        except KeyError:
            raise NotFoundError("Consent", consent_id) from None

    async def read_access_request(self, request_id: int) -> RawAccessRequest:
        if self.fail_reads:
            raise ConnectivityError(
                "read_access_request unsupported", operation="read_access_request"
            )
        try:
            return self._requests[request_id]
        except KeyError:
            raise NotFoundError("Access request", request_id) from None

    async def current_block_height(self) -> int:
        return self._block

    async def close(self) -> None:
        return None

    # -- write helpers ------------------------------------------------------

    def append(self, event: Event) -> Event:
        """Append a pre-built event (advances the head if needed)."""
        self._block = max(self._block, event.block_number)
        self._events.append(event)
        return event

    def _next_tx(self, timestamp: datetime | None) -> tuple[int, str, datetime]:
        self._block += 1
        return self._block, "0x" + uuid.uuid4().hex * 2, timestamp or self._clock()

    def grant_consent(
        self,
        patient: str,
        provider: str,
        data_types: list[str],
        purposes: list[str],
        *,
        expiration_time: datetime | None = None,
        timestamp: datetime | None = None,
    ) -> int:
        """Batch grant: one consent id covering every data type/purpose pair."""
        block, tx, ts = self._next_tx(timestamp)
        consent_id = self._next_consent_id
        self._next_consent_id += 1
        record = RawConsentRecord(
            patient=patient,
            provider=provider,
            data_types=tuple(data_types),
            purposes=tuple(purposes),
            timestamp=ts,
            expiration_time=expiration_time,
        )
        self._consents[consent_id] = record
        self._events.append(
            Event(
                type=EventType.CONSENT_GRANTED,
                block_number=block,
                transaction_hash=tx,
                log_index=0,
                consent_id=consent_id,
                patient=patient,
                timestamp=ts,
                **self._details(record),
            )
        )
        return consent_id

    def revoke_consent(self, consent_id: int, *, timestamp: datetime | None = None) -> None:
        record = self._consents[consent_id]
        block, tx, ts = self._next_tx(timestamp)
        self._consents[consent_id] = record.model_copy(update={"is_active": False})
        self._events.append(
            Event(
                type=EventType.CONSENT_REVOKED,
                block_number=block,
                transaction_hash=tx,
                log_index=0,
                consent_id=consent_id,
                patient=record.patient,
                timestamp=ts,
                **self._details(record),
            )
        )

    def request_access(
        self,
        requester: str,
        patient: str,
        data_types: list[str],
        purposes: list[str],
        *,
        expiration_time: datetime | None = None,
        timestamp: datetime | None = None,
    ) -> int:
        block, tx, ts = self._next_tx(timestamp)
        request_id = self._next_request_id
        self._next_request_id += 1
        self._requests[request_id] = RawAccessRequest(
            requester=requester,
            patient=patient,
            data_types=tuple(data_types),
            purposes=tuple(purposes),
            timestamp=ts,
            expiration_time=expiration_time,
        )
        # AccessRequested carries its arguments on chain
        self._events.append(
            Event(
                type=EventType.ACCESS_REQUESTED,
                block_number=block,
                transaction_hash=tx,
                log_index=0,
                request_id=request_id,
                patient=patient,
                provider=requester,
                data_types=tuple(data_types),
                purposes=tuple(purposes),
                expiration_time=expiration_time,
                timestamp=ts,
            )
        )
        return request_id

    def respond(
        self,
        request_id: int,
        approved: bool,
        *,
        timestamp: datetime | None = None,
    ) -> int | None:
        """Approve or deny. Approval mints one consent id for the request."""
        request = self._requests[request_id]
        block, tx, ts = self._next_tx(timestamp)
        status = RequestStatus.APPROVED if approved else RequestStatus.DENIED
        self._requests[request_id] = request.model_copy(update={"status": status})

        consent_id: int | None = None
        if approved:
            consent_id = self._next_consent_id
            self._next_consent_id += 1
            self._consents[consent_id] = RawConsentRecord(
                patient=request.patient,
                provider=request.requester,
                data_types=request.data_types,
                purposes=request.purposes,
                timestamp=ts,
                expiration_time=request.expiration_time,
            )
        self._events.append(
            Event(
                type=EventType.ACCESS_APPROVED if approved else EventType.ACCESS_DENIED,
                block_number=block,
                transaction_hash=tx,
                log_index=0,
                request_id=request_id,
                consent_id=consent_id,
                consent_ids=(consent_id,) if consent_id is not None else (),
                patient=request.patient,
                timestamp=ts,
            )
        )
        return consent_id

    def _details(self, record: RawConsentRecord) -> dict[str, object]:
        if not self._full:
            return {}
        return {
            "provider": record.provider,
            "data_types": record.data_types,
            "purposes": record.purposes,
            "expiration_time": record.expiration_time,
        }
