"""Domain models: ledger events, filters and current-state projections."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict

__all__ = [
    "AccessRequest",
    "ConsentRecord",
    "ConsentStatus",
    "CONSENT_EVENT_TYPES",
    "Event",
    "EventFilter",
    "EventType",
    "RawAccessRequest",
    "RawConsentRecord",
    "REQUEST_EVENT_TYPES",
    "RequestStatus",
    "is_expired",
    "to_access_request",
    "to_consent_record",
]


class EventType(str, Enum):
    CONSENT_GRANTED = "ConsentGranted"
    CONSENT_REVOKED = "ConsentRevoked"
    # Synthesised during resolution, never read from the ledger
    CONSENT_EXPIRED = "ConsentExpired"
    ACCESS_REQUESTED = "AccessRequested"
    ACCESS_APPROVED = "AccessApproved"
    ACCESS_DENIED = "AccessDenied"


CONSENT_EVENT_TYPES: tuple[EventType, ...] = (
    EventType.CONSENT_GRANTED,
    EventType.CONSENT_REVOKED,
)
REQUEST_EVENT_TYPES: tuple[EventType, ...] = (
    EventType.ACCESS_REQUESTED,
    EventType.ACCESS_APPROVED,
    EventType.ACCESS_DENIED,
)


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class Event(BaseModel):
    """One ledger fact, already decoded into canonical shape.

    ``provider`` holds the grantee of a consent or the requester of an
    access request. A batch grant log naming several consent ids is
    represented as one Event per id sharing transaction hash and log index.
    """

    model_config = ConfigDict(frozen=True)

    type: EventType
    block_number: int
    transaction_hash: str
    log_index: int | None = None
    consent_id: int | None = None
    consent_ids: tuple[int, ...] = ()
    request_id: int | None = None
    patient: str | None = None
    provider: str | None = None
    data_types: tuple[str, ...] = ()
    purposes: tuple[str, ...] = ()
    expiration_time: datetime | None = None
    timestamp: datetime | None = None

    @property
    def requester(self) -> str | None:
        return self.provider

    @property
    def subject_id(self) -> int | None:
        if self.type in REQUEST_EVENT_TYPES:
            return self.request_id
        return self.consent_id

    @property
    def dedup_key(self) -> str:
        subject = self.subject_id
        return f"{self.transaction_hash}-{subject if subject is not None else self.type.value}"

    @property
    def minted_consent_ids(self) -> tuple[int, ...]:
        """Consent ids this event brings into existence."""
        if self.type is EventType.CONSENT_GRANTED and self.consent_id is not None:
            return (self.consent_id,)
        if self.type is EventType.ACCESS_APPROVED:
            return self.consent_ids
        return ()


class EventFilter(BaseModel):
    """Filter for persisted-index queries. Empty fields match everything."""

    model_config = ConfigDict(frozen=True)

    event_types: tuple[EventType, ...] = ()
    patient: str | None = None
    provider: str | None = None
    request_id: int | None = None
    from_block: int | None = None
    to_block: int | None = None

    def matches(self, event: Event) -> bool:
        if self.event_types and event.type not in self.event_types:
            return False
        if self.patient and event.patient != self.patient:
            return False
        if self.provider and event.provider != self.provider:
            return False
        if self.request_id is not None and event.request_id != self.request_id:
            return False
        if self.from_block is not None and event.block_number < self.from_block:
            return False
        return self.to_block is None or event.block_number <= self.to_block


class RawConsentRecord(BaseModel):
    """Consent record as returned by a direct ledger read."""

    model_config = ConfigDict(frozen=True)

    patient: str
    provider: str
    data_types: tuple[str, ...] = ()
    purposes: tuple[str, ...] = ()
    timestamp: datetime | None = None
    expiration_time: datetime | None = None
    is_active: bool = True


class RawAccessRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    requester: str
    patient: str
    data_types: tuple[str, ...] = ()
    purposes: tuple[str, ...] = ()
    timestamp: datetime | None = None
    expiration_time: datetime | None = None
    status: RequestStatus = RequestStatus.PENDING


class ConsentRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    consent_id: int
    patient: str
    provider: str
    data_types: tuple[str, ...] = ()
    purposes: tuple[str, ...] = ()
    timestamp: datetime | None = None
    expiration_time: datetime | None = None
    is_active: bool = True
    is_expired: bool = False


class AccessRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: int
    requester: str
    patient: str
    data_types: tuple[str, ...] = ()
    purposes: tuple[str, ...] = ()
    timestamp: datetime | None = None
    expiration_time: datetime | None = None
    status: RequestStatus = RequestStatus.PENDING
    is_expired: bool = False


class ConsentStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    has_consent: bool
    consent_id: int | None = None
    is_expired: bool = False
    expiration_time: datetime | None = None


def is_expired(expiration_time: datetime | None, now: datetime) -> bool:
    return expiration_time is not None and expiration_time < now


def to_consent_record(raw: RawConsentRecord, consent_id: int, now: datetime) -> ConsentRecord:
    return ConsentRecord(
        consent_id=consent_id,
        patient=raw.patient,
        provider=raw.provider,
        data_types=raw.data_types,
        purposes=raw.purposes,
        timestamp=raw.timestamp,
        expiration_time=raw.expiration_time,
        is_active=raw.is_active,
        is_expired=is_expired(raw.expiration_time, now),
    )


def to_access_request(raw: RawAccessRequest, request_id: int, now: datetime) -> AccessRequest:
    return AccessRequest(
        request_id=request_id,
        requester=raw.requester,
        patient=raw.patient,
        data_types=raw.data_types,
        purposes=raw.purposes,
        timestamp=raw.timestamp,
        expiration_time=raw.expiration_time,
        status=raw.status,
        is_expired=is_expired(raw.expiration_time, now),
    )
