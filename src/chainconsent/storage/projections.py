"""Read-model projections replayed from the canonical event sequence.

Every function here is pure: events and the current instant in, state out.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from datetime import UTC, datetime

from chainconsent.models import (
    AccessRequest,
    ConsentRecord,
    ConsentStatus,
    Event,
    EventType,
    RequestStatus,
    is_expired,
)

__all__ = [
    "consent_history",
    "minted_consent_ids",
    "pending_request_ids",
    "project_access_requests",
    "project_consent_records",
    "resolve_consent_status",
    "synthesize_expirations",
]

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_RETIRING = (EventType.CONSENT_REVOKED, EventType.CONSENT_EXPIRED)


def _recency(event: Event) -> tuple[datetime, int, int]:
    return (event.timestamp or _EPOCH, event.block_number, event.log_index or 0)


def _grants(events: Iterable[Event]) -> Iterator[tuple[int, Event]]:
    """(consent_id, event) for every direct grant and approved request."""
    for event in events:
        for consent_id in event.minted_consent_ids:
            yield consent_id, event


def _matches_provider(event: Event, provider: str) -> bool:
    return (event.provider or "").lower() == provider.lower()


def resolve_consent_status(
    events: Iterable[Event],
    provider: str,
    data_type: str,
    now: datetime,
) -> ConsentStatus:
    """Most recent non-retired, unexpired grant for (provider, data_type).

    Events are walked newest first. Revoked and expired ids are retired; an
    expired grant is retired on the spot and the walk continues, so it never
    hides an older grant that is still active.
    """
    ordered = sorted(events, key=_recency, reverse=True)
    retired = {e.consent_id for e in ordered if e.type in _RETIRING and e.consent_id is not None}

    for consent_id, event in _grants(ordered):
        if consent_id in retired:
            continue
        if not _matches_provider(event, provider) or data_type not in event.data_types:
            continue
        if is_expired(event.expiration_time, now):
            retired.add(consent_id)
            continue
        return ConsentStatus(
            has_consent=True,
            consent_id=consent_id,
            is_expired=False,
            expiration_time=event.expiration_time,
        )
    return ConsentStatus(has_consent=False)


def synthesize_expirations(events: Iterable[Event], now: datetime) -> list[Event]:
    """ConsentExpired pseudo-events for lapsed grants that were never revoked.

    They carry ``block_number=0`` to mark them as not read from the ledger.
    """
    events = list(events)
    retired = {e.consent_id for e in events if e.type in _RETIRING}
    expired: list[Event] = []
    seen: set[int] = set()
    for consent_id, grant in _grants(events):
        if consent_id in retired or consent_id in seen:
            continue
        if not is_expired(grant.expiration_time, now):
            continue
        seen.add(consent_id)
        expired.append(
            Event(
                type=EventType.CONSENT_EXPIRED,
                block_number=0,
                transaction_hash=grant.transaction_hash,
                consent_id=consent_id,
                patient=grant.patient,
                provider=grant.provider,
                data_types=grant.data_types,
                purposes=grant.purposes,
                expiration_time=grant.expiration_time,
                timestamp=grant.expiration_time,
            )
        )
    return expired


def _union(left: tuple[str, ...], right: tuple[str, ...]) -> tuple[str, ...]:
    return left + tuple(v for v in right if v not in left)


def project_consent_records(events: Iterable[Event], now: datetime) -> dict[int, ConsentRecord]:
    """One record per consent id, however many combinations it covers."""
    events = list(events)
    revoked = {
        e.consent_id
        for e in events
        if e.type is EventType.CONSENT_REVOKED and e.consent_id is not None
    }
    records: dict[int, ConsentRecord] = {}
    for consent_id, grant in _grants(events):
        existing = records.get(consent_id)
        if existing is not None:
            # Legacy logs split one batch grant into one event per combination
            records[consent_id] = existing.model_copy(
                update={
                    "data_types": _union(existing.data_types, grant.data_types),
                    "purposes": _union(existing.purposes, grant.purposes),
                }
            )
            continue
        if not grant.patient or not grant.provider:
            continue
        records[consent_id] = ConsentRecord(
            consent_id=consent_id,
            patient=grant.patient,
            provider=grant.provider,
            data_types=grant.data_types,
            purposes=grant.purposes,
            timestamp=grant.timestamp,
            expiration_time=grant.expiration_time,
            is_active=consent_id not in revoked,
            is_expired=is_expired(grant.expiration_time, now),
        )
    return records


def project_access_requests(events: Iterable[Event], now: datetime) -> dict[int, AccessRequest]:
    """Requests with their status. The first response wins; status never reverses."""
    requests: dict[int, AccessRequest] = {}
    for event in events:
        rid = event.request_id
        if rid is None:
            continue
        if event.type is EventType.ACCESS_REQUESTED and rid not in requests:
            if not event.provider or not event.patient:
                continue
            requests[rid] = AccessRequest(
                request_id=rid,
                requester=event.provider,
                patient=event.patient,
                data_types=event.data_types,
                purposes=event.purposes,
                timestamp=event.timestamp,
                expiration_time=event.expiration_time,
                is_expired=is_expired(event.expiration_time, now),
            )
        elif event.type in (EventType.ACCESS_APPROVED, EventType.ACCESS_DENIED):
            current = requests.get(rid)
            if current is None or current.status is not RequestStatus.PENDING:
                continue
            status = (
                RequestStatus.APPROVED
                if event.type is EventType.ACCESS_APPROVED
                else RequestStatus.DENIED
            )
            requests[rid] = current.model_copy(update={"status": status})
    return requests


def pending_request_ids(events: Iterable[Event], requester: str | None = None) -> list[int]:
    """Requested ids minus approved ids minus denied ids, in request order."""
    events = list(events)
    answered = {
        e.request_id
        for e in events
        if e.type in (EventType.ACCESS_APPROVED, EventType.ACCESS_DENIED)
    }
    pending: list[int] = []
    for event in events:
        if event.type is not EventType.ACCESS_REQUESTED or event.request_id is None:
            continue
        if requester is not None and not _matches_provider(event, requester):
            continue
        if event.request_id not in answered and event.request_id not in pending:
            pending.append(event.request_id)
    return pending


def minted_consent_ids(events: Iterable[Event]) -> list[int]:
    """Every consent id minted by a grant or an approval, once each."""
    return list(dict.fromkeys(consent_id for consent_id, _ in _grants(events)))


def consent_history(events: Iterable[Event], now: datetime) -> list[Event]:
    """Ledger events plus synthesised expirations, newest first."""
    events = list(events)
    return sorted(events + synthesize_expirations(events, now), key=_recency, reverse=True)
