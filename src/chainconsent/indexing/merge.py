"""Merge indexed and freshly fetched events into one canonical sequence.

Pure functions, no I/O.
"""

from __future__ import annotations

from collections.abc import Iterable

from chainconsent.models import Event, EventType

__all__ = ["backfill_request_details", "canonical_order", "merge_events"]

_RESPONSE_TYPES = (EventType.ACCESS_APPROVED, EventType.ACCESS_DENIED)


def canonical_order(event: Event) -> tuple[int, int]:
    # Missing log index sorts as 0; the stable sort keeps insertion order
    return (event.block_number, event.log_index or 0)


def merge_events(indexed: Iterable[Event], fresh: Iterable[Event]) -> list[Event]:
    """Concatenate, drop duplicates (first seen wins), sort ascending.

    Indexed events come first so they win over a fresh copy of the same
    fact from an overlapping fetch window.
    """
    seen: set[str] = set()
    unique: list[Event] = []
    for source in (indexed, fresh):
        for event in source:
            key = event.dedup_key
            if key in seen:
                continue
            seen.add(key)
            unique.append(event)
    unique.sort(key=canonical_order)
    return unique


def backfill_request_details(events: list[Event]) -> list[Event]:
    """Copy requester, data types, purposes and expiration onto responses.

    AccessApproved / AccessDenied logs only name the request id and patient;
    the details live on the AccessRequested event of the same request.
    """
    requested = {
        e.request_id: e
        for e in events
        if e.type is EventType.ACCESS_REQUESTED and e.request_id is not None
    }
    out: list[Event] = []
    for event in events:
        origin = requested.get(event.request_id) if event.type in _RESPONSE_TYPES else None
        if origin is None:
            out.append(event)
            continue
        out.append(
            event.model_copy(
                update={
                    "provider": event.provider or origin.provider,
                    "data_types": event.data_types or origin.data_types,
                    "purposes": event.purposes or origin.purposes,
                    "expiration_time": event.expiration_time or origin.expiration_time,
                }
            )
        )
    return out
