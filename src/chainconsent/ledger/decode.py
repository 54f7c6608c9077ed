"""Decode raw ledger payloads into canonical models.

This is the only place that knows about the shapes a ledger node or gateway
may hand back: mappings with camelCase or snake_case keys, positional
tuples, integers encoded as decimal or ``0x`` hex strings, and timestamps as
epoch seconds. Everything past this module sees ``Event``,
``RawConsentRecord`` and ``RawAccessRequest`` only.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from chainconsent.errors import UpstreamError
from chainconsent.models import (
    Event,
    EventType,
    RawAccessRequest,
    RawConsentRecord,
    RequestStatus,
)

__all__ = ["decode_access_request", "decode_consent_record", "decode_events"]

# Positional layouts of the contract's record structs
_CONSENT_FIELDS = (
    "patient",
    "provider",
    "timestamp",
    "expiration_time",
    "is_active",
    "data_types",
    "purposes",
)
_REQUEST_FIELDS = (
    "requester",
    "patient",
    "timestamp",
    "expiration_time",
    "is_processed",
    "status",
    "data_types",
    "purposes",
)

_ALIASES = {
    "patientAddress": "patient",
    "patient_address": "patient",
    "providerAddress": "provider",
    "provider_address": "provider",
    "blockNumber": "block_number",
    "transactionHash": "transaction_hash",
    "logIndex": "log_index",
    "consentId": "consent_id",
    "consentIds": "consent_ids",
    "requestId": "request_id",
    "dataTypes": "data_types",
    "dataType": "data_type",
    "expirationTime": "expiration_time",
    "isActive": "is_active",
    "isProcessed": "is_processed",
    "event": "type",
    "event_type": "type",
}

_STATUS_CODES = {
    0: RequestStatus.PENDING,
    1: RequestStatus.APPROVED,
    2: RequestStatus.DENIED,
}


def _fail(what: str, operation: str) -> UpstreamError:
    return UpstreamError(f"Unexpected ledger payload: {what}", operation=operation)


def _normalise(raw: Any, positional: Sequence[str], operation: str) -> dict[str, Any]:
    if isinstance(raw, Mapping):
        data = dict(raw)
        # Event logs nest their decoded arguments under "args"
        args = data.pop("args", None)
        if isinstance(args, Mapping):
            data = {**args, **data}
    elif isinstance(raw, Sequence) and not isinstance(raw, (str, bytes)):
        if len(raw) < len(positional):
            raise _fail(f"expected {len(positional)} fields, got {len(raw)}", operation)
        data = dict(zip(positional, raw, strict=False))
    else:
        raise _fail(type(raw).__name__, operation)
    return {_ALIASES.get(k, k): v for k, v in data.items()}


def _int(value: Any, field: str, operation: str) -> int:
    if isinstance(value, bool):
        raise _fail(f"{field}={value!r}", operation)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.lower().startswith("0x") else int(value)
        except ValueError:
            pass
    raise _fail(f"{field}={value!r}", operation)


def _opt_int(value: Any, field: str, operation: str) -> int | None:
    return None if value is None else _int(value, field, operation)


def _instant(value: Any, field: str, operation: str, *, zero_is_none: bool) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str) and not value.lower().startswith("0x") and not value.isdigit():
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as e:
            raise _fail(f"{field}={value!r}", operation) from e
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    seconds = _int(value, field, operation)
    if seconds == 0 and zero_is_none:
        return None
    return datetime.fromtimestamp(seconds, tz=UTC)


def _address(value: Any, field: str, operation: str) -> str:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise _fail(f"{field}={value!r}", operation)
    return value.lower()


def _opt_address(value: Any, field: str, operation: str) -> str | None:
    return None if value is None else _address(value, field, operation)


def _strings(data: dict[str, Any], plural: str, singular: str) -> tuple[str, ...]:
    values = data.get(plural)
    if values is None:
        one = data.get(singular)
        return (one,) if one else ()
    return tuple(str(v) for v in values)


def decode_events(raw: Any, event_type: EventType | None = None) -> list[Event]:
    """Decode one log into one or more events.

    A ConsentGranted log names every consent id its transaction minted; it
    becomes one Event per id, all sharing transaction hash and log index.
    """
    op = "decode_events"
    data = _normalise(raw, (), op)
    try:
        etype = EventType(data.get("type") or event_type)
    except ValueError as e:
        raise _fail(f"type={data.get('type')!r}", op) from e

    tx_hash = data.get("transaction_hash")
    if not isinstance(tx_hash, str) or not tx_hash:
        raise _fail("missing transaction_hash", op)

    consent_ids = tuple(_int(c, "consent_ids", op) for c in data.get("consent_ids") or ())
    consent_id = _opt_int(data.get("consent_id"), "consent_id", op)
    provider = data.get("provider")
    if provider is None:
        provider = data.get("requester")

    base: dict[str, Any] = {
        "type": etype,
        "block_number": _int(data.get("block_number"), "block_number", op),
        "transaction_hash": tx_hash,
        "log_index": _opt_int(data.get("log_index"), "log_index", op),
        "request_id": _opt_int(data.get("request_id"), "request_id", op),
        "patient": _opt_address(data.get("patient"), "patient", op),
        "provider": _opt_address(provider, "provider", op),
        "data_types": _strings(data, "data_types", "data_type"),
        "purposes": _strings(data, "purposes", "purpose"),
        "expiration_time": _instant(
            data.get("expiration_time"), "expiration_time", op, zero_is_none=True
        ),
        "timestamp": _instant(data.get("timestamp"), "timestamp", op, zero_is_none=False),
    }

    if etype is EventType.CONSENT_GRANTED and consent_id is None and consent_ids:
        return [Event(**base, consent_id=cid) for cid in consent_ids]
    if consent_id is None and consent_ids:
        consent_id = consent_ids[0]
    return [Event(**base, consent_id=consent_id, consent_ids=consent_ids)]


def decode_consent_record(raw: Any) -> RawConsentRecord:
    op = "read_consent"
    data = _normalise(raw, _CONSENT_FIELDS, op)
    return RawConsentRecord(
        patient=_address(data.get("patient"), "patient", op),
        provider=_address(data.get("provider"), "provider", op),
        data_types=_strings(data, "data_types", "data_type"),
        purposes=_strings(data, "purposes", "purpose"),
        timestamp=_instant(data.get("timestamp"), "timestamp", op, zero_is_none=False),
        expiration_time=_instant(
            data.get("expiration_time"), "expiration_time", op, zero_is_none=True
        ),
        is_active=bool(data.get("is_active", True)),
    )


def decode_access_request(raw: Any) -> RawAccessRequest:
    op = "read_access_request"
    data = _normalise(raw, _REQUEST_FIELDS, op)
    status_raw = data.get("status", 0)
    if isinstance(status_raw, str) and not status_raw.isdigit():
        try:
            status = RequestStatus(status_raw.lower())
        except ValueError as e:
            raise _fail(f"status={status_raw!r}", op) from e
    else:
        code = _int(status_raw, "status", op)
        if code not in _STATUS_CODES:
            raise _fail(f"status={code}", op)
        status = _STATUS_CODES[code]
    return RawAccessRequest(
        requester=_address(data.get("requester"), "requester", op),
        patient=_address(data.get("patient"), "patient", op),
        data_types=_strings(data, "data_types", "data_type"),
        purposes=_strings(data, "purposes", "purpose"),
        timestamp=_instant(data.get("timestamp"), "timestamp", op, zero_is_none=False),
        expiration_time=_instant(
            data.get("expiration_time"), "expiration_time", op, zero_is_none=True
        ),
        status=status,
    )
