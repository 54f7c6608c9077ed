"""Cache key layout, TTL plan and invalidation patterns.

Keys are namespaced by query kind. Addresses are always lower-cased before
they reach this module. Patterns use glob syntax (``*`` wildcard).
"""

from __future__ import annotations

__all__ = [
    "TTL_CONSENT_RECORD",
    "TTL_CONSENT_STATUS",
    "TTL_EVENTS",
    "TTL_HISTORY",
    "TTL_LISTING",
    "TTL_PENDING_REQUEST",
    "TTL_REQUEST_LISTING",
    "TTL_SETTLED_REQUEST",
    "access_request_events_key",
    "access_request_key",
    "consent_events_key",
    "consent_history_key",
    "consent_invalidation_patterns",
    "consent_record_key",
    "consent_status_key",
    "patient_consents_key",
    "patient_requests_key",
    "provider_consents_key",
    "provider_pending_key",
    "request_invalidation_patterns",
]

# Seconds. Point lookups of settled state live longest; anything that a new
# request or response can change lives shortest.
TTL_CONSENT_STATUS = 90
TTL_CONSENT_RECORD = 90
TTL_LISTING = 15
TTL_PENDING_REQUEST = 10
TTL_SETTLED_REQUEST = 300
TTL_REQUEST_LISTING = 15
TTL_EVENTS = 15
TTL_HISTORY = 15


def _opt(value: int | None) -> str:
    return "null" if value is None else str(value)


def consent_status_key(patient: str, provider: str, data_type: str) -> str:
    return f"consent:status:{patient}:{provider}:{data_type}"


def consent_record_key(consent_id: int) -> str:
    return f"consent:record:{consent_id}"


def patient_consents_key(patient: str, include_expired: bool) -> str:
    return f"consent:patient:{patient}:{str(include_expired).lower()}"


def provider_consents_key(provider: str, include_expired: bool) -> str:
    return f"consent:provider:{provider}:{str(include_expired).lower()}"


def access_request_key(request_id: int) -> str:
    return f"request:{request_id}"


def patient_requests_key(patient: str, status: str) -> str:
    return f"requests:patient:{patient}:{status}"


def provider_pending_key(provider: str) -> str:
    return f"requests:provider:{provider}:pending"


def consent_events_key(patient: str | None, from_block: int | None, to_block: int | None) -> str:
    return f"events:consent:{patient or 'all'}:{_opt(from_block)}:{_opt(to_block)}"


def access_request_events_key(
    patient: str | None, from_block: int | None, to_block: int | None
) -> str:
    return f"events:requests:{patient or 'all'}:{_opt(from_block)}:{_opt(to_block)}"


def consent_history_key(patient: str) -> str:
    return f"history:{patient}"


def consent_invalidation_patterns(patient: str, consent_id: int | None = None) -> list[str]:
    """Everything a grant or revocation for *patient* can change.

    Status and listing keys for other patients are dropped too: the provider
    side of a listing is not known from the patient alone.
    """
    patterns = [
        "consent:status:*",
        "consent:patient:*",
        "consent:provider:*",
        f"events:consent:{patient}:*",
        "events:consent:all:*",
        consent_history_key(patient),
    ]
    if consent_id is not None:
        patterns.insert(0, consent_record_key(consent_id))
    return patterns


def request_invalidation_patterns(patient: str, request_id: int | None = None) -> list[str]:
    """Everything a new request or a response for *patient* can change."""
    patterns = [
        f"requests:patient:{patient}:*",
        "requests:patient:*:pending",
        "requests:patient:*:all",
        "requests:provider:*",
        f"events:requests:{patient}:*",
        "events:requests:all:*",
    ]
    if request_id is not None:
        patterns.insert(0, access_request_key(request_id))
    return patterns
