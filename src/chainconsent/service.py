"""Cache-fronted query facade.

Every public query validates and normalises its inputs before any I/O,
then reads through the QueryCache into the StateResolver. Write hooks only
invalidate; transactions are submitted elsewhere.
"""

from __future__ import annotations

import logging
from functools import partial
from typing import TYPE_CHECKING, Any

from pydantic import TypeAdapter

from chainconsent.cache import keys
from chainconsent.errors import ValidationError
from chainconsent.models import (
    AccessRequest,
    ConsentRecord,
    ConsentStatus,
    Event,
    RequestStatus,
)
from chainconsent.validation import (
    normalize_address,
    validate_block_range,
    validate_id,
    validate_non_empty,
)

if TYPE_CHECKING:
    from chainconsent.cache.query_cache import QueryCache
    from chainconsent.resolution.resolver import StateResolver

__all__ = ["ConsentQueryService", "REQUEST_STATUS_FILTERS"]

logger = logging.getLogger(__name__)

REQUEST_STATUS_FILTERS = frozenset({"pending", "approved", "denied", "all"})

_STATUS = TypeAdapter(ConsentStatus)
_RECORD = TypeAdapter(ConsentRecord)
_RECORDS = TypeAdapter(list[ConsentRecord])
_REQUEST = TypeAdapter(AccessRequest)
_REQUESTS = TypeAdapter(list[AccessRequest])
_EVENTS = TypeAdapter(list[Event])


def _request_ttl(request: AccessRequest) -> int:
    if request.status is RequestStatus.PENDING:
        return keys.TTL_PENDING_REQUEST
    return keys.TTL_SETTLED_REQUEST


class ConsentQueryService:
    """Read-side entry point for consent and access-request state."""

    def __init__(
        self,
        resolver: StateResolver,
        cache: QueryCache,
        *,
        max_block_range: int = 10_000,
    ) -> None:
        self._resolver = resolver
        self._cache = cache
        self._max_block_range = max_block_range

    # -- consents -----------------------------------------------------------

    async def get_consent_status(
        self, patient: Any, provider: Any, data_type: Any
    ) -> ConsentStatus:
        patient = normalize_address(patient, "patientAddress")
        provider = normalize_address(provider, "providerAddress")
        data_type = validate_non_empty(data_type, "dataType")
        return await self._cache.get_or_load(
            keys.consent_status_key(patient, provider, data_type),
            _STATUS,
            lambda: self._resolver.resolve_consent_status(patient, provider, data_type),
            keys.TTL_CONSENT_STATUS,
        )

    async def get_consent_record(self, consent_id: Any) -> ConsentRecord:
        consent_id = validate_id(consent_id, "consentId")
        return await self._cache.get_or_load(
            keys.consent_record_key(consent_id),
            _RECORD,
            lambda: self._resolver.get_consent_record(consent_id),
            keys.TTL_CONSENT_RECORD,
        )

    async def list_patient_consents(
        self, patient: Any, include_expired: bool = False
    ) -> list[ConsentRecord]:
        patient = normalize_address(patient, "patientAddress")
        return await self._cache.get_or_load(
            keys.patient_consents_key(patient, include_expired),
            _RECORDS,
            lambda: self._resolver.list_patient_consents(patient, include_expired),
            keys.TTL_LISTING,
        )

    async def list_provider_consents(
        self, provider: Any, include_expired: bool = False
    ) -> list[ConsentRecord]:
        provider = normalize_address(provider, "providerAddress")
        return await self._cache.get_or_load(
            keys.provider_consents_key(provider, include_expired),
            _RECORDS,
            lambda: self._resolver.list_provider_consents(provider, include_expired),
            keys.TTL_LISTING,
        )

    async def get_consent_history(self, patient: Any) -> list[Event]:
        patient = normalize_address(patient, "patientAddress")
        return await self._cache.get_or_load(
            keys.consent_history_key(patient),
            _EVENTS,
            lambda: self._resolver.consent_history(patient),
            keys.TTL_HISTORY,
        )

    # -- access requests ----------------------------------------------------

    async def get_access_request(self, request_id: Any) -> AccessRequest:
        request_id = validate_id(request_id, "requestId")
        return await self._cache.get_or_load(
            keys.access_request_key(request_id),
            _REQUEST,
            lambda: self._resolver.get_access_request(request_id),
            _request_ttl,
        )

    async def list_patient_requests(
        self, patient: Any, status: str = "all"
    ) -> list[AccessRequest]:
        patient = normalize_address(patient, "patientAddress")
        if status not in REQUEST_STATUS_FILTERS:
            raise ValidationError(
                "status must be one of: pending, approved, denied, all", "status", status
            )
        if status == "pending":
            loader = partial(self._resolver.list_pending_requests, patient)
            ttl = keys.TTL_PENDING_REQUEST
        else:
            loader = partial(self._resolver.list_patient_requests, patient, status)
            ttl = keys.TTL_REQUEST_LISTING
        return await self._cache.get_or_load(
            keys.patient_requests_key(patient, status), _REQUESTS, loader, ttl
        )

    async def list_pending_requests(self, patient: Any) -> list[AccessRequest]:
        return await self.list_patient_requests(patient, "pending")

    async def list_provider_pending_requests(self, provider: Any) -> list[AccessRequest]:
        provider = normalize_address(provider, "providerAddress")
        return await self._cache.get_or_load(
            keys.provider_pending_key(provider),
            _REQUESTS,
            lambda: self._resolver.list_provider_pending_requests(provider),
            keys.TTL_PENDING_REQUEST,
        )

    # -- event sequences ----------------------------------------------------

    def _event_scope(
        self, patient: Any, from_block: int | None, to_block: int | None
    ) -> str | None:
        validate_block_range(from_block, to_block, self._max_block_range)
        if patient is None:
            return None
        return normalize_address(patient, "patientAddress")

    async def get_consent_events(
        self,
        patient: Any = None,
        from_block: int | None = None,
        to_block: int | None = None,
    ) -> list[Event]:
        scope = self._event_scope(patient, from_block, to_block)
        return await self._cache.get_or_load(
            keys.consent_events_key(scope, from_block, to_block),
            _EVENTS,
            lambda: self._resolver.consent_events(scope, from_block, to_block),
            keys.TTL_EVENTS,
        )

    async def get_access_request_events(
        self,
        patient: Any = None,
        from_block: int | None = None,
        to_block: int | None = None,
    ) -> list[Event]:
        scope = self._event_scope(patient, from_block, to_block)
        return await self._cache.get_or_load(
            keys.access_request_events_key(scope, from_block, to_block),
            _EVENTS,
            lambda: self._resolver.access_request_events(scope, from_block, to_block),
            keys.TTL_EVENTS,
        )

    # -- write notifications ------------------------------------------------

    async def on_consent_granted(self, patient: Any, consent_id: Any = None) -> int:
        patient = normalize_address(patient, "patientAddress")
        if consent_id is not None:
            consent_id = validate_id(consent_id, "consentId")
        return await self._cache.invalidate(keys.consent_invalidation_patterns(patient, consent_id))

    async def on_consent_revoked(self, patient: Any, consent_id: Any) -> int:
        patient = normalize_address(patient, "patientAddress")
        consent_id = validate_id(consent_id, "consentId")
        return await self._cache.invalidate(keys.consent_invalidation_patterns(patient, consent_id))

    async def on_access_requested(self, patient: Any, request_id: Any = None) -> int:
        patient = normalize_address(patient, "patientAddress")
        if request_id is not None:
            request_id = validate_id(request_id, "requestId")
        return await self._cache.invalidate(keys.request_invalidation_patterns(patient, request_id))

    async def on_access_responded(
        self,
        patient: Any,
        request_id: Any,
        approved: bool,
        consent_id: Any = None,
    ) -> int:
        """A response settles the request; an approval also mints a consent."""
        patient = normalize_address(patient, "patientAddress")
        request_id = validate_id(request_id, "requestId")
        patterns = keys.request_invalidation_patterns(patient, request_id)
        if approved:
            if consent_id is not None:
                consent_id = validate_id(consent_id, "consentId")
            patterns += keys.consent_invalidation_patterns(patient, consent_id)
        removed = await self._cache.invalidate(patterns)
        logger.info(
            "Invalidated %d cache keys after request %s was %s",
            removed,
            request_id,
            "approved" if approved else "denied",
        )
        return removed
