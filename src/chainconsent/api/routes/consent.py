"""Consent status, record, listing and history endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Request

from chainconsent.validation import parse_id

router = APIRouter(prefix="/api/consent")

__all__ = ["router"]


@router.get(
    "/status",
    summary="Is there an active consent for this patient, provider and data type?",
    operation_id="consent_status",
)
async def consent_status(
    request: Request,
    patient_address: str | None = Query(None, alias="patientAddress"),
    provider_address: str | None = Query(None, alias="providerAddress"),
    data_type: str | None = Query(None, alias="dataType"),
) -> dict[str, Any]:
    service = request.app.state.service
    status = await service.get_consent_status(patient_address, provider_address, data_type)
    return {"success": True, "data": status}


@router.get("/patient/{address}", summary="Consents granted by a patient", operation_id="patient_consents")
async def patient_consents(
    address: str,
    request: Request,
    include_expired: bool = Query(False, alias="includeExpired"),
) -> dict[str, Any]:
    records = await request.app.state.service.list_patient_consents(address, include_expired)
    return {"success": True, "data": records}


@router.get("/provider/{address}", summary="Consents held by a provider", operation_id="provider_consents")
async def provider_consents(
    address: str,
    request: Request,
    include_expired: bool = Query(False, alias="includeExpired"),
) -> dict[str, Any]:
    records = await request.app.state.service.list_provider_consents(address, include_expired)
    return {"success": True, "data": records}


@router.get("/history/{address}", summary="Consent history, newest first", operation_id="consent_history")
async def consent_history(address: str, request: Request) -> dict[str, Any]:
    events = await request.app.state.service.get_consent_history(address)
    return {"success": True, "data": events}


@router.get("/{consent_id}", summary="Consent record by id", operation_id="consent_record")
async def consent_record(consent_id: str, request: Request) -> dict[str, Any]:
    record = await request.app.state.service.get_consent_record(parse_id(consent_id, "consentId"))
    return {"success": True, "data": record}
