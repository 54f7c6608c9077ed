"""Raw canonical event sequences."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Request

router = APIRouter(prefix="/api/events")

__all__ = ["router"]


@router.get("/consent", summary="ConsentGranted / ConsentRevoked events", operation_id="consent_events")
async def consent_events(
    request: Request,
    patient_address: str | None = Query(None, alias="patientAddress"),
    from_block: int | None = Query(None, alias="fromBlock"),
    to_block: int | None = Query(None, alias="toBlock"),
) -> dict[str, Any]:
    service = request.app.state.service
    events = await service.get_consent_events(patient_address, from_block, to_block)
    return {"success": True, "data": events}


@router.get("/requests", summary="Access request lifecycle events", operation_id="request_events")
async def request_events(
    request: Request,
    patient_address: str | None = Query(None, alias="patientAddress"),
    from_block: int | None = Query(None, alias="fromBlock"),
    to_block: int | None = Query(None, alias="toBlock"),
) -> dict[str, Any]:
    service = request.app.state.service
    events = await service.get_access_request_events(patient_address, from_block, to_block)
    return {"success": True, "data": events}
