"""Access request endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Request

from chainconsent.validation import parse_id

router = APIRouter(prefix="/api/requests")

__all__ = ["router"]


@router.get("/patient/{address}", summary="Access requests addressed to a patient", operation_id="patient_requests")
async def patient_requests(
    address: str,
    request: Request,
    status: str = Query("all", description="pending | approved | denied | all"),
) -> dict[str, Any]:
    requests = await request.app.state.service.list_patient_requests(address, status)
    return {"success": True, "data": requests}


@router.get(
    "/provider/{address}/pending",
    summary="Pending access requests made by a provider",
    operation_id="provider_pending_requests",
)
async def provider_pending_requests(address: str, request: Request) -> dict[str, Any]:
    requests = await request.app.state.service.list_provider_pending_requests(address)
    return {"success": True, "data": requests}


@router.get("/{request_id}", summary="Access request by id", operation_id="access_request")
async def access_request(request_id: str, request: Request) -> dict[str, Any]:
    service = request.app.state.service
    access = await service.get_access_request(parse_id(request_id, "requestId"))
    return {"success": True, "data": access}
