"""Write-path notifications that invalidate cached query results.

Called by whatever submits consent transactions once they are confirmed.
"""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from chainconsent.errors import ValidationError

router = APIRouter(prefix="/api/cache")

__all__ = ["router"]


class InvalidationIn(BaseModel):
    """A confirmed write on the ledger."""

    action: Literal["grant", "revoke", "request", "respond"]
    patient_address: str = Field(alias="patientAddress")
    consent_id: int | None = Field(None, alias="consentId")
    request_id: int | None = Field(None, alias="requestId")
    approved: bool | None = None


@router.post("/invalidate", summary="Invalidate caches after a write", operation_id="cache_invalidate")
async def invalidate(body: InvalidationIn, request: Request) -> dict[str, Any]:
    service = request.app.state.service
    if body.action == "grant":
        removed = await service.on_consent_granted(body.patient_address, body.consent_id)
    elif body.action == "revoke":
        removed = await service.on_consent_revoked(body.patient_address, body.consent_id)
    elif body.action == "request":
        removed = await service.on_access_requested(body.patient_address, body.request_id)
    else:
        if body.approved is None:
            raise ValidationError("approved is required for a response", "approved", None)
        removed = await service.on_access_responded(
            body.patient_address, body.request_id, body.approved, body.consent_id
        )
    return {"success": True, "data": {"action": body.action, "keysRemoved": removed}}
