"""HTTP ledger gateway client with typed errors."""

from __future__ import annotations

from typing import Any

import httpx

from chainconsent.errors import ConnectivityError, NotFoundError, UpstreamError
from chainconsent.ledger.decode import (
    decode_access_request,
    decode_consent_record,
    decode_events,
)
from chainconsent.models import Event, EventType, RawAccessRequest, RawConsentRecord

__all__ = ["HttpLedgerClient"]


class HttpLedgerClient:
    """Talks to a ledger gateway that exposes contract logs and records as JSON."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def _get(self, path: str, operation: str, params: dict[str, Any] | None = None) -> Any:
        try:
            resp = await self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise ConnectivityError(f"{operation} timed out", operation=operation) from e
        except httpx.HTTPError as e:
            raise ConnectivityError(f"Ledger unreachable: {e}", operation=operation) from e

        if resp.status_code == 404:
            return None
        if resp.status_code >= 500:
            raise ConnectivityError(
                f"Ledger gateway returned {resp.status_code}", operation=operation
            )
        if resp.status_code >= 400:
            raise UpstreamError(f"Ledger gateway returned {resp.status_code}", operation=operation)
        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamError("Ledger gateway returned invalid JSON", operation=operation) from e

    async def query_events(
        self,
        event_type: EventType,
        *,
        patient: str | None = None,
        from_block: int = 0,
        to_block: int | None = None,
    ) -> list[Event]:
        params: dict[str, Any] = {
            "fromBlock": from_block,
            "toBlock": "latest" if to_block is None else to_block,
        }
        if patient:
            params["patient"] = patient
        body = await self._get(f"/events/{event_type.value}", "query_events", params)
        logs = body.get("events") if isinstance(body, dict) else body
        if not isinstance(logs, list):
            raise UpstreamError("events payload is not a list", operation="query_events")

        events: list[Event] = []
        for log in logs:
            events.extend(decode_events(log, event_type))
        return events

    async def read_consent(self, consent_id: int) -> RawConsentRecord:
        body = await self._get(f"/consents/{consent_id}", "read_consent")
        if body is None:
            raise NotFoundError("Consent", consent_id)
        return decode_consent_record(body)

    async def read_access_request(self, request_id: int) -> RawAccessRequest:
        body = await self._get(f"/requests/{request_id}", "read_access_request")
        if body is None:
            raise NotFoundError("Access request", request_id)
        return decode_access_request(body)

    async def current_block_height(self) -> int:
        body = await self._get("/block-height", "current_block_height")
        height = body.get("blockNumber") if isinstance(body, dict) else body
        if isinstance(height, bool) or not isinstance(height, int):
            raise UpstreamError("block height is not an integer", operation="current_block_height")
        return height

    async def close(self) -> None:
        await self._client.aclose()
