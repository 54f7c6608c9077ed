"""Typed errors for the consent read path."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

__all__ = [
    "ConsentServiceError",
    "ValidationError",
    "InvalidAddressError",
    "InvalidIdError",
    "NotFoundError",
    "ConnectivityError",
    "UpstreamError",
    "call_with_timeout",
]

T = TypeVar("T")


class ConsentServiceError(Exception):
    """Base error with a stable code and HTTP status."""

    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(ConsentServiceError):
    """Malformed input, rejected before any I/O."""

    code = "INVALID_INPUT"
    status_code = 400

    def __init__(self, message: str, field: str | None = None, value: Any = None) -> None:
        details = {"field": field, "value": value} if field else None
        super().__init__(message, details=details)
        self.field = field
        self.value = value


class InvalidAddressError(ValidationError):
    code = "INVALID_ADDRESS"

    def __init__(self, address: Any, field: str = "address") -> None:
        super().__init__(f"Invalid address format: {address}", field, address)


class InvalidIdError(ValidationError):
    code = "INVALID_ID"

    def __init__(self, value: Any, field: str = "id") -> None:
        super().__init__("Invalid ID: must be a non-negative integer", field, value)


class NotFoundError(ConsentServiceError):
    """The id is valid but nothing on the ledger matches it."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, identifier: Any) -> None:
        super().__init__(
            f"{resource} with ID {identifier} not found",
            details={"resource": resource, "id": identifier},
        )
        self.resource = resource
        self.identifier = identifier


class ConnectivityError(ConsentServiceError):
    """Ledger or store unreachable or timed out. Safe to retry."""

    code = "LEDGER_UNAVAILABLE"
    status_code = 503
    retryable = True

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(message, details={"operation": operation} if operation else None)
        self.operation = operation


class UpstreamError(ConsentServiceError):
    """The ledger answered with a shape we cannot decode."""

    code = "UPSTREAM_ERROR"
    status_code = 502

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(message, details={"operation": operation} if operation else None)
        self.operation = operation


async def call_with_timeout(awaitable: Awaitable[T], seconds: float, operation: str) -> T:
    """Await *awaitable*, turning a timeout into ConnectivityError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except TimeoutError as e:
        msg = f"{operation} timed out after {seconds:g}s"
        raise ConnectivityError(msg, operation=operation) from e
