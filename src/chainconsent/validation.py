"""Input validation and normalisation. Runs before any I/O."""

from __future__ import annotations

import re
from typing import Any

from chainconsent.errors import InvalidAddressError, InvalidIdError, ValidationError

__all__ = [
    "ZERO_ADDRESS",
    "normalize_address",
    "parse_id",
    "validate_block_range",
    "validate_id",
    "validate_non_empty",
]

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def normalize_address(address: Any, field: str = "address") -> str:
    """Validate a 20-byte hex address and return it lower-cased."""
    if not isinstance(address, str) or not _ADDRESS_RE.match(address):
        raise InvalidAddressError(address, field)
    normalized = address.lower()
    if normalized == ZERO_ADDRESS:
        raise InvalidAddressError(address, field)
    return normalized


def validate_id(value: Any, field: str = "id") -> int:
    # bool is an int subclass; True is not a consent id
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidIdError(value, field)
    return value


def parse_id(value: str, field: str = "id") -> int:
    """Parse a decimal id taken from a URL path."""
    if not value.isascii() or not value.isdigit():
        raise InvalidIdError(value, field)
    return int(value)


def validate_non_empty(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required and must be a non-empty string", field, value)
    return value


def validate_block_range(
    from_block: int | None,
    to_block: int | None,
    max_width: int = 10_000,
) -> None:
    """Reject negative bounds, inverted ranges and ranges wider than *max_width*."""
    for name, value in (("fromBlock", from_block), ("toBlock", to_block)):
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(f"{name} must be a non-negative integer", name, value)
    if from_block is None or to_block is None:
        return
    if from_block > to_block:
        raise ValidationError("fromBlock must be <= toBlock", "fromBlock", from_block)
    if to_block - from_block > max_width:
        raise ValidationError(
            f"Block range cannot exceed {max_width} blocks", "toBlock", to_block
        )
