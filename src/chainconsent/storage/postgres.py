"""PostgreSQL connection management."""

from __future__ import annotations

import psycopg

__all__ = ["get_connection"]


def get_connection(dsn: str, connect_timeout: int = 5) -> psycopg.Connection[tuple[object, ...]]:
    """Create a new PostgreSQL connection for the event index."""
    return psycopg.connect(dsn, autocommit=False, connect_timeout=connect_timeout)
