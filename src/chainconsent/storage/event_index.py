"""Persisted event index: protocol and implementations.

Holds previously observed ledger events plus, per event type, the highest
block number known to be fully indexed (the watermark).
"""

from __future__ import annotations

import asyncio
import threading
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from chainconsent.models import Event, EventFilter, EventType

if TYPE_CHECKING:
    import psycopg

__all__ = ["EventIndexProtocol", "InMemoryEventIndex", "PostgresEventIndex"]


class EventIndexProtocol(Protocol):
    """Minimal contract for the persisted event index."""

    async def get_watermark(self, event_type: EventType) -> int | None:
        """Highest fully indexed block, or None if the type was never indexed."""
        ...

    async def set_watermark(self, event_type: EventType, block_number: int) -> None:
        """Raise the watermark. A value at or below the stored one is ignored."""
        ...

    async def query_events(self, filters: EventFilter) -> list[Event]:
        """Stored events matching *filters*, ascending by (block, log index)."""
        ...

    async def insert_events(self, events: list[Event]) -> int:
        """Store events, skipping ones already present. Returns rows inserted."""
        ...

    async def ping(self) -> None:
        """Raise if the index cannot serve queries."""
        ...


def _storage_key(event: Event) -> tuple[str, int, str, int]:
    subject = event.subject_id
    return (
        event.transaction_hash,
        event.log_index or 0,
        event.type.value,
        -1 if subject is None else subject,
    )


# ── In-memory implementation (dev / tests) ──────────────


class InMemoryEventIndex:
    """Index backed by plain dicts, no external deps."""

    def __init__(self) -> None:
        self._events: dict[tuple[str, int, str, int], Event] = {}
        self._watermarks: dict[EventType, int] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            msg = "event index unavailable"
            raise ConnectionError(msg)

    async def ping(self) -> None:
        self._check()

    async def get_watermark(self, event_type: EventType) -> int | None:
        self._check()
        return self._watermarks.get(event_type)

    async def set_watermark(self, event_type: EventType, block_number: int) -> None:
        self._check()
        current = self._watermarks.get(event_type)
        if current is None or block_number > current:
            self._watermarks[event_type] = block_number

    async def query_events(self, filters: EventFilter) -> list[Event]:
        self._check()
        out = [e for e in self._events.values() if filters.matches(e)]
        out.sort(key=lambda e: (e.block_number, e.log_index or 0))
        return out

    async def insert_events(self, events: list[Event]) -> int:
        self._check()
        inserted = 0
        for event in events:
            key = _storage_key(event)
            if key not in self._events:
                self._events[key] = event
                inserted += 1
        return inserted


# ── PostgreSQL implementation ────────────────────────────

SCHEMA_SQL = (
    """
    CREATE TABLE IF NOT EXISTS ledger_events (
        id               BIGSERIAL PRIMARY KEY,
        event_type       VARCHAR(50)  NOT NULL,
        block_number     BIGINT       NOT NULL,
        transaction_hash VARCHAR(66)  NOT NULL,
        log_index        INTEGER      NOT NULL DEFAULT 0,
        subject_id       BIGINT       NOT NULL DEFAULT -1,
        consent_id       BIGINT,
        consent_ids      BIGINT[],
        request_id       BIGINT,
        patient_address  VARCHAR(42),
        provider_address VARCHAR(42),
        data_types       TEXT[],
        purposes         TEXT[],
        expiration_time  BIGINT,
        event_timestamp  BIGINT,
        created_at       TIMESTAMPTZ  DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (transaction_hash, log_index, event_type, subject_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS block_tracking (
        event_type           VARCHAR(50) PRIMARY KEY,
        last_processed_block BIGINT      NOT NULL,
        updated_at           TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ledger_events_patient ON ledger_events(patient_address)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_events_provider ON ledger_events(provider_address)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_events_block ON ledger_events(block_number)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_events_request ON ledger_events(request_id)",
)

_COLUMNS = (
    "event_type, block_number, transaction_hash, log_index, subject_id, consent_id, "
    "consent_ids, request_id, patient_address, provider_address, data_types, purposes, "
    "expiration_time, event_timestamp"
)


def _epoch(value: datetime | None) -> int | None:
    return None if value is None else int(value.timestamp())


def _instant(value: int | None) -> datetime | None:
    return None if value is None else datetime.fromtimestamp(value, tz=UTC)


def _to_row(event: Event) -> tuple[Any, ...]:
    key = _storage_key(event)
    return (
        event.type.value,
        event.block_number,
        event.transaction_hash,
        key[1],
        key[3],
        event.consent_id,
        list(event.consent_ids),
        event.request_id,
        event.patient,
        event.provider,
        list(event.data_types),
        list(event.purposes),
        _epoch(event.expiration_time),
        _epoch(event.timestamp),
    )


def _from_row(row: tuple[Any, ...]) -> Event:
    return Event(
        type=EventType(row[0]),
        block_number=int(row[1]),
        transaction_hash=row[2],
        log_index=row[3],
        consent_id=row[5],
        consent_ids=tuple(row[6] or ()),
        request_id=row[7],
        patient=row[8],
        provider=row[9],
        data_types=tuple(row[10] or ()),
        purposes=tuple(row[11] or ()),
        expiration_time=_instant(row[12]),
        timestamp=_instant(row[13]),
    )


class PostgresEventIndex:
    """Event index in PostgreSQL. Blocking calls run in a worker thread."""

    def __init__(self, conn: psycopg.Connection[Any]) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    # -- sync internals -----------------------------------------------------

    def _ensure_schema(self) -> None:
        with self._lock, self._conn.cursor() as cur:
            for statement in SCHEMA_SQL:
                cur.execute(statement)
            self._conn.commit()

    def _ping(self) -> None:
        with self._lock, self._conn.cursor() as cur:
            cur.execute("SELECT 1")
            self._conn.commit()

    def _get_watermark(self, event_type: EventType) -> int | None:
        with self._lock, self._conn.cursor() as cur:
            cur.execute(
                "SELECT last_processed_block FROM block_tracking WHERE event_type = %s",
                (event_type.value,),
            )
            row = cur.fetchone()
            self._conn.commit()
        return None if row is None else int(row[0])

    def _set_watermark(self, event_type: EventType, block_number: int) -> None:
        with self._lock, self._conn.cursor() as cur:
            # GREATEST keeps concurrent indexers from regressing the watermark
            cur.execute(
                """
                INSERT INTO block_tracking (event_type, last_processed_block, updated_at)
                VALUES (%s, %s, CURRENT_TIMESTAMP)
                ON CONFLICT (event_type) DO UPDATE SET
                    last_processed_block = GREATEST(
                        block_tracking.last_processed_block,
                        EXCLUDED.last_processed_block
                    ),
                    updated_at = CURRENT_TIMESTAMP
                """,
                (event_type.value, block_number),
            )
            self._conn.commit()

    def _query_events(self, filters: EventFilter) -> list[Event]:
        clauses: list[str] = []
        params: list[Any] = []

        if filters.event_types:
            clauses.append("event_type = ANY(%s)")
            params.append([t.value for t in filters.event_types])
        if filters.patient:
            clauses.append("patient_address = %s")
            params.append(filters.patient)
        if filters.provider:
            clauses.append("provider_address = %s")
            params.append(filters.provider)
        if filters.request_id is not None:
            clauses.append("request_id = %s")
            params.append(filters.request_id)
        if filters.from_block is not None:
            clauses.append("block_number >= %s")
            params.append(filters.from_block)
        if filters.to_block is not None:
            clauses.append("block_number <= %s")
            params.append(filters.to_block)

        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        with self._lock, self._conn.cursor() as cur:
            cur.execute(
                f"SELECT {_COLUMNS} FROM ledger_events {where} "  # noqa: S608
                "ORDER BY block_number ASC, log_index ASC, id ASC",
                params,
            )
            rows = cur.fetchall()
            self._conn.commit()
        return [_from_row(r) for r in rows]

    def _insert_events(self, events: list[Event]) -> int:
        if not events:
            return 0
        with self._lock, self._conn.cursor() as cur:
            inserted = 0
            for event in events:
                cur.execute(
                    f"INSERT INTO ledger_events ({_COLUMNS}) "  # noqa: S608
                    "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s) "
                    "ON CONFLICT (transaction_hash, log_index, event_type, subject_id) "
                    "DO NOTHING",
                    _to_row(event),
                )
                inserted += cur.rowcount
            self._conn.commit()
        return inserted

    # -- async protocol -----------------------------------------------------

    async def ensure_schema(self) -> None:
        await asyncio.to_thread(self._ensure_schema)

    async def ping(self) -> None:
        await asyncio.to_thread(self._ping)

    async def get_watermark(self, event_type: EventType) -> int | None:
        return await asyncio.to_thread(self._get_watermark, event_type)

    async def set_watermark(self, event_type: EventType, block_number: int) -> None:
        await asyncio.to_thread(self._set_watermark, event_type, block_number)

    async def query_events(self, filters: EventFilter) -> list[Event]:
        return await asyncio.to_thread(self._query_events, filters)

    async def insert_events(self, events: list[Event]) -> int:
        return await asyncio.to_thread(self._insert_events, list(events))

    def close(self) -> None:
        self._conn.close()
