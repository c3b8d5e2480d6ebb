"""PostgreSQL event store backed by asyncpg and JSONB payloads."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any

import asyncpg

from unical.models import CalendarEvent
from unical.storage.base import (
    UNCHANGED,
    CalendarKey,
    DeleteEvent,
    EventKey,
    StoreOperation,
    SyncTokenUpdate,
    UpsertEvent,
    _Unchanged,
)

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS calendar_events (
        account_id TEXT NOT NULL,
        calendar_id TEXT NOT NULL,
        event_id TEXT NOT NULL,
        provider_id TEXT NOT NULL,
        recurring_event_id TEXT,
        payload JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (account_id, calendar_id, event_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_calendar_events_series
        ON calendar_events (account_id, calendar_id, recurring_event_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS calendar_sync_tokens (
        account_id TEXT NOT NULL,
        calendar_id TEXT NOT NULL,
        sync_token TEXT,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (account_id, calendar_id)
    )
    """,
)

_UPSERT_EVENT_SQL = """
    INSERT INTO calendar_events
        (account_id, calendar_id, event_id, provider_id, recurring_event_id, payload, updated_at)
    VALUES ($1, $2, $3, $4, $5, $6::jsonb, now())
    ON CONFLICT (account_id, calendar_id, event_id) DO UPDATE
        SET provider_id = EXCLUDED.provider_id,
            recurring_event_id = EXCLUDED.recurring_event_id,
            payload = EXCLUDED.payload,
            updated_at = now()
"""

_DELETE_EVENT_SQL = """
    DELETE FROM calendar_events
    WHERE account_id = $1 AND calendar_id = $2 AND event_id = $3
"""

_DELETE_EVENT_IF_UNCHANGED_SQL = """
    DELETE FROM calendar_events
    WHERE account_id = $1 AND calendar_id = $2 AND event_id = $3 AND payload = $4::jsonb
"""

_SET_SYNC_TOKEN_SQL = """
    INSERT INTO calendar_sync_tokens (account_id, calendar_id, sync_token, updated_at)
    VALUES ($1, $2, $3, now())
    ON CONFLICT (account_id, calendar_id) DO UPDATE
        SET sync_token = EXCLUDED.sync_token,
            updated_at = now()
"""


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value, handling potential double-encoding.

    asyncpg returns JSONB columns as Python strings when no custom codec is
    registered, so one ``json.loads`` pass is normally needed. A second pass
    recovers payloads that were stored as a JSON string containing JSON text.
    """
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        logger.warning("Double-encoded JSONB detected; applying second decode pass")
        val = json.loads(val)
    return val


def _event_from_row(row: Any) -> CalendarEvent:
    return CalendarEvent.model_validate(decode_jsonb(row["payload"]))


class PostgresEventStore:
    """Event store over an ``asyncpg`` pool; batches run in one transaction."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        """Create the event and sync-token tables if they do not exist."""
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement)

    async def get_event(self, key: EventKey) -> CalendarEvent | None:
        row = await self._pool.fetchrow(
            """
            SELECT payload FROM calendar_events
            WHERE account_id = $1 AND calendar_id = $2 AND event_id = $3
            """,
            key.account_id,
            key.calendar_id,
            key.event_id,
        )
        if row is None:
            return None
        return _event_from_row(row)

    async def list_events(self, account_id: str, calendar_id: str) -> list[CalendarEvent]:
        rows = await self._pool.fetch(
            """
            SELECT payload FROM calendar_events
            WHERE account_id = $1 AND calendar_id = $2
            ORDER BY event_id
            """,
            account_id,
            calendar_id,
        )
        return [_event_from_row(row) for row in rows]

    async def upsert_event(self, event: CalendarEvent) -> None:
        await self.apply_batch([UpsertEvent(event)])

    async def delete_event(self, key: EventKey) -> bool:
        result = await self._pool.execute(
            _DELETE_EVENT_SQL, key.account_id, key.calendar_id, key.event_id
        )
        return result != "DELETE 0"

    async def apply_batch(
        self,
        operations: Sequence[StoreOperation],
        *,
        sync_token: SyncTokenUpdate | _Unchanged = UNCHANGED,
    ) -> None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                for operation in operations:
                    if isinstance(operation, UpsertEvent):
                        event = operation.event
                        await conn.execute(
                            _UPSERT_EVENT_SQL,
                            event.account_id,
                            event.calendar_id,
                            event.id,
                            event.provider_id,
                            event.recurring_event_id,
                            event.model_dump_json(),
                        )
                    elif isinstance(operation, DeleteEvent):
                        key = operation.key
                        if operation.expected is None:
                            await conn.execute(
                                _DELETE_EVENT_SQL, key.account_id, key.calendar_id, key.event_id
                            )
                        else:
                            await conn.execute(
                                _DELETE_EVENT_IF_UNCHANGED_SQL,
                                key.account_id,
                                key.calendar_id,
                                key.event_id,
                                operation.expected.model_dump_json(),
                            )
                    else:
                        raise TypeError(f"Unsupported store operation: {operation!r}")
                if not isinstance(sync_token, _Unchanged):
                    (account_id, calendar_id), token = sync_token
                    await conn.execute(_SET_SYNC_TOKEN_SQL, account_id, calendar_id, token)

    async def get_sync_token(self, calendar_key: CalendarKey) -> str | None:
        account_id, calendar_id = calendar_key
        return await self._pool.fetchval(
            """
            SELECT sync_token FROM calendar_sync_tokens
            WHERE account_id = $1 AND calendar_id = $2
            """,
            account_id,
            calendar_id,
        )

    async def set_sync_token(self, calendar_key: CalendarKey, token: str | None) -> None:
        await self.apply_batch([], sync_token=(calendar_key, token))
