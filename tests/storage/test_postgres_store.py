"""Tests for PostgresEventStore against a mocked asyncpg pool."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from unical.models import CalendarEvent
from unical.storage import DeleteEvent, EventKey, PostgresEventStore, UpsertEvent
from unical.storage.postgres import SCHEMA_STATEMENTS, decode_jsonb
from unical.temporal import PlainDate

pytestmark = pytest.mark.unit


class _AsyncCM:
    def __init__(self, value):
        self._value = value

    async def __aenter__(self):
        return self._value

    async def __aexit__(self, *exc):
        return False


def _event(event_id: str, recurring_event_id: str | None = None) -> CalendarEvent:
    return CalendarEvent(
        id=event_id,
        start=PlainDate.of(2025, 1, 6),
        end=PlainDate.of(2025, 1, 7),
        provider_id="google",
        account_id="acct",
        calendar_id="primary",
        recurring_event_id=recurring_event_id,
    )


@pytest.fixture
def conn():
    connection = AsyncMock()
    connection.transaction = MagicMock(return_value=_AsyncCM(None))
    return connection


@pytest.fixture
def pool(conn):
    mock_pool = MagicMock()
    mock_pool.acquire = MagicMock(return_value=_AsyncCM(conn))
    mock_pool.fetchrow = AsyncMock()
    mock_pool.fetch = AsyncMock()
    mock_pool.fetchval = AsyncMock()
    mock_pool.execute = AsyncMock()
    return mock_pool


class TestDecodeJsonb:
    def test_plain_and_double_encoded(self):
        payload = {"id": "a"}
        assert decode_jsonb(json.dumps(payload)) == payload
        assert decode_jsonb(json.dumps(json.dumps(payload))) == payload
        assert decode_jsonb(payload) is payload


class TestPostgresEventStore:
    async def test_ensure_schema_runs_every_statement(self, pool, conn):
        await PostgresEventStore(pool).ensure_schema()
        assert conn.execute.await_count == len(SCHEMA_STATEMENTS)
        conn.transaction.assert_called_once()

    async def test_apply_batch_runs_in_one_transaction(self, pool, conn):
        store = PostgresEventStore(pool)
        await store.apply_batch(
            [UpsertEvent(_event("i1", "m1")), DeleteEvent(EventKey("acct", "primary", "old"))],
            sync_token=(("acct", "primary"), "tok"),
        )

        conn.transaction.assert_called_once()
        calls = conn.execute.await_args_list
        assert len(calls) == 3

        upsert_args = calls[0].args
        assert "INSERT INTO calendar_events" in upsert_args[0]
        assert upsert_args[1:6] == ("acct", "primary", "i1", "google", "m1")
        assert json.loads(upsert_args[6])["id"] == "i1"

        assert "DELETE FROM calendar_events" in calls[1].args[0]
        assert calls[1].args[1:] == ("acct", "primary", "old")

        assert "calendar_sync_tokens" in calls[2].args[0]
        assert calls[2].args[1:] == ("acct", "primary", "tok")

    async def test_apply_batch_without_token(self, pool, conn):
        await PostgresEventStore(pool).apply_batch([UpsertEvent(_event("a"))])
        assert conn.execute.await_count == 1

    async def test_get_event_decodes_payload(self, pool):
        pool.fetchrow.return_value = {"payload": _event("a").model_dump_json()}
        event = await PostgresEventStore(pool).get_event(EventKey("acct", "primary", "a"))
        assert event == _event("a")

    async def test_get_event_missing(self, pool):
        pool.fetchrow.return_value = None
        assert await PostgresEventStore(pool).get_event(EventKey("acct", "primary", "x")) is None

    async def test_list_events(self, pool):
        pool.fetch.return_value = [
            {"payload": _event("a").model_dump_json()},
            {"payload": _event("b").model_dump_json()},
        ]
        events = await PostgresEventStore(pool).list_events("acct", "primary")
        assert [e.id for e in events] == ["a", "b"]

    async def test_delete_event_reports_presence(self, pool):
        store = PostgresEventStore(pool)
        key = EventKey("acct", "primary", "a")
        pool.execute.return_value = "DELETE 0"
        assert await store.delete_event(key) is False
        pool.execute.return_value = "DELETE 1"
        assert await store.delete_event(key) is True

    async def test_get_sync_token(self, pool):
        pool.fetchval.return_value = "tok"
        assert await PostgresEventStore(pool).get_sync_token(("acct", "primary")) == "tok"
        assert pool.fetchval.await_args.args[1:] == ("acct", "primary")

    async def test_conditional_delete_compares_payload(self, pool, conn):
        expected = _event("a")
        await PostgresEventStore(pool).apply_batch(
            [DeleteEvent(EventKey("acct", "primary", "a"), expected=expected)]
        )

        args = conn.execute.await_args.args
        assert "payload = $4::jsonb" in args[0]
        assert args[1:4] == ("acct", "primary", "a")
        assert json.loads(args[4]) == json.loads(expected.model_dump_json())
