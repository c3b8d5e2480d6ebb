"""Tests for InMemoryEventStore batch semantics."""

from __future__ import annotations

import pytest

from unical.models import CalendarEvent
from unical.storage import DeleteEvent, EventKey, InMemoryEventStore, UpsertEvent
from unical.temporal import PlainDate

pytestmark = pytest.mark.unit

CAL = ("acct", "primary")


def _event(event_id: str, calendar_id: str = "primary", title: str | None = None) -> CalendarEvent:
    return CalendarEvent(
        id=event_id,
        title=title,
        start=PlainDate.of(2025, 1, 6),
        end=PlainDate.of(2025, 1, 7),
        provider_id="google",
        account_id="acct",
        calendar_id=calendar_id,
    )


class TestInMemoryEventStore:
    async def test_batch_with_token(self):
        store = InMemoryEventStore()
        await store.apply_batch(
            [UpsertEvent(_event("a")), UpsertEvent(_event("b"))], sync_token=(CAL, "t1")
        )

        assert {e.id for e in await store.list_events(*CAL)} == {"a", "b"}
        assert await store.get_sync_token(CAL) == "t1"

    async def test_operations_apply_in_order(self):
        store = InMemoryEventStore()
        key = EventKey("acct", "primary", "a")
        await store.apply_batch(
            [
                UpsertEvent(_event("a", title="old")),
                DeleteEvent(key),
                UpsertEvent(_event("a", title="new")),
            ]
        )
        stored = await store.get_event(key)
        assert stored is not None and stored.title == "new"

    async def test_failed_batch_changes_nothing(self):
        store = InMemoryEventStore()
        await store.apply_batch([UpsertEvent(_event("a"))], sync_token=(CAL, "t1"))

        with pytest.raises(TypeError):
            await store.apply_batch(
                [DeleteEvent(EventKey("acct", "primary", "a")), "bogus"],
                sync_token=(CAL, "t2"),
            )

        assert await store.get_event(EventKey("acct", "primary", "a")) is not None
        assert await store.get_sync_token(CAL) == "t1"

    async def test_conditional_delete_skips_changed_event(self):
        store = InMemoryEventStore()
        listed = _event("a", title="listed")
        await store.apply_batch([UpsertEvent(listed), UpsertEvent(_event("b"))])
        await store.upsert_event(_event("a", title="edited meanwhile"))

        await store.apply_batch(
            [
                DeleteEvent(EventKey("acct", "primary", "a"), expected=listed),
                DeleteEvent(EventKey("acct", "primary", "b"), expected=_event("b")),
            ]
        )

        survivor = await store.get_event(EventKey("acct", "primary", "a"))
        assert survivor is not None and survivor.title == "edited meanwhile"
        assert await store.get_event(EventKey("acct", "primary", "b")) is None

    async def test_token_untouched_by_default(self):
        store = InMemoryEventStore()
        await store.set_sync_token(CAL, "t1")
        await store.apply_batch([UpsertEvent(_event("a"))])
        assert await store.get_sync_token(CAL) == "t1"

    async def test_returned_events_are_copies(self):
        store = InMemoryEventStore()
        await store.upsert_event(_event("a", title="original"))
        fetched = await store.get_event(EventKey("acct", "primary", "a"))
        fetched.title = "mutated"
        again = await store.get_event(EventKey("acct", "primary", "a"))
        assert again.title == "original"

    async def test_list_is_scoped_to_calendar(self):
        store = InMemoryEventStore()
        await store.apply_batch([UpsertEvent(_event("a")), UpsertEvent(_event("b", "work"))])
        assert [e.id for e in await store.list_events("acct", "work")] == ["b"]

    async def test_delete_reports_presence(self):
        store = InMemoryEventStore()
        await store.upsert_event(_event("a"))
        assert await store.delete_event(EventKey("acct", "primary", "a")) is True
        assert await store.delete_event(EventKey("acct", "primary", "a")) is False
