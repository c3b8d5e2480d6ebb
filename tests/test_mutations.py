"""Tests for unical.mutations: provider writes followed by one store batch."""

from __future__ import annotations

import pytest

from unical.auth import StaticTokenSource
from unical.errors import NotFoundError, ProviderError
from unical.models import (
    AttendeeStatus,
    Calendar,
    CalendarEvent,
    EventResponse,
    ResponseToEventInput,
)
from unical.mutations import EventMutator
from unical.providers.registry import ProviderRegistry
from unical.reconcile import build_delete_event, build_delete_series, build_update_event
from unical.storage import EventKey, InMemoryEventStore
from unical.temporal import PlainDate

pytestmark = pytest.mark.unit

PRIMARY = Calendar(id="primary", provider_id="google", account_id="acct", name="Me")
WORK = Calendar(id="work", provider_id="google", account_id="acct", name="Work")
OUTLOOK = Calendar(id="cal-1", provider_id="microsoft", account_id="outlook", name="Outlook")
CALENDARS = [PRIMARY, WORK, OUTLOOK]


def _event(event_id: str = "e1", calendar: Calendar = PRIMARY, **overrides) -> CalendarEvent:
    fields = {
        "id": event_id,
        "title": "Planning",
        "start": PlainDate.of(2025, 1, 6),
        "end": PlainDate.of(2025, 1, 7),
        "provider_id": calendar.provider_id,
        "account_id": calendar.account_id,
        "calendar_id": calendar.id,
    }
    fields.update(overrides)
    return CalendarEvent(**fields)


class FakeProvider:
    """Records write calls and echoes events back the way a provider would."""

    def __init__(self, *, fail_with: Exception | None = None) -> None:
        self.calls: list[tuple] = []
        self.fail_with = fail_with

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def create_event(self, calendar: Calendar, event: CalendarEvent) -> CalendarEvent:
        self.calls.append(("create", calendar.id, event.id))
        self._check()
        return event.model_copy(update={"etag": "created"})

    async def update_event(
        self, calendar: Calendar, event_id: str, event: CalendarEvent
    ) -> CalendarEvent:
        self.calls.append(("update", calendar.id, event_id))
        self._check()
        return event.model_copy(update={"id": event_id, "calendar_id": calendar.id})

    async def move_event(
        self,
        source_calendar: Calendar,
        destination_calendar: Calendar,
        event_id: str,
        *,
        send_update: bool = True,
    ) -> CalendarEvent:
        self.calls.append(("move", source_calendar.id, destination_calendar.id, event_id))
        self._check()
        return _event(event_id, destination_calendar)

    async def delete_event(
        self, calendar_id: str, event_id: str, *, send_update: bool = True
    ) -> None:
        self.calls.append(("delete", calendar_id, event_id, send_update))
        self._check()

    async def response_to_event(
        self, calendar_id: str, event_id: str, response: ResponseToEventInput
    ) -> None:
        self.calls.append(("respond", calendar_id, event_id, response.status))
        self._check()

    async def shutdown(self) -> None:
        return None


@pytest.fixture
def google():
    return FakeProvider()


@pytest.fixture
def microsoft():
    return FakeProvider()


@pytest.fixture
def store():
    return InMemoryEventStore()


@pytest.fixture
def mutator(google, microsoft, store):
    registry = ProviderRegistry(StaticTokenSource({}))
    registry.register("google", lambda **_: google)
    registry.register("microsoft", lambda **_: microsoft)
    return EventMutator(registry, store)


async def _ids(store: InMemoryEventStore, calendar: Calendar) -> set[str]:
    return {event.id for event in await store.list_events(*calendar.key)}


class TestCreate:
    async def test_create_stores_provider_version(self, mutator, google, store):
        created = await mutator.create(PRIMARY, _event())
        assert created.etag == "created"
        assert google.calls == [("create", "primary", "e1")]
        stored = await store.get_event(EventKey("acct", "primary", "e1"))
        assert stored is not None and stored.etag == "created"


class TestUpdate:
    async def test_update_in_place(self, mutator, google, store):
        await store.upsert_event(_event())
        request = build_update_event(_event(title="Renamed"), _event())

        updated = await mutator.update(request, calendars=CALENDARS)

        assert updated.title == "Renamed"
        assert google.calls == [("update", "primary", "e1")]
        stored = await store.get_event(EventKey("acct", "primary", "e1"))
        assert stored.title == "Renamed"

    async def test_same_account_move_uses_provider_move(self, mutator, google, store):
        await store.upsert_event(_event())
        request = build_update_event(_event(calendar=WORK, title="Moved"), _event())

        updated = await mutator.update(request, calendars=CALENDARS)

        assert google.calls == [("move", "primary", "work", "e1"), ("update", "work", "e1")]
        assert updated.calendar_id == "work"
        assert updated.title == "Moved"
        assert await _ids(store, PRIMARY) == set()
        assert await _ids(store, WORK) == {"e1"}

    async def test_cross_account_move_copies_then_deletes(
        self, mutator, google, microsoft, store
    ):
        await store.upsert_event(_event())
        request = build_update_event(_event(calendar=OUTLOOK), _event())

        created = await mutator.update(request, calendars=CALENDARS)

        assert created.id != "e1"
        assert (created.account_id, created.provider_id) == ("outlook", "microsoft")
        assert microsoft.calls == [("create", "cal-1", created.id)]
        assert google.calls == [("delete", "primary", "e1", True)]
        assert await _ids(store, PRIMARY) == set()
        assert await _ids(store, OUTLOOK) == {created.id}

    async def test_move_honours_send_update(self, mutator, google, store):
        edited = _event(
            calendar=OUTLOOK,
            response=EventResponse(status=AttendeeStatus.accepted, send_update=False),
        )
        request = build_update_event(edited, _event())
        await mutator.update(request, calendars=CALENDARS)
        assert google.calls == [("delete", "primary", "e1", False)]

    async def test_unknown_calendar(self, mutator):
        ghost = _event(calendar_id="ghost")
        with pytest.raises(NotFoundError, match="acct/ghost"):
            await mutator.update(build_update_event(ghost, ghost), calendars=CALENDARS)

    async def test_provider_failure_leaves_store_untouched(self, store):
        failing = FakeProvider(fail_with=ProviderError("boom", provider="google"))
        registry = ProviderRegistry(StaticTokenSource({}))
        registry.register("google", lambda **_: failing)
        mutator = EventMutator(registry, store)
        await store.upsert_event(_event())

        with pytest.raises(ProviderError):
            await mutator.update(
                build_update_event(_event(title="Renamed"), _event()), calendars=CALENDARS
            )

        stored = await store.get_event(EventKey("acct", "primary", "e1"))
        assert stored.title == "Planning"


class TestDelete:
    async def test_delete_instance(self, mutator, google, store):
        await store.upsert_event(_event())
        await mutator.delete(build_delete_event(_event(), send_update=False), calendars=CALENDARS)
        assert google.calls == [("delete", "primary", "e1", False)]
        assert await _ids(store, PRIMARY) == set()

    async def test_delete_series_drops_stored_instances(self, mutator, google, store):
        for event in (
            _event("m1"),
            _event("m1_20250106", recurring_event_id="m1"),
            _event("m1_20250113", recurring_event_id="m1"),
            _event("other"),
        ):
            await store.upsert_event(event)

        instance = _event("m1_20250106", recurring_event_id="m1")
        await mutator.delete(build_delete_series(instance), calendars=CALENDARS)

        assert google.calls == [("delete", "primary", "m1", True)]
        assert await _ids(store, PRIMARY) == {"other"}


class TestRespond:
    async def test_respond_updates_stored_response(self, mutator, google, store):
        event = _event()
        await store.upsert_event(event)

        responded = await mutator.respond(
            event,
            ResponseToEventInput(status=AttendeeStatus.declined, comment="Out of office"),
            calendars=CALENDARS,
        )

        assert google.calls == [("respond", "primary", "e1", AttendeeStatus.declined)]
        assert responded.response == EventResponse(
            status=AttendeeStatus.declined, comment="Out of office"
        )
        stored = await store.get_event(EventKey("acct", "primary", "e1"))
        assert stored.response.status is AttendeeStatus.declined
