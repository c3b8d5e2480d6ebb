"""Tests for unical.sync: the per-calendar sync cycle, merge rules and poller."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import httpx
import pytest

from unical.auth import StaticTokenSource
from unical.errors import ProviderError, SyncFailedError
from unical.models import Calendar, CalendarEvent, SyncDeleted, SyncResult, SyncUpdated
from unical.providers.base import SyncOptions
from unical.providers.google import GoogleCalendarProvider
from unical.providers.registry import ProviderRegistry
from unical.storage import EventKey, InMemoryEventStore, UpsertEvent
from unical.sync import SyncEngine, SyncState
from unical.temporal import PlainDate

pytestmark = pytest.mark.unit

CALENDAR = Calendar(id="primary", provider_id="google", account_id="acct", name="Me")
OTHER_CALENDAR = Calendar(id="work", provider_id="google", account_id="acct", name="Work")
JANUARY = {"time_min": PlainDate.of(2025, 1, 1), "time_max": PlainDate.of(2025, 2, 1)}


def _event(
    event_id: str, day: int = 10, month: int = 1, calendar: Calendar = CALENDAR
) -> CalendarEvent:
    return CalendarEvent(
        id=event_id,
        title=event_id,
        start=PlainDate.of(2025, month, day),
        end=PlainDate.of(2025, month, day + 1),
        provider_id=calendar.provider_id,
        account_id=calendar.account_id,
        calendar_id=calendar.id,
    )


def _deleted(event_id: str, calendar: Calendar = CALENDAR) -> SyncDeleted:
    return SyncDeleted(event=_event(event_id, calendar=calendar).ref())


class ScriptedProvider:
    """Answers each sync call with the next scripted step.

    A step is a SyncResult, an exception to raise, or an async callable that
    receives the options.
    """

    def __init__(
        self, *steps: SyncResult | Exception | Callable[[SyncOptions], Awaitable]
    ) -> None:
        self.steps = list(steps)
        self.options: list[SyncOptions] = []

    async def sync(self, options: SyncOptions) -> SyncResult:
        self.options.append(options)
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return await step(options)
        return step

    async def shutdown(self) -> None:
        return None


def _engine(
    provider: ScriptedProvider, store: InMemoryEventStore | None = None, **kwargs
) -> SyncEngine:
    registry = ProviderRegistry(StaticTokenSource({}))
    registry.register("google", lambda **_: provider)
    return SyncEngine(
        registry,
        store or InMemoryEventStore(),
        clock=lambda: datetime(2025, 1, 15, tzinfo=UTC),
        **kwargs,
    )


async def _stored_ids(store: InMemoryEventStore, calendar: Calendar = CALENDAR) -> set[str]:
    return {event.id for event in await store.list_events(*calendar.key)}


class TestSyncCycle:
    async def test_first_sync_lists_window_and_stores_token(self):
        store = InMemoryEventStore()
        provider = ScriptedProvider(
            SyncResult(
                changes=[SyncUpdated(event=_event("a")), SyncUpdated(event=_event("b"))],
                sync_token="t1",
                status="full",
            )
        )
        engine = _engine(provider, store)

        report = await engine.sync_calendar(CALENDAR, **JANUARY)

        assert provider.options[0].initial_sync_token is None
        assert provider.options[0].time_min == JANUARY["time_min"]
        assert (report.status, report.upserted, report.deleted) == ("full", 2, 0)
        assert await _stored_ids(store) == {"a", "b"}
        assert await store.get_sync_token(CALENDAR.key) == "t1"
        assert engine.state(CALENDAR) is SyncState.IDLE
        assert engine.last_status(CALENDAR) == "full"

    async def test_incremental_uses_stored_token(self):
        store = InMemoryEventStore()
        await store.apply_batch(
            [UpsertEvent(_event("a")), UpsertEvent(_event("b"))],
            sync_token=(CALENDAR.key, "t1"),
        )
        provider = ScriptedProvider(
            SyncResult(
                changes=[SyncUpdated(event=_event("c")), _deleted("a")],
                sync_token="t2",
                status="incremental",
            )
        )

        report = await _engine(provider, store).sync_calendar(CALENDAR, **JANUARY)

        assert provider.options[0].initial_sync_token == "t1"
        assert (report.upserted, report.deleted) == (1, 1)
        assert await _stored_ids(store) == {"b", "c"}
        assert await store.get_sync_token(CALENDAR.key) == "t2"

    async def test_applying_the_same_changes_twice_is_idempotent(self):
        store = InMemoryEventStore()
        result = SyncResult(
            changes=[SyncUpdated(event=_event("a")), _deleted("missing")],
            sync_token="t1",
            status="incremental",
        )
        engine = _engine(ScriptedProvider(result), store)

        await engine.sync_calendar(CALENDAR, **JANUARY)
        first = await store.list_events(*CALENDAR.key)
        await engine.sync_calendar(CALENDAR, **JANUARY)

        assert await store.list_events(*CALENDAR.key) == first

    async def test_deleting_an_unknown_event_is_not_an_error(self):
        store = InMemoryEventStore()
        provider = ScriptedProvider(
            SyncResult(changes=[_deleted("never-seen")], sync_token="t1", status="incremental")
        )
        await _engine(provider, store).sync_calendar(CALENDAR, **JANUARY)
        assert await _stored_ids(store) == set()

    async def test_full_resync_drops_unlisted_events_inside_window_only(self):
        store = InMemoryEventStore()
        await store.apply_batch(
            [
                UpsertEvent(_event("kept")),
                UpsertEvent(_event("stale", day=20)),
                UpsertEvent(_event("march", month=3)),
                UpsertEvent(_event("other-calendar", calendar=OTHER_CALENDAR)),
            ],
            sync_token=(CALENDAR.key, "expired"),
        )
        provider = ScriptedProvider(
            SyncResult(
                changes=[SyncUpdated(event=_event("kept"))], sync_token="fresh", status="full"
            )
        )

        report = await _engine(provider, store).sync_calendar(CALENDAR, **JANUARY)

        assert report.deleted == 1
        assert await _stored_ids(store) == {"kept", "march"}
        assert await _stored_ids(store, OTHER_CALENDAR) == {"other-calendar"}
        assert await store.get_sync_token(CALENDAR.key) == "fresh"

    async def test_event_straddling_window_start_is_in_window(self):
        store = InMemoryEventStore()
        straddling = CalendarEvent(
            id="straddle",
            start=PlainDate.of(2024, 12, 30),
            end=PlainDate.of(2025, 1, 3),
            provider_id="google",
            account_id="acct",
            calendar_id="primary",
        )
        await store.upsert_event(straddling)
        provider = ScriptedProvider(SyncResult(changes=[], sync_token="t", status="full"))

        await _engine(provider, store).sync_calendar(CALENDAR, **JANUARY)

        assert await _stored_ids(store) == set()

    async def test_calendar_token_seeds_first_cycle(self):
        calendar = CALENDAR.model_copy(update={"sync_token": "from-calendar"})
        provider = ScriptedProvider(SyncResult(changes=[], sync_token="t2", status="incremental"))

        await _engine(provider).sync_calendar(calendar, **JANUARY)

        assert provider.options[0].initial_sync_token == "from-calendar"

    async def test_full_flag_ignores_stored_token(self):
        store = InMemoryEventStore()
        await store.set_sync_token(CALENDAR.key, "t1")
        provider = ScriptedProvider(SyncResult(changes=[], sync_token="t2", status="full"))

        await _engine(provider, store).sync_calendar(CALENDAR, full=True, **JANUARY)

        assert provider.options[0].initial_sync_token is None

    async def test_default_window_comes_from_clock(self):
        provider = ScriptedProvider(SyncResult(changes=[], sync_token="t", status="full"))
        await _engine(provider).sync_calendar(CALENDAR)
        options = provider.options[0]
        assert options.time_min.value == datetime(2024, 12, 16, tzinfo=UTC)
        assert options.time_max.value == datetime(2026, 1, 15, tzinfo=UTC)

    async def test_time_zone_falls_back_to_calendar_then_default(self):
        calendar = CALENDAR.model_copy(update={"time_zone": "Asia/Tokyo"})
        provider = ScriptedProvider(SyncResult(changes=[], sync_token="t", status="full"))
        await _engine(provider, default_time_zone="Europe/Paris").sync_calendar(calendar)
        assert provider.options[0].time_zone == "Asia/Tokyo"

    async def test_full_resync_keeps_event_edited_during_the_cycle(self):
        class EditingStore(InMemoryEventStore):
            async def list_events(self, account_id, calendar_id):
                listed = await super().list_events(account_id, calendar_id)
                # A local edit lands between the stale read and the commit.
                await self.upsert_event(
                    _event("edited").model_copy(update={"title": "edited locally"})
                )
                return listed

        store = EditingStore()
        await store.apply_batch(
            [UpsertEvent(_event("stale")), UpsertEvent(_event("edited"))],
            sync_token=(CALENDAR.key, "expired"),
        )
        provider = ScriptedProvider(SyncResult(changes=[], sync_token="fresh", status="full"))

        await _engine(provider, store).sync_calendar(CALENDAR, **JANUARY)

        assert await _stored_ids(store) == {"edited"}
        survivor = await store.get_event(EventKey("acct", "primary", "edited"))
        assert survivor is not None and survivor.title == "edited locally"
        assert await store.get_sync_token(CALENDAR.key) == "fresh"

    async def test_full_resync_keeps_event_created_during_the_listing(self):
        store = InMemoryEventStore()
        await store.upsert_event(_event("stale"))

        async def listing_then_local_create(options: SyncOptions) -> SyncResult:
            # The listing was taken before the local create reached the store.
            await store.upsert_event(_event("created"))
            return SyncResult(changes=[], sync_token="fresh", status="full")

        provider = ScriptedProvider(listing_then_local_create)
        report = await _engine(provider, store).sync_calendar(CALENDAR, **JANUARY)

        assert await _stored_ids(store) == {"created"}
        assert report.deleted == 1


class TestGoogleEndToEnd:
    async def test_expired_token_relists_window_and_drops_stale_rows(self):
        store = InMemoryEventStore()
        await store.apply_batch(
            [
                UpsertEvent(_event("kept")),
                UpsertEvent(_event("stale", day=20)),
                UpsertEvent(_event("march", month=3)),
            ],
            sync_token=(CALENDAR.key, "expired"),
        )
        requests: list[dict[str, str]] = []
        visible_during_listing: list[set[str]] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            requests.append(dict(request.url.params))
            if request.url.params.get("syncToken") == "expired":
                return httpx.Response(410, json={"error": {"message": "Sync token expired"}})
            visible_during_listing.append(await _stored_ids(store))
            item = {
                "id": "kept",
                "status": "confirmed",
                "summary": "kept",
                "start": {"date": "2025-01-10"},
                "end": {"date": "2025-01-11"},
            }
            return httpx.Response(200, json={"items": [item], "nextSyncToken": "fresh"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            registry = ProviderRegistry(StaticTokenSource({"acct": "tok"}), http_client=client)
            registry.register("google", GoogleCalendarProvider)
            engine = SyncEngine(
                registry, store, clock=lambda: datetime(2025, 1, 15, tzinfo=UTC)
            )
            report = await engine.sync_calendar(CALENDAR, **JANUARY)

        assert requests[0]["syncToken"] == "expired"
        assert "syncToken" not in requests[1] and "timeMin" in requests[1]
        assert visible_during_listing == [{"kept", "stale", "march"}]
        assert (report.status, report.upserted, report.deleted) == ("full", 1, 1)
        assert await _stored_ids(store) == {"kept", "march"}
        assert await store.get_sync_token(CALENDAR.key) == "fresh"
        assert engine.last_status(CALENDAR) == "full"


class TestFailures:
    async def test_provider_error_leaves_store_untouched(self):
        store = InMemoryEventStore()
        await store.apply_batch([UpsertEvent(_event("a"))], sync_token=(CALENDAR.key, "t1"))
        provider = ScriptedProvider(ProviderError("boom", provider="google", operation="sync"))
        engine = _engine(provider, store)

        with pytest.raises(SyncFailedError) as exc_info:
            await engine.sync_calendar(CALENDAR, **JANUARY)

        assert exc_info.value.calendar_key == CALENDAR.key
        assert isinstance(exc_info.value.__cause__, ProviderError)
        assert engine.state(CALENDAR) is SyncState.FAILED
        assert "boom" in engine.last_error(CALENDAR)
        assert await _stored_ids(store) == {"a"}
        assert await store.get_sync_token(CALENDAR.key) == "t1"

    async def test_timeout_leaves_token_untouched(self):
        store = InMemoryEventStore()
        await store.set_sync_token(CALENDAR.key, "t1")

        async def hang(options: SyncOptions) -> SyncResult:
            await asyncio.sleep(10)
            return SyncResult(changes=[], sync_token="never", status="incremental")

        engine = _engine(ScriptedProvider(hang), store)
        with pytest.raises(SyncFailedError) as exc_info:
            await engine.sync_calendar(CALENDAR, timeout=0.01, **JANUARY)

        assert exc_info.value.reason == "timeout"
        assert await store.get_sync_token(CALENDAR.key) == "t1"

    async def test_store_timeout_is_not_reported_as_sync_deadline(self):
        class SlowPoolStore(InMemoryEventStore):
            async def get_sync_token(self, calendar_key):
                raise TimeoutError("connection pool exhausted")

        provider = ScriptedProvider(SyncResult(changes=[], sync_token="t", status="full"))
        engine = _engine(provider, SlowPoolStore())

        with pytest.raises(SyncFailedError) as exc_info:
            await engine.sync_calendar(CALENDAR, timeout=5, **JANUARY)

        assert exc_info.value.reason == "connection pool exhausted"
        assert provider.options == []

    async def test_recovers_after_failure(self):
        provider = ScriptedProvider(
            RuntimeError("flaky"),
            SyncResult(changes=[], sync_token="t1", status="full"),
        )
        engine = _engine(provider)
        with pytest.raises(SyncFailedError):
            await engine.sync_calendar(CALENDAR, **JANUARY)

        await engine.sync_calendar(CALENDAR, **JANUARY)

        assert engine.state(CALENDAR) is SyncState.IDLE
        assert engine.last_error(CALENDAR) is None

    async def test_cancellation_applies_nothing(self):
        store = InMemoryEventStore()
        await store.set_sync_token(CALENDAR.key, "t1")
        entered = asyncio.Event()

        async def block(options: SyncOptions) -> SyncResult:
            entered.set()
            await asyncio.Event().wait()
            return SyncResult(changes=[], sync_token="never", status="incremental")

        engine = _engine(ScriptedProvider(block), store)
        task = asyncio.create_task(engine.sync_calendar(CALENDAR, **JANUARY))
        await entered.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert engine.state(CALENDAR) is SyncState.IDLE
        assert await store.get_sync_token(CALENDAR.key) == "t1"


class TestConcurrency:
    @staticmethod
    def _tracking_step():
        active = {"now": 0, "max": 0}

        async def step(options: SyncOptions) -> SyncResult:
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
            await asyncio.sleep(0.01)
            active["now"] -= 1
            return SyncResult(changes=[], sync_token="t", status="incremental")

        return step, active

    async def test_cycles_for_one_calendar_are_serialized(self):
        step, active = self._tracking_step()
        engine = _engine(ScriptedProvider(step))

        await asyncio.gather(
            engine.sync_calendar(CALENDAR, **JANUARY),
            engine.sync_calendar(CALENDAR, **JANUARY),
            engine.sync_calendar(CALENDAR, **JANUARY),
        )

        assert active["max"] == 1

    async def test_different_calendars_run_concurrently(self):
        step, active = self._tracking_step()
        engine = _engine(ScriptedProvider(step))

        await engine.sync_calendars([CALENDAR, OTHER_CALENDAR], **JANUARY)

        assert active["max"] == 2

    async def test_sync_calendars_returns_failures_in_place(self):
        async def step(options: SyncOptions) -> SyncResult:
            if options.calendar.id == "work":
                raise ProviderError("down", provider="google")
            return SyncResult(changes=[], sync_token="t", status="incremental")

        results = await _engine(ScriptedProvider(step)).sync_calendars(
            [CALENDAR, OTHER_CALENDAR], **JANUARY
        )

        assert results[0].status == "incremental"
        assert isinstance(results[1], SyncFailedError)


class TestForgetCalendar:
    async def test_forget_drops_state_of_idle_calendar(self):
        provider = ScriptedProvider(SyncResult(changes=[], sync_token="t", status="full"))
        engine = _engine(provider)
        await engine.sync_calendar(CALENDAR, **JANUARY)
        assert engine.last_status(CALENDAR) == "full"

        assert engine.forget_calendar(CALENDAR) is True

        assert engine._calendars == {}
        assert engine.last_status(CALENDAR) is None
        assert engine.forget_calendar(CALENDAR) is False

    async def test_forget_waits_for_running_cycle(self):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def block(options: SyncOptions) -> SyncResult:
            entered.set()
            await release.wait()
            return SyncResult(changes=[], sync_token="t", status="incremental")

        engine = _engine(ScriptedProvider(block))
        task = asyncio.create_task(engine.sync_calendar(CALENDAR, **JANUARY))
        await entered.wait()

        assert engine.forget_calendar(CALENDAR) is False
        release.set()
        await task
        assert engine.forget_calendar(CALENDAR) is True



class TestPoller:
    async def test_request_sync_wakes_the_poller(self):
        provider = ScriptedProvider(SyncResult(changes=[], sync_token="t", status="incremental"))
        engine = _engine(provider)
        second_cycle = asyncio.Event()
        cycles = 0

        async def calendars() -> list[Calendar]:
            nonlocal cycles
            cycles += 1
            if cycles == 2:
                second_cycle.set()
            return [CALENDAR]

        task = asyncio.create_task(engine.run_poller(calendars, interval_seconds=3600))
        try:
            while not provider.options:
                await asyncio.sleep(0)
            engine.request_sync()
            await asyncio.wait_for(second_cycle.wait(), timeout=1)
        finally:
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert cycles == 2

    async def test_poller_survives_discovery_errors(self):
        engine = _engine(ScriptedProvider(SyncResult(changes=[], status="full")))
        attempts = 0
        recovered = asyncio.Event()

        async def calendars() -> list[Calendar]:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise ProviderError("listing failed", provider="google")
            recovered.set()
            return []

        task = asyncio.create_task(engine.run_poller(calendars, interval_seconds=0.01))
        try:
            await asyncio.wait_for(recovered.wait(), timeout=1)
        finally:
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
