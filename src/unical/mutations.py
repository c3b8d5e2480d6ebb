"""Confirmed write path: send user edits to providers, then record the result.

Every provider write is followed by one ``apply_batch`` on the event store,
the same atomic primitive the sync engine commits through, so readers never
see half of a move. The store is only touched after the provider accepted
the write; on a provider error nothing local changes.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable

from unical.core.metrics import SyncMetrics
from unical.core.telemetry import calendar_span
from unical.errors import NotFoundError
from unical.models import (
    Calendar,
    CalendarEvent,
    EventResponse,
    ResponseToEventInput,
)
from unical.providers.registry import ProviderRegistry
from unical.reconcile import DeleteEventRequest, EditScope, UpdateEventRequest
from unical.storage.base import (
    CalendarKey,
    DeleteEvent,
    EventKey,
    EventStore,
    StoreOperation,
    UpsertEvent,
)

logger = logging.getLogger(__name__)


def _index_calendars(calendars: Iterable[Calendar]) -> dict[CalendarKey, Calendar]:
    return {calendar.key: calendar for calendar in calendars}


def _find_calendar(
    index: dict[CalendarKey, Calendar],
    account_id: str,
    calendar_id: str,
) -> Calendar:
    calendar = index.get((account_id, calendar_id))
    if calendar is None:
        raise NotFoundError(
            f"Calendar not found: {account_id}/{calendar_id}",
            operation="resolve_calendar",
        )
    return calendar


def _send_update(event: CalendarEvent) -> bool:
    if event.response is not None and event.response.send_update is not None:
        return event.response.send_update
    return True


class EventMutator:
    """Applies confirmed user edits through the owning provider adapters.

    ``calendars`` arguments are the calendars known to the caller (usually
    from ``CalendarProvider.calendars()``); they resolve the
    ``(account_id, calendar_id)`` pairs carried by requests.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: EventStore,
        *,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._metrics = metrics or SyncMetrics()

    async def create(self, calendar: Calendar, event: CalendarEvent) -> CalendarEvent:
        provider = self._registry.for_calendar(calendar)
        with calendar_span(
            "mutation.create",
            account_id=calendar.account_id,
            calendar_id=calendar.id,
            provider_id=calendar.provider_id,
        ):
            created = await provider.create_event(calendar, event)
            await self._store.apply_batch([UpsertEvent(created)])
        self._metrics.record_mutation(calendar.provider_id, "create")
        return created

    async def update(
        self,
        request: UpdateEventRequest,
        *,
        calendars: Iterable[Calendar],
    ) -> CalendarEvent:
        """Write *request* and persist the provider's version of the event.

        Without a move the event is updated where it lives. A move within one
        account of the same provider uses the provider's move, then applies
        the field update to the moved event. Any other move creates a copy in
        the destination and deletes the source.
        """
        index = _index_calendars(calendars)
        data = request.data
        source = _find_calendar(index, data.account_id, data.calendar_id)
        source_provider = self._registry.for_calendar(source)
        previous_key = EventKey(source.account_id, source.id, data.id)

        with calendar_span(
            "mutation.update",
            account_id=source.account_id,
            calendar_id=source.id,
            provider_id=source.provider_id,
        ):
            move = request.move
            if move is None or move.source == move.destination:
                updated = await source_provider.update_event(source, data.id, data)
            else:
                destination = _find_calendar(
                    index, move.destination.account_id, move.destination.calendar_id
                )
                updated = await self._move_and_update(source, destination, data)

            operations: list[StoreOperation] = []
            if EventKey.of(updated) != previous_key:
                operations.append(DeleteEvent(previous_key))
            operations.append(UpsertEvent(updated))
            await self._store.apply_batch(operations)

        self._metrics.record_mutation(source.provider_id, "update")
        return updated

    async def _move_and_update(
        self,
        source: Calendar,
        destination: Calendar,
        data: CalendarEvent,
    ) -> CalendarEvent:
        source_provider = self._registry.for_calendar(source)
        send_update = _send_update(data)

        if (
            source.account_id == destination.account_id
            and source.provider_id == destination.provider_id
        ):
            moved = await source_provider.move_event(
                source, destination, data.id, send_update=send_update
            )
            payload = data.model_copy(
                update={"id": moved.id, "calendar_id": destination.id}, deep=True
            )
            return await source_provider.update_event(destination, moved.id, payload)

        destination_provider = self._registry.for_calendar(destination)
        copy = data.model_copy(
            update={
                "id": uuid.uuid4().hex,
                "account_id": destination.account_id,
                "calendar_id": destination.id,
                "provider_id": destination.provider_id,
                "etag": None,
                "url": None,
                "read_only": False,
            },
            deep=True,
        )
        created = await destination_provider.create_event(destination, copy)
        await source_provider.delete_event(source.id, data.id, send_update=send_update)
        logger.info(
            "Moved event %s from %s/%s to %s/%s as %s",
            data.id,
            source.account_id,
            source.id,
            destination.account_id,
            destination.id,
            created.id,
        )
        return created

    async def delete(
        self,
        request: DeleteEventRequest,
        *,
        calendars: Iterable[Calendar],
    ) -> None:
        """Delete at the provider, then drop the stored event.

        A series deletion also drops the stored instances of that series.
        """
        ref = request.event
        calendar = _find_calendar(_index_calendars(calendars), ref.account_id, ref.calendar_id)
        provider = self._registry.for_calendar(calendar)

        with calendar_span(
            "mutation.delete",
            account_id=calendar.account_id,
            calendar_id=calendar.id,
            provider_id=calendar.provider_id,
        ):
            await provider.delete_event(calendar.id, ref.id, send_update=request.send_update)

            operations: list[StoreOperation] = [DeleteEvent(EventKey.of(ref))]
            if request.scope is EditScope.SERIES:
                for stored in await self._store.list_events(calendar.account_id, calendar.id):
                    if stored.recurring_event_id == ref.id:
                        operations.append(DeleteEvent(EventKey.of(stored)))
            await self._store.apply_batch(operations)

        self._metrics.record_mutation(calendar.provider_id, "delete")

    async def respond(
        self,
        event: CalendarEvent,
        response: ResponseToEventInput,
        *,
        calendars: Iterable[Calendar],
    ) -> CalendarEvent:
        """Record the user's RSVP at the provider and on the stored event."""
        calendar = _find_calendar(_index_calendars(calendars), event.account_id, event.calendar_id)
        provider = self._registry.for_calendar(calendar)

        with calendar_span(
            "mutation.respond",
            account_id=calendar.account_id,
            calendar_id=calendar.id,
            provider_id=calendar.provider_id,
        ):
            await provider.response_to_event(calendar.id, event.id, response)
            responded = event.model_copy(
                update={
                    "response": EventResponse(status=response.status, comment=response.comment)
                },
                deep=True,
            )
            await self._store.apply_batch([UpsertEvent(responded)])

        self._metrics.record_mutation(calendar.provider_id, "respond")
        return responded
