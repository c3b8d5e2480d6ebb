"""Edit-scope decisions and write builders for user edits.

These functions are pure: they look at the edited event and the stored
version it came from, and return the request that the confirmed write path
(:mod:`unical.mutations`) sends to the provider. Nothing here performs I/O.
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from unical.errors import NotARecurringInstanceError
from unical.models import (
    Attendee,
    AttendeeStatus,
    Calendar,
    CalendarEvent,
    EventRef,
    EventResponse,
)


class EditScope(StrEnum):
    """Which occurrences a user edit applies to."""

    INSTANCE = "instance"
    SERIES = "series"
    THIS_AND_FOLLOWING = "this_and_following"


class CalendarLocation(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    account_id: str
    calendar_id: str


class MoveDirective(BaseModel):
    """Move an event from ``source`` to ``destination`` as a separate provider call."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    source: CalendarLocation
    destination: CalendarLocation


class UpdateEventRequest(BaseModel):
    """An in-place update (``data``) plus an optional move."""

    model_config = ConfigDict(extra="forbid")

    data: CalendarEvent
    move: MoveDirective | None = None


class DeleteEventRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    event: EventRef
    send_update: bool = True
    scope: EditScope = EditScope.INSTANCE


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def is_user_only_attendee(attendees: Sequence[Attendee] | None) -> bool:
    """True when the event has no guests besides its organizer."""
    if not attendees:
        return True
    return len(attendees) == 1 and bool(attendees[0].organizer)


def is_moved_between_calendars(updated: CalendarEvent, previous: CalendarEvent) -> bool:
    return (
        updated.account_id != previous.account_id or updated.calendar_id != previous.calendar_id
    )


def requires_attendee_confirmation(event: CalendarEvent) -> bool:
    """Whether the user must be asked "notify attendees?" before the write."""
    return bool(event.attendees) and not is_user_only_attendee(event.attendees)


def requires_recurrence_confirmation(event: CalendarEvent) -> bool:
    """Whether the user must choose between this occurrence and the whole series."""
    return event.recurring_event_id is not None


def can_move_between_calendars(
    event: CalendarEvent,
    destination: Calendar,
    *,
    source: Calendar | None = None,
) -> bool:
    """Whether *event* may be moved into *destination*.

    Moves to the same calendar, out of or into read-only calendars, and of
    recurring events (masters or instances) are refused.
    """
    if event.account_id == destination.account_id and event.calendar_id == destination.id:
        return False
    if destination.read_only or event.read_only:
        return False
    if source is not None and source.read_only:
        return False
    if event.recurrence is not None or event.recurring_event_id is not None:
        return False
    return True


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def _build_update(
    event: CalendarEvent,
    previous: CalendarEvent,
    send_update: bool | None,
    overrides: dict,
) -> UpdateEventRequest:
    update = dict(overrides)
    move = None
    if is_moved_between_calendars(event, previous):
        # The in-place write targets the event where it currently lives; the
        # calendar change travels separately as a move.
        update.update(
            account_id=previous.account_id,
            calendar_id=previous.calendar_id,
            provider_id=previous.provider_id,
        )
        move = MoveDirective(
            source=CalendarLocation(
                account_id=previous.account_id, calendar_id=previous.calendar_id
            ),
            destination=CalendarLocation(
                account_id=event.account_id, calendar_id=event.calendar_id
            ),
        )
    if send_update:
        update["response"] = EventResponse(
            status=event.response.status if event.response else AttendeeStatus.unknown,
            send_update=send_update,
        )
    return UpdateEventRequest(data=event.model_copy(update=update, deep=True), move=move)


def build_update_event(
    event: CalendarEvent,
    previous: CalendarEvent,
    *,
    send_update: bool | None = None,
) -> UpdateEventRequest:
    """Build the write for an edit of a single event or occurrence.

    Parameters
    ----------
    event:
        The edited event as the user wants it.
    previous:
        The stored version the edit started from.
    send_update:
        When true, attendees are notified; the payload carries the user's
        current response with ``send_update`` set.
    """
    return _build_update(event, previous, send_update, {})


def build_update_series(
    event: CalendarEvent,
    previous: CalendarEvent,
    *,
    send_update: bool | None = None,
) -> UpdateEventRequest:
    """Like :func:`build_update_event`, but redirected to the series master.

    Raises
    ------
    NotARecurringInstanceError
        If *event* has no ``recurring_event_id``.
    """
    if event.recurring_event_id is None:
        raise NotARecurringInstanceError(event.id)
    return _build_update(
        event,
        previous,
        send_update,
        {"id": event.recurring_event_id, "recurring_event_id": None},
    )


def build_update(
    event: CalendarEvent,
    previous: CalendarEvent,
    scope: EditScope,
    *,
    send_update: bool | None = None,
) -> UpdateEventRequest:
    if scope is EditScope.INSTANCE:
        return build_update_event(event, previous, send_update=send_update)
    if scope is EditScope.SERIES:
        return build_update_series(event, previous, send_update=send_update)
    raise NotImplementedError(f"Edit scope '{scope}' is not supported")


def build_delete_event(event: CalendarEvent, *, send_update: bool = True) -> DeleteEventRequest:
    return DeleteEventRequest(event=event.ref(), send_update=send_update)


def build_delete_series(event: CalendarEvent, *, send_update: bool = True) -> DeleteEventRequest:
    """Delete the whole series *event* belongs to, by targeting its master.

    Raises
    ------
    NotARecurringInstanceError
        If *event* has no ``recurring_event_id``.
    """
    if event.recurring_event_id is None:
        raise NotARecurringInstanceError(event.id)
    master = event.ref().model_copy(update={"id": event.recurring_event_id})
    return DeleteEventRequest(event=master, send_update=send_update, scope=EditScope.SERIES)
