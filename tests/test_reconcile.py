"""Tests for unical.reconcile: edit-scope predicates and write builders."""

from __future__ import annotations

import pytest

from unical.errors import NotARecurringInstanceError
from unical.models import (
    Attendee,
    AttendeeStatus,
    Calendar,
    CalendarEvent,
    EventResponse,
    Recurrence,
)
from unical.reconcile import (
    CalendarLocation,
    EditScope,
    build_delete_event,
    build_delete_series,
    build_update,
    build_update_event,
    build_update_series,
    can_move_between_calendars,
    is_moved_between_calendars,
    is_user_only_attendee,
    requires_attendee_confirmation,
    requires_recurrence_confirmation,
)
from unical.temporal import PlainDate

pytestmark = pytest.mark.unit


def _event(**overrides) -> CalendarEvent:
    fields = {
        "id": "e1",
        "title": "Planning",
        "start": PlainDate.of(2025, 1, 6),
        "end": PlainDate.of(2025, 1, 7),
        "provider_id": "google",
        "account_id": "acct",
        "calendar_id": "primary",
    }
    fields.update(overrides)
    return CalendarEvent(**fields)


def _calendar(calendar_id: str = "work", **overrides) -> Calendar:
    fields = {"id": calendar_id, "provider_id": "google", "account_id": "acct", "name": "Work"}
    fields.update(overrides)
    return Calendar(**fields)


ORGANIZER = Attendee(email="me@example.com", organizer=True, status=AttendeeStatus.accepted)
GUEST = Attendee(email="guest@example.com")


class TestPredicates:
    def test_user_only_attendee(self):
        assert is_user_only_attendee(None) is True
        assert is_user_only_attendee([]) is True
        assert is_user_only_attendee([ORGANIZER]) is True
        assert is_user_only_attendee([GUEST]) is False
        assert is_user_only_attendee([ORGANIZER, GUEST]) is False

    def test_attendee_confirmation(self):
        assert requires_attendee_confirmation(_event()) is False
        assert requires_attendee_confirmation(_event(attendees=[ORGANIZER])) is False
        assert requires_attendee_confirmation(_event(attendees=[ORGANIZER, GUEST])) is True

    def test_recurrence_confirmation(self):
        assert requires_recurrence_confirmation(_event()) is False
        assert requires_recurrence_confirmation(_event(recurring_event_id="m1")) is True

    def test_moved_between_calendars(self):
        previous = _event()
        assert is_moved_between_calendars(_event(title="Renamed"), previous) is False
        assert is_moved_between_calendars(_event(calendar_id="work"), previous) is True
        assert is_moved_between_calendars(_event(account_id="other"), previous) is True


class TestCanMove:
    def test_plain_event_to_writable_calendar(self):
        assert can_move_between_calendars(_event(), _calendar()) is True

    def test_same_calendar_is_refused(self):
        assert can_move_between_calendars(_event(), _calendar("primary")) is False

    def test_read_only_destination_or_source(self):
        assert can_move_between_calendars(_event(), _calendar(read_only=True)) is False
        assert (
            can_move_between_calendars(
                _event(), _calendar(), source=_calendar("primary", read_only=True)
            )
            is False
        )
        assert can_move_between_calendars(_event(read_only=True), _calendar()) is False

    def test_recurring_events_are_refused(self):
        master = _event(recurrence=Recurrence(freq="WEEKLY"))
        instance = _event(id="e1_20250106", recurring_event_id="e1")
        assert can_move_between_calendars(master, _calendar()) is False
        assert can_move_between_calendars(instance, _calendar()) is False


class TestBuildUpdate:
    def test_in_place_edit_has_no_move(self):
        request = build_update_event(_event(title="Renamed"), _event())
        assert request.move is None
        assert request.data.title == "Renamed"
        assert request.data.response is None

    def test_move_targets_previous_location(self):
        edited = _event(calendar_id="work", title="Moved")
        request = build_update_event(edited, _event())

        assert request.data.calendar_id == "primary"
        assert request.data.title == "Moved"
        assert request.move is not None
        assert request.move.source == CalendarLocation(account_id="acct", calendar_id="primary")
        assert request.move.destination == CalendarLocation(account_id="acct", calendar_id="work")

    def test_move_keeps_previous_provider(self):
        edited = _event(account_id="outlook", provider_id="microsoft", calendar_id="cal-1")
        request = build_update_event(edited, _event())
        assert (request.data.account_id, request.data.provider_id) == ("acct", "google")
        assert request.move.destination.account_id == "outlook"

    def test_send_update_carries_current_response(self):
        edited = _event(response=EventResponse(status=AttendeeStatus.tentative, comment="maybe"))
        request = build_update_event(edited, _event(), send_update=True)
        assert request.data.response == EventResponse(
            status=AttendeeStatus.tentative, send_update=True
        )

    def test_send_update_without_response(self):
        request = build_update_event(_event(), _event(), send_update=True)
        assert request.data.response.status is AttendeeStatus.unknown
        assert request.data.response.send_update is True

    def test_input_event_is_not_mutated(self):
        edited = _event(calendar_id="work")
        build_update_event(edited, _event(), send_update=True)
        assert edited.calendar_id == "work"
        assert edited.response is None


class TestBuildUpdateSeries:
    def test_redirects_to_master(self):
        instance = _event(id="m1_20250106", recurring_event_id="m1", title="All of them")
        request = build_update_series(instance, instance)
        assert request.data.id == "m1"
        assert request.data.recurring_event_id is None
        assert request.data.title == "All of them"

    def test_non_instance_raises(self):
        with pytest.raises(NotARecurringInstanceError) as exc_info:
            build_update_series(_event(), _event())
        assert exc_info.value.event_id == "e1"

    def test_scope_dispatch(self):
        instance = _event(id="m1_20250106", recurring_event_id="m1")
        assert build_update(instance, instance, EditScope.INSTANCE).data.id == "m1_20250106"
        assert build_update(instance, instance, EditScope.SERIES).data.id == "m1"

    def test_this_and_following_is_not_supported(self):
        instance = _event(id="m1_20250106", recurring_event_id="m1")
        with pytest.raises(NotImplementedError):
            build_update(instance, instance, EditScope.THIS_AND_FOLLOWING)


class TestBuildDelete:
    def test_delete_event(self):
        request = build_delete_event(_event(), send_update=False)
        assert request.event.id == "e1"
        assert request.send_update is False
        assert request.scope is EditScope.INSTANCE

    def test_delete_series_targets_master(self):
        instance = _event(id="m1_20250106", recurring_event_id="m1")
        request = build_delete_series(instance)
        assert request.event.id == "m1"
        assert request.event.calendar_id == "primary"
        assert request.scope is EditScope.SERIES
        assert request.send_update is True

    def test_delete_series_of_plain_event_raises(self):
        with pytest.raises(NotARecurringInstanceError):
            build_delete_series(_event())
