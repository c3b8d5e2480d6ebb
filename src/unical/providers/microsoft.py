"""Microsoft Graph v1.0 calendar adapter."""

from __future__ import annotations

import logging
import re
from datetime import UTC, date, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from unical.errors import (
    NotFoundError,
    ParseError,
    ProviderError,
    RangeError,
    SyncTokenExpiredError,
    UnsupportedRecurrenceError,
)
from unical.models import (
    Attendee,
    AttendeeStatus,
    AttendeeType,
    Calendar,
    CalendarEvent,
    CalendarFreeBusy,
    ConferenceData,
    ConferenceEntryPoint,
    CreateCalendarInput,
    CreateConferenceRequest,
    EventRef,
    EventResponse,
    EventsPage,
    EventVisibility,
    FreeBusySlot,
    Frequency,
    JoinUrl,
    ProviderId,
    Recurrence,
    ResponseToEventInput,
    SyncDeleted,
    SyncItem,
    SyncResult,
    SyncUpdated,
    UpdateCalendarInput,
    Weekday,
)
from unical.providers.base import HttpCalendarProvider, SyncOptions, rfc3339
from unical.temporal import (
    Instant,
    PlainDate,
    TemporalValue,
    ZonedDateTime,
    compare,
    parse_instant,
    to_plain_date,
    to_zoned,
    zone_info,
)

logger = logging.getLogger(__name__)

GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_PAGE_SIZE = 250
GRAPH_CALENDAR_SELECT = "id,name,isDefaultCalendar,canEdit,hexColor,owner"

DEFAULT_DELTA_WINDOW_PAST = timedelta(days=30)
DEFAULT_DELTA_WINDOW_FUTURE = timedelta(days=365)

_SYNC_RESET_ERROR_CODES = frozenset({"SyncStateNotFound", "syncStateNotFound", "resyncRequired"})
_FRACTION_PATTERN = re.compile(r"(\.\d{1,6})\d*")

# Windows time zone ids Graph reports for mailboxes, mapped to IANA (CLDR windowsZones, 001 rows).
WINDOWS_TO_IANA: dict[str, str] = {
    "Dateline Standard Time": "Etc/GMT+12",
    "Hawaiian Standard Time": "Pacific/Honolulu",
    "Alaskan Standard Time": "America/Anchorage",
    "Pacific Standard Time": "America/Los_Angeles",
    "US Mountain Standard Time": "America/Phoenix",
    "Mountain Standard Time": "America/Denver",
    "Central America Standard Time": "America/Guatemala",
    "Central Standard Time": "America/Chicago",
    "Canada Central Standard Time": "America/Regina",
    "SA Pacific Standard Time": "America/Bogota",
    "Eastern Standard Time": "America/New_York",
    "US Eastern Standard Time": "America/Indianapolis",
    "Atlantic Standard Time": "America/Halifax",
    "SA Western Standard Time": "America/La_Paz",
    "Newfoundland Standard Time": "America/St_Johns",
    "E. South America Standard Time": "America/Sao_Paulo",
    "Argentina Standard Time": "America/Buenos_Aires",
    "UTC": "UTC",
    "Coordinated Universal Time": "UTC",
    "GMT Standard Time": "Europe/London",
    "Greenwich Standard Time": "Atlantic/Reykjavik",
    "W. Europe Standard Time": "Europe/Berlin",
    "Central Europe Standard Time": "Europe/Budapest",
    "Romance Standard Time": "Europe/Paris",
    "Central European Standard Time": "Europe/Warsaw",
    "W. Central Africa Standard Time": "Africa/Lagos",
    "GTB Standard Time": "Europe/Bucharest",
    "FLE Standard Time": "Europe/Kiev",
    "Israel Standard Time": "Asia/Jerusalem",
    "Egypt Standard Time": "Africa/Cairo",
    "South Africa Standard Time": "Africa/Johannesburg",
    "Turkey Standard Time": "Europe/Istanbul",
    "Russian Standard Time": "Europe/Moscow",
    "Arab Standard Time": "Asia/Riyadh",
    "Arabian Standard Time": "Asia/Dubai",
    "Iran Standard Time": "Asia/Tehran",
    "Pakistan Standard Time": "Asia/Karachi",
    "India Standard Time": "Asia/Calcutta",
    "Nepal Standard Time": "Asia/Katmandu",
    "Bangladesh Standard Time": "Asia/Dhaka",
    "SE Asia Standard Time": "Asia/Bangkok",
    "China Standard Time": "Asia/Shanghai",
    "Singapore Standard Time": "Asia/Singapore",
    "Taipei Standard Time": "Asia/Taipei",
    "Tokyo Standard Time": "Asia/Tokyo",
    "Korea Standard Time": "Asia/Seoul",
    "AUS Central Standard Time": "Australia/Darwin",
    "E. Australia Standard Time": "Australia/Brisbane",
    "AUS Eastern Standard Time": "Australia/Sydney",
    "Tasmania Standard Time": "Australia/Hobart",
    "New Zealand Standard Time": "Pacific/Auckland",
}

_GRAPH_DAYS = {
    Weekday.MO: "monday",
    Weekday.TU: "tuesday",
    Weekday.WE: "wednesday",
    Weekday.TH: "thursday",
    Weekday.FR: "friday",
    Weekday.SA: "saturday",
    Weekday.SU: "sunday",
}
_DAYS_FROM_GRAPH = {name: day for day, name in _GRAPH_DAYS.items()}
_WEEKDAY_BY_INDEX = list(_GRAPH_DAYS)

_GRAPH_INDEXES = {1: "first", 2: "second", 3: "third", 4: "fourth", -1: "last"}
_INDEXES_FROM_GRAPH = {name: number for number, name in _GRAPH_INDEXES.items()}

_GRAPH_RESPONSE_STATUS = {
    "accepted": AttendeeStatus.accepted,
    "organizer": AttendeeStatus.accepted,
    "tentativelyAccepted": AttendeeStatus.tentative,
    "declined": AttendeeStatus.declined,
    "notResponded": AttendeeStatus.unknown,
    "none": AttendeeStatus.unknown,
}
_RESPONSE_ACTIONS = {
    AttendeeStatus.accepted: "accept",
    AttendeeStatus.tentative: "tentativelyAccept",
    AttendeeStatus.declined: "decline",
}
_SENSITIVITY_FROM_GRAPH = {
    "normal": EventVisibility.default,
    "personal": EventVisibility.private,
    "private": EventVisibility.private,
    "confidential": EventVisibility.confidential,
}
_SENSITIVITY_TO_GRAPH = {
    EventVisibility.default: "normal",
    EventVisibility.public: "normal",
    EventVisibility.private: "private",
    EventVisibility.confidential: "confidential",
}
_FREE_BUSY_STATUS = {
    "free": "free",
    "tentative": "tentative",
    "busy": "busy",
    "oof": "oof",
    "workingElsewhere": "working_elsewhere",
}


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


# ---------------------------------------------------------------------------
# Time zones and date-times
# ---------------------------------------------------------------------------


def windows_to_iana(time_zone: str | None) -> str | None:
    """Resolve a Graph zone name (Windows or IANA) to an IANA id, ``None`` if unknown."""
    name = _optional_text(time_zone)
    if name is None:
        return None
    mapped = WINDOWS_TO_IANA.get(name, name)
    try:
        zone_info(mapped)
    except RangeError:
        return None
    return mapped


def parse_graph_date_time(date_time: str, time_zone: str | None) -> ZonedDateTime:
    """Parse Graph's ``dateTimeTimeZone`` pair; fractions beyond microseconds are dropped."""
    text = _FRACTION_PATTERN.sub(r"\1", date_time.strip(), count=1)
    try:
        naive = datetime.fromisoformat(text).replace(tzinfo=None)
    except ValueError as exc:
        raise ParseError(f"Invalid Graph dateTime: {date_time!r}") from exc
    return ZonedDateTime(value=naive, time_zone=windows_to_iana(time_zone) or "UTC")


def _parse_graph_date(date_time: str) -> PlainDate:
    try:
        return PlainDate(value=date.fromisoformat(date_time.strip()[:10]))
    except ValueError as exc:
        raise ParseError(f"Invalid Graph date: {date_time!r}") from exc


def format_graph_date_time(
    value: TemporalValue,
    *,
    original_time_zone: dict[str, Any] | None = None,
) -> dict[str, str]:
    """Render a ``dateTimeTimeZone`` object, reusing the event's original Windows zone."""
    raw_zone = original_time_zone.get("raw") if original_time_zone else None
    parsed_zone = original_time_zone.get("parsed") if original_time_zone else None

    if isinstance(value, PlainDate):
        return {"dateTime": f"{value.value.isoformat()}T00:00:00", "timeZone": raw_zone or "UTC"}
    if isinstance(value, Instant):
        return {"dateTime": value.value.replace(tzinfo=None).isoformat(), "timeZone": "UTC"}

    time_zone = raw_zone if raw_zone and parsed_zone == value.time_zone else value.time_zone
    return {"dateTime": value.value.isoformat(), "timeZone": time_zone}


# ---------------------------------------------------------------------------
# Recurrence
# ---------------------------------------------------------------------------


def parse_graph_recurrence(payload: Any) -> Recurrence | None:
    """Translate a ``patternedRecurrence`` into the canonical rule."""
    if not isinstance(payload, dict):
        return None
    pattern = payload.get("pattern")
    recurrence_range = payload.get("range")
    if not isinstance(pattern, dict):
        return None
    recurrence_range = recurrence_range if isinstance(recurrence_range, dict) else {}

    pattern_type = pattern.get("type")
    interval = pattern.get("interval")
    days = [
        _DAYS_FROM_GRAPH[name].value
        for name in pattern.get("daysOfWeek") or []
        if name in _DAYS_FROM_GRAPH
    ]
    first_day = _DAYS_FROM_GRAPH.get(pattern.get("firstDayOfWeek"))
    index = _INDEXES_FROM_GRAPH.get(pattern.get("index"), 1)
    month = pattern.get("month") or None
    day_of_month = pattern.get("dayOfMonth") or None

    fields: dict[str, Any] = {
        "interval": interval if isinstance(interval, int) and interval > 1 else None,
    }
    if pattern_type == "daily":
        fields["freq"] = Frequency.DAILY
    elif pattern_type == "weekly":
        fields["freq"] = Frequency.WEEKLY
        fields["by_day"] = days
        if first_day is not None and first_day != Weekday.SU:
            fields["wkst"] = first_day
    elif pattern_type == "absoluteMonthly":
        fields["freq"] = Frequency.MONTHLY
        fields["by_month_day"] = [day_of_month] if day_of_month else None
    elif pattern_type == "relativeMonthly":
        fields["freq"] = Frequency.MONTHLY
        fields.update(_relative_days(days, index))
    elif pattern_type == "absoluteYearly":
        fields["freq"] = Frequency.YEARLY
        fields["by_month"] = [month] if month else None
        fields["by_month_day"] = [day_of_month] if day_of_month else None
    elif pattern_type == "relativeYearly":
        fields["freq"] = Frequency.YEARLY
        fields["by_month"] = [month] if month else None
        fields.update(_relative_days(days, index))
    else:
        raise UnsupportedRecurrenceError(f"Unknown Graph recurrence pattern type: {pattern_type!r}")

    range_type = recurrence_range.get("type")
    if range_type == "endDate" and recurrence_range.get("endDate"):
        fields["until"] = _parse_graph_date(recurrence_range["endDate"])
    elif range_type == "numbered" and recurrence_range.get("numberOfOccurrences"):
        fields["count"] = int(recurrence_range["numberOfOccurrences"])

    return Recurrence(**fields)


def _relative_days(days: list[str], index: int) -> dict[str, Any]:
    if len(days) == 1:
        return {"by_day": [f"{index}{days[0]}"]}
    return {"by_day": days, "by_set_pos": [index]}


def _split_by_day(by_day: list[str]) -> tuple[list[Weekday], set[int]]:
    weekdays: list[Weekday] = []
    ordinals: set[int] = set()
    for token in by_day:
        weekday = Weekday(token[-2:])
        if len(token) > 2:
            ordinals.add(int(token[:-2]))
        weekdays.append(weekday)
    return weekdays, ordinals


def _graph_index(ordinal: int) -> str:
    try:
        return _GRAPH_INDEXES[ordinal]
    except KeyError:
        raise UnsupportedRecurrenceError(
            f"Graph supports first..fourth and last positions, not {ordinal}"
        ) from None


def build_graph_recurrence(
    recurrence: Recurrence,
    start: TemporalValue,
    *,
    time_zone: str,
) -> dict[str, Any]:
    """Translate a canonical rule into a ``patternedRecurrence``.

    Raises:
        UnsupportedRecurrenceError: for anything Graph's pattern model cannot express.
    """
    unsupported = [
        name
        for name in (
            "by_hour",
            "by_minute",
            "by_second",
            "by_week_no",
            "by_year_day",
            "r_date",
            "ex_date",
            "rscale",
            "skip",
        )
        if getattr(recurrence, name)
    ]
    if unsupported:
        raise UnsupportedRecurrenceError(
            f"Graph recurrence cannot express: {', '.join(sorted(unsupported))}"
        )
    if recurrence.by_set_pos and len(recurrence.by_set_pos) > 1:
        raise UnsupportedRecurrenceError("Graph recurrence supports a single set position")
    if recurrence.by_month and len(recurrence.by_month) > 1:
        raise UnsupportedRecurrenceError("Graph recurrence supports a single month")
    if recurrence.by_month_day and len(recurrence.by_month_day) > 1:
        raise UnsupportedRecurrenceError("Graph recurrence supports a single day of month")
    if recurrence.by_month_day and recurrence.by_month_day[0] < 0:
        raise UnsupportedRecurrenceError("Graph recurrence cannot count days from month end")

    start_date = to_plain_date(start, time_zone).value
    weekdays, ordinals = _split_by_day(recurrence.by_day or [])
    if len(ordinals) > 1:
        raise UnsupportedRecurrenceError("Graph recurrence supports a single weekday position")

    pattern: dict[str, Any] = {"interval": recurrence.interval or 1}
    freq = recurrence.freq

    if freq == Frequency.DAILY:
        if recurrence.by_day or recurrence.by_month or recurrence.by_month_day:
            raise UnsupportedRecurrenceError("Graph daily recurrence takes no BY* filters")
        pattern["type"] = "daily"
    elif freq == Frequency.WEEKLY:
        if ordinals or recurrence.by_month or recurrence.by_month_day or recurrence.by_set_pos:
            raise UnsupportedRecurrenceError("Graph weekly recurrence only filters by weekday")
        days = weekdays or [_WEEKDAY_BY_INDEX[start_date.weekday()]]
        pattern["type"] = "weekly"
        pattern["daysOfWeek"] = [_GRAPH_DAYS[day] for day in days]
        pattern["firstDayOfWeek"] = _GRAPH_DAYS[recurrence.wkst or Weekday.SU]
    elif freq in (Frequency.MONTHLY, Frequency.YEARLY):
        yearly = freq == Frequency.YEARLY
        if yearly:
            pattern["month"] = recurrence.by_month[0] if recurrence.by_month else start_date.month
        elif recurrence.by_month:
            raise UnsupportedRecurrenceError("Graph monthly recurrence cannot filter by month")

        if weekdays:
            if recurrence.by_month_day:
                raise UnsupportedRecurrenceError("Graph cannot combine weekdays and month days")
            position = next(iter(ordinals), None)
            if recurrence.by_set_pos:
                if position is not None:
                    raise UnsupportedRecurrenceError("Graph cannot combine BYSETPOS with ordinals")
                position = recurrence.by_set_pos[0]
            if position is None:
                raise UnsupportedRecurrenceError("Graph relative recurrence needs a position")
            pattern["type"] = "relativeYearly" if yearly else "relativeMonthly"
            pattern["daysOfWeek"] = [_GRAPH_DAYS[day] for day in weekdays]
            pattern["index"] = _graph_index(position)
        else:
            if recurrence.by_set_pos:
                raise UnsupportedRecurrenceError("Graph cannot apply BYSETPOS to month days")
            pattern["type"] = "absoluteYearly" if yearly else "absoluteMonthly"
            pattern["dayOfMonth"] = (
                recurrence.by_month_day[0] if recurrence.by_month_day else start_date.day
            )
    else:
        raise UnsupportedRecurrenceError(f"Graph recurrence does not support FREQ={freq}")

    recurrence_range: dict[str, Any] = {
        "startDate": start_date.isoformat(),
        "recurrenceTimeZone": time_zone,
    }
    if recurrence.until is not None:
        recurrence_range["type"] = "endDate"
        recurrence_range["endDate"] = to_plain_date(recurrence.until, time_zone).value.isoformat()
    elif recurrence.count is not None:
        recurrence_range["type"] = "numbered"
        recurrence_range["numberOfOccurrences"] = recurrence.count
    else:
        recurrence_range["type"] = "noEnd"
    return {"pattern": pattern, "range": recurrence_range}


# ---------------------------------------------------------------------------
# Payload -> canonical model
# ---------------------------------------------------------------------------


def parse_graph_calendar(payload: dict[str, Any], *, account_id: str) -> Calendar:
    calendar_id = _optional_text(payload.get("id"))
    if calendar_id is None:
        raise ParseError("Graph calendar payload is missing a non-empty id")
    can_edit = payload.get("canEdit")
    hex_color = _optional_text(payload.get("hexColor"))
    return Calendar(
        id=calendar_id,
        provider_id="microsoft",
        account_id=account_id,
        name=_optional_text(payload.get("name")) or calendar_id,
        primary=payload.get("isDefaultCalendar") is True,
        color=hex_color,
        read_only=can_edit is False,
    )


def _parse_graph_attendee(entry: dict[str, Any]) -> Attendee | None:
    email_address = entry.get("emailAddress")
    if not isinstance(email_address, dict):
        return None
    email = _optional_text(email_address.get("address"))
    if email is None:
        return None
    status = entry.get("status")
    response = status.get("response") if isinstance(status, dict) else None
    attendee_type = entry.get("type")
    return Attendee(
        email=email,
        name=_optional_text(email_address.get("name")),
        status=_GRAPH_RESPONSE_STATUS.get(response, AttendeeStatus.unknown),
        type=AttendeeType(attendee_type)
        if attendee_type in AttendeeType.__members__
        else AttendeeType.required,
        organizer=True if response == "organizer" else None,
    )


def parse_graph_attendees(payload: dict[str, Any]) -> list[Attendee]:
    attendees: list[Attendee] = []
    organizer = payload.get("organizer")
    organizer_address = None
    if isinstance(organizer, dict) and isinstance(organizer.get("emailAddress"), dict):
        organizer_address = _optional_text(organizer["emailAddress"].get("address"))

    for entry in payload.get("attendees") or []:
        if not isinstance(entry, dict):
            continue
        attendee = _parse_graph_attendee(entry)
        if attendee is None:
            continue
        if organizer_address and attendee.email.lower() == organizer_address.lower():
            attendee = attendee.model_copy(update={"organizer": True})
        if attendee.organizer:
            attendees.insert(0, attendee)
        else:
            attendees.append(attendee)
    return attendees


def _parse_graph_response(
    payload: dict[str, Any], attendees: list[Attendee]
) -> EventResponse | None:
    others = [attendee for attendee in attendees if not attendee.organizer]
    if not others:
        return None
    response_status = payload.get("responseStatus")
    response = response_status.get("response") if isinstance(response_status, dict) else None
    if not response:
        return None
    return EventResponse(status=_GRAPH_RESPONSE_STATUS.get(response, AttendeeStatus.unknown))


def parse_graph_conference(payload: dict[str, Any]) -> ConferenceData | None:
    online_meeting = payload.get("onlineMeeting")
    online_meeting = online_meeting if isinstance(online_meeting, dict) else {}
    join_url = _optional_text(online_meeting.get("joinUrl")) or _optional_text(
        payload.get("onlineMeetingUrl")
    )
    if join_url is None:
        return None

    conference_id = _optional_text(online_meeting.get("conferenceId"))
    phone: list[ConferenceEntryPoint] = []
    for entry in online_meeting.get("phones") or []:
        number = _optional_text(entry.get("number")) if isinstance(entry, dict) else None
        if number is None:
            continue
        uri = number if number.startswith("tel:") else f"tel:{re.sub(r'[- ]', '', number)}"
        phone.append(ConferenceEntryPoint(join_url=JoinUrl(value=uri, label=number)))

    return ConferenceData(
        provider_id="microsoft",
        conference_id=conference_id,
        name="Microsoft Teams"
        if payload.get("onlineMeetingProvider") == "teamsForBusiness"
        else None,
        video=ConferenceEntryPoint(join_url=JoinUrl(value=join_url), meeting_code=conference_id),
        phone=phone,
    )


def _original_time_zone(raw: Any) -> dict[str, Any] | None:
    name = _optional_text(raw)
    if name is None:
        return None
    return {"raw": name, "parsed": windows_to_iana(name)}


def _parse_graph_boundary(payload: Any, *, all_day: bool, event_id: str) -> TemporalValue:
    if not isinstance(payload, dict) or not _optional_text(payload.get("dateTime")):
        raise ParseError(f"Graph event '{event_id}' is missing start/end")
    if all_day:
        return _parse_graph_date(payload["dateTime"])
    return parse_graph_date_time(payload["dateTime"], payload.get("timeZone"))


def _parse_optional_instant(value: Any) -> Instant | None:
    text = _optional_text(value)
    if text is None:
        return None
    try:
        return parse_instant(_FRACTION_PATTERN.sub(r"\1", text, count=1))
    except (ParseError, RangeError):
        return None


def parse_graph_event(payload: dict[str, Any], *, calendar: Calendar) -> CalendarEvent:
    """Map a Graph event resource onto :class:`CalendarEvent`."""
    event_id = _optional_text(payload.get("id"))
    if event_id is None:
        raise ParseError("Graph event payload is missing a non-empty id")

    all_day = payload.get("isAllDay") is True
    start = _parse_graph_boundary(payload.get("start"), all_day=all_day, event_id=event_id)
    end = _parse_graph_boundary(payload.get("end"), all_day=all_day, event_id=event_id)

    metadata: dict[str, Any] = {}
    original_start = _original_time_zone(payload.get("originalStartTimeZone"))
    if original_start is not None:
        metadata["original_start_time_zone"] = original_start
    original_end = _original_time_zone(payload.get("originalEndTimeZone"))
    if original_end is not None:
        metadata["original_end_time_zone"] = original_end
    event_type = _optional_text(payload.get("type"))
    if event_type is not None:
        metadata["event_type"] = event_type

    recurrence = None
    if payload.get("recurrence"):
        try:
            recurrence = parse_graph_recurrence(payload.get("recurrence"))
        except UnsupportedRecurrenceError as exc:
            logger.warning("Graph event %s has an unreadable recurrence: %s", event_id, exc)
        metadata["original_recurrence"] = payload.get("recurrence")

    body = payload.get("body")
    description = None
    if isinstance(body, dict):
        description = _optional_text(body.get("content"))
    description = description or _optional_text(payload.get("bodyPreview"))

    location = payload.get("location")
    sensitivity = payload.get("sensitivity")
    attendees = parse_graph_attendees(payload)
    show_as = payload.get("showAs")

    return CalendarEvent(
        id=event_id,
        title=_optional_text(payload.get("subject")),
        description=description,
        start=start,
        end=end,
        all_day=all_day,
        location=(
            _optional_text(location.get("displayName")) if isinstance(location, dict) else None
        ),
        status="cancelled" if payload.get("isCancelled") is True else "confirmed",
        availability="free" if show_as == "free" else "busy",
        attendees=attendees,
        visibility=(
            _SENSITIVITY_FROM_GRAPH.get(sensitivity) if isinstance(sensitivity, str) else None
        ),
        read_only=calendar.read_only,
        provider_id="microsoft",
        account_id=calendar.account_id,
        calendar_id=calendar.id,
        response=_parse_graph_response(payload, attendees),
        conference=parse_graph_conference(payload),
        recurrence=recurrence,
        recurring_event_id=_optional_text(payload.get("seriesMasterId")),
        url=_optional_text(payload.get("webLink")),
        etag=_optional_text(payload.get("@odata.etag")),
        created_at=_parse_optional_instant(payload.get("createdDateTime")),
        updated_at=_parse_optional_instant(payload.get("lastModifiedDateTime")),
        metadata=metadata,
    )


# ---------------------------------------------------------------------------
# Canonical model -> payload
# ---------------------------------------------------------------------------


def _recurrence_time_zone(event: CalendarEvent, default_time_zone: str) -> str:
    if isinstance(event.start, ZonedDateTime):
        return event.start.time_zone
    return default_time_zone


def build_graph_event_body(
    event: CalendarEvent,
    *,
    default_time_zone: str = "UTC",
) -> dict[str, Any]:
    """Render the writable fields of *event* as a Graph event resource."""
    metadata = event.metadata or {}
    body: dict[str, Any] = {
        "start": format_graph_date_time(
            event.start, original_time_zone=metadata.get("original_start_time_zone")
        ),
        "end": format_graph_date_time(
            event.end, original_time_zone=metadata.get("original_end_time_zone")
        ),
        "isAllDay": isinstance(event.start, PlainDate),
        "showAs": "free" if event.availability == "free" else "busy",
    }
    if event.title is not None:
        body["subject"] = event.title
    if event.description is not None:
        body["body"] = {"contentType": "text", "content": event.description}
    if event.location is not None:
        body["location"] = {"displayName": event.location}
    if event.visibility is not None:
        body["sensitivity"] = _SENSITIVITY_TO_GRAPH[event.visibility]
    if event.attendees:
        body["attendees"] = [
            {
                "emailAddress": {
                    "address": attendee.email,
                    "name": attendee.name or attendee.email,
                },
                "type": attendee.type.value,
            }
            for attendee in event.attendees
            if not attendee.organizer
        ]
    if event.recurrence is not None:
        time_zone = _recurrence_time_zone(event, default_time_zone)
        body["recurrence"] = build_graph_recurrence(
            event.recurrence, event.start, time_zone=time_zone
        )
    if isinstance(event.conference, CreateConferenceRequest):
        body["isOnlineMeeting"] = True
        body["onlineMeetingProvider"] = "teamsForBusiness"
    return body


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class MicrosoftCalendarProvider(HttpCalendarProvider):
    """Outlook / Microsoft 365 calendar backend for one connected account."""

    base_url = GRAPH_API_BASE_URL

    def __init__(self, *, default_time_zone: str = "UTC", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._default_time_zone = default_time_zone

    @property
    def provider_id(self) -> ProviderId:
        return "microsoft"

    def _is_sync_token_invalid(self, response: httpx.Response) -> bool:
        if response.status_code == 410:
            return True
        try:
            payload = response.json()
        except ValueError:
            return False
        error = payload.get("error") if isinstance(payload, dict) else None
        return isinstance(error, dict) and error.get("code") in _SYNC_RESET_ERROR_CODES

    @staticmethod
    def _calendar_path(calendar_id: str) -> str:
        if calendar_id == "primary":
            return "/me/calendar"
        return f"/me/calendars/{quote(calendar_id, safe='')}"

    def _event_path(self, calendar_id: str, event_id: str) -> str:
        return f"{self._calendar_path(calendar_id)}/events/{quote(event_id, safe='')}"

    @staticmethod
    def _prefer_headers(time_zone: str) -> dict[str, str]:
        return {
            "Prefer": f'outlook.timezone="{time_zone}", odata.maxpagesize={GRAPH_PAGE_SIZE}',
        }

    async def _collect_pages(
        self,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        next_path: str | None = path
        while next_path:
            payload = await self._request_json(
                "GET",
                next_path,
                operation=operation,
                params=params,
                extra_headers=extra_headers,
            )
            items.extend(item for item in payload.get("value") or [] if isinstance(item, dict))
            next_path = payload.get("@odata.nextLink")
            # nextLink already carries the query string.
            params = None
        return items

    # -- calendars ------------------------------------------------------------

    async def calendars(self) -> list[Calendar]:
        items = await self._collect_pages(
            "/me/calendars", operation="calendars", params={"$select": GRAPH_CALENDAR_SELECT}
        )
        return [parse_graph_calendar(item, account_id=self.account_id) for item in items]

    async def calendar(self, calendar_id: str) -> Calendar:
        payload = await self._request_json(
            "GET",
            self._calendar_path(calendar_id),
            operation="calendar",
            params={"$select": GRAPH_CALENDAR_SELECT},
        )
        return parse_graph_calendar(payload, account_id=self.account_id)

    async def create_calendar(self, calendar: CreateCalendarInput) -> Calendar:
        payload = await self._request_json(
            "POST", "/me/calendars", operation="create_calendar", json_body={"name": calendar.name}
        )
        return parse_graph_calendar(payload, account_id=self.account_id)

    async def update_calendar(self, calendar_id: str, calendar: UpdateCalendarInput) -> Calendar:
        body: dict[str, Any] = {}
        if calendar.name is not None:
            body["name"] = calendar.name
        if not body:
            return await self.calendar(calendar_id)
        payload = await self._request_json(
            "PATCH", self._calendar_path(calendar_id), operation="update_calendar", json_body=body
        )
        return parse_graph_calendar(payload, account_id=self.account_id)

    async def delete_calendar(self, calendar_id: str) -> None:
        await self._request_json(
            "DELETE", self._calendar_path(calendar_id), operation="delete_calendar"
        )

    # -- events ---------------------------------------------------------------

    async def _fetch_masters(self, calendar: Calendar, master_ids: set[str]) -> list[CalendarEvent]:
        masters: list[CalendarEvent] = []
        for master_id in sorted(master_ids):
            try:
                payload = await self._request_json(
                    "GET",
                    f"/me/events/{quote(master_id, safe='')}",
                    operation="recurring_master",
                )
            except NotFoundError:
                logger.info("Series master %s no longer exists; skipping", master_id)
                continue
            masters.append(parse_graph_event(payload, calendar=calendar))
        return masters

    async def events(
        self,
        calendar: Calendar,
        *,
        time_min: TemporalValue,
        time_max: TemporalValue,
        time_zone: str = "UTC",
    ) -> EventsPage:
        items = await self._collect_pages(
            f"{self._calendar_path(calendar.id)}/calendarView",
            operation="events",
            params={
                "startDateTime": rfc3339(time_min, time_zone),
                "endDateTime": rfc3339(time_max, time_zone),
                "$orderby": "start/dateTime",
                "$top": GRAPH_PAGE_SIZE,
            },
            extra_headers=self._prefer_headers(time_zone),
        )
        events = [parse_graph_event(item, calendar=calendar) for item in items]
        master_ids = {event.recurring_event_id for event in events if event.recurring_event_id}
        masters = await self._fetch_masters(calendar, master_ids)
        return EventsPage(events=events, recurring_master_events=masters)

    async def _collect_delta(self, options: SyncOptions, delta_link: str | None) -> SyncResult:
        calendar = options.calendar
        headers = self._prefer_headers(options.time_zone)
        next_path: str
        params: dict[str, Any] | None = None
        if delta_link is not None:
            next_path = delta_link
        else:
            now = datetime.now(UTC)
            time_min = options.time_min or Instant(value=now - DEFAULT_DELTA_WINDOW_PAST)
            time_max = options.time_max or Instant(value=now + DEFAULT_DELTA_WINDOW_FUTURE)
            next_path = f"{self._calendar_path(calendar.id)}/calendarView/delta"
            params = {
                "startDateTime": rfc3339(time_min, options.time_zone),
                "endDateTime": rfc3339(time_max, options.time_zone),
            }

        changes: list[SyncItem] = []
        new_delta_link: str | None = None
        while True:
            payload = await self._request_json(
                "GET",
                next_path,
                operation="sync",
                params=params,
                extra_headers=headers,
                sync_cursor=delta_link is not None,
            )
            params = None
            for item in payload.get("value") or []:
                if not isinstance(item, dict):
                    continue
                item_id = _optional_text(item.get("id"))
                if item_id is None:
                    continue
                if "@removed" in item:
                    changes.append(
                        SyncDeleted(
                            event=EventRef(
                                id=item_id,
                                calendar_id=calendar.id,
                                account_id=calendar.account_id,
                                provider_id="microsoft",
                            )
                        )
                    )
                    continue
                changes.append(SyncUpdated(event=parse_graph_event(item, calendar=calendar)))

            next_link = payload.get("@odata.nextLink")
            if next_link:
                next_path = next_link
                continue
            new_delta_link = payload.get("@odata.deltaLink")
            break

        if not new_delta_link:
            raise ProviderError(
                f"calendarView delta for '{calendar.id}' did not return a deltaLink",
                provider=self.provider_id,
                operation="sync",
            )
        return SyncResult(
            changes=changes,
            sync_token=new_delta_link,
            status="incremental" if delta_link is not None else "full",
        )

    async def sync(self, options: SyncOptions) -> SyncResult:
        if options.initial_sync_token is not None:
            try:
                return await self._collect_delta(options, options.initial_sync_token)
            except SyncTokenExpiredError:
                logger.warning(
                    "Graph delta link expired for account=%s calendar=%s; running full sync",
                    self.account_id,
                    options.calendar.id,
                )
        return await self._collect_delta(options, None)

    async def event(
        self,
        calendar: Calendar,
        event_id: str,
        *,
        time_zone: str = "UTC",
    ) -> CalendarEvent:
        payload = await self._request_json(
            "GET",
            self._event_path(calendar.id, event_id),
            operation="event",
            extra_headers=self._prefer_headers(time_zone),
        )
        return parse_graph_event(payload, calendar=calendar)

    async def create_event(self, calendar: Calendar, event: CalendarEvent) -> CalendarEvent:
        payload = await self._request_json(
            "POST",
            f"{self._calendar_path(calendar.id)}/events",
            operation="create_event",
            json_body=build_graph_event_body(event, default_time_zone=self._default_time_zone),
        )
        return parse_graph_event(payload, calendar=calendar)

    async def update_event(
        self,
        calendar: Calendar,
        event_id: str,
        event: CalendarEvent,
    ) -> CalendarEvent:
        payload = await self._request_json(
            "PATCH",
            self._event_path(calendar.id, event_id),
            operation="update_event",
            json_body=build_graph_event_body(event, default_time_zone=self._default_time_zone),
        )
        response = event.response
        if response is not None and response.status != AttendeeStatus.unknown:
            await self._post_response(
                event_id,
                ResponseToEventInput(
                    status=response.status,
                    comment=response.comment,
                    send_update=bool(response.send_update),
                ),
            )
        return parse_graph_event(payload, calendar=calendar)

    async def delete_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        send_update: bool = True,
    ) -> None:
        # Graph notifies attendees of organizer deletions itself; there is no opt-out flag.
        try:
            await self._request_json(
                "DELETE", self._event_path(calendar_id, event_id), operation="delete_event"
            )
        except NotFoundError:
            logger.info("Event %s in calendar=%s was already deleted", event_id, calendar_id)

    async def _post_response(self, event_id: str, response: ResponseToEventInput) -> None:
        action = _RESPONSE_ACTIONS[response.status]
        body: dict[str, Any] = {"sendResponse": response.send_update}
        if response.comment is not None:
            body["comment"] = response.comment
        await self._request_json(
            "POST",
            f"/me/events/{quote(event_id, safe='')}/{action}",
            operation="response_to_event",
            json_body=body,
        )

    async def response_to_event(
        self,
        calendar_id: str,
        event_id: str,
        response: ResponseToEventInput,
    ) -> None:
        if response.status == AttendeeStatus.unknown:
            return
        await self._post_response(event_id, response)

    async def move_event(
        self,
        source_calendar: Calendar,
        destination_calendar: Calendar,
        event_id: str,
        *,
        send_update: bool = True,
    ) -> CalendarEvent:
        """Graph has no move: copy into the destination, then delete the source."""
        source_event = await self.event(source_calendar, event_id)
        if source_event.recurrence is not None or source_event.recurring_event_id is not None:
            raise ProviderError(
                "recurring events cannot be moved between calendars",
                provider=self.provider_id,
                operation="move_event",
            )

        moved = await self.create_event(destination_calendar, source_event)
        await self.delete_event(source_calendar.id, event_id, send_update=send_update)
        logger.info(
            "Moved event %s from calendar=%s to calendar=%s as %s",
            event_id,
            source_calendar.id,
            destination_calendar.id,
            moved.id,
        )
        return moved

    async def free_busy(
        self,
        schedule_ids: list[str],
        *,
        time_min: TemporalValue,
        time_max: TemporalValue,
    ) -> list[CalendarFreeBusy]:
        if compare(time_min, time_max, "UTC") >= 0:
            raise RangeError("free/busy time_min must be before time_max")

        payload = await self._request_json(
            "POST",
            "/me/calendar/getSchedule",
            operation="free_busy",
            json_body={
                "schedules": schedule_ids,
                "startTime": format_graph_date_time(to_zoned(time_min, "UTC")),
                "endTime": format_graph_date_time(to_zoned(time_max, "UTC")),
            },
        )

        results: list[CalendarFreeBusy] = []
        for info in payload.get("value") or []:
            if not isinstance(info, dict) or not info.get("scheduleId"):
                continue
            if info.get("error"):
                logger.warning(
                    "Graph getSchedule returned an error for schedule=%s: %s",
                    info["scheduleId"],
                    info["error"],
                )
            slots: list[FreeBusySlot] = []
            for item in info.get("scheduleItems") or []:
                if not isinstance(item, dict):
                    continue
                start, end = item.get("start"), item.get("end")
                if not isinstance(start, dict) or not isinstance(end, dict):
                    continue
                slots.append(
                    FreeBusySlot(
                        start=parse_graph_date_time(start["dateTime"], start.get("timeZone")),
                        end=parse_graph_date_time(end["dateTime"], end.get("timeZone")),
                        status=_FREE_BUSY_STATUS.get(item.get("status"), "busy"),
                    )
                )
            results.append(CalendarFreeBusy(schedule_id=info["scheduleId"], busy=slots))
        return results
