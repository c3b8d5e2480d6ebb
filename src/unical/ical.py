"""iCalendar (``.ics``) import and export of canonical events.

Export writes one ``VEVENT`` per :class:`~unical.models.CalendarEvent` inside a
``VCALENDAR``; recurrence lines come from the RRULE codec so an exported series
carries exactly the RRULE/RDATE/EXDATE text a provider would receive. Import
reads ``VEVENT`` components back into events owned by a given calendar, again
routing the recurrence properties through the codec.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, date, datetime, timedelta
from typing import Any, assert_never

from icalendar import Calendar as ICalendar
from icalendar import Component, vCalAddress, vText
from icalendar import Event as ICalEvent

from unical.errors import CalendarError, ParseError
from unical.models import (
    Attendee,
    AttendeeStatus,
    AttendeeType,
    Calendar,
    CalendarEvent,
    EventVisibility,
    Recurrence,
)
from unical.providers.microsoft import windows_to_iana
from unical.recurrence import parse_recurrence_properties, to_recurrence_properties
from unical.temporal import (
    Instant,
    PlainDate,
    TemporalValue,
    ZonedDateTime,
    to_instant,
    to_plain_date,
    to_zoned,
)

logger = logging.getLogger(__name__)

DEFAULT_PRODID = "-//unical//unical 0.1//EN"

_RECURRENCE_PROPERTIES = ("RRULE", "RDATE", "EXDATE")

_PARTSTAT_BY_STATUS = {
    AttendeeStatus.accepted: "ACCEPTED",
    AttendeeStatus.declined: "DECLINED",
    AttendeeStatus.tentative: "TENTATIVE",
}
_STATUS_BY_PARTSTAT = {value: key for key, value in _PARTSTAT_BY_STATUS.items()}

_ROLE_BY_TYPE = {
    AttendeeType.required: "REQ-PARTICIPANT",
    AttendeeType.optional: "OPT-PARTICIPANT",
    AttendeeType.resource: "NON-PARTICIPANT",
}
_TYPE_BY_ROLE = {value: key for key, value in _ROLE_BY_TYPE.items()}


def is_icalendar(text: str) -> bool:
    """True when *text* looks like iCalendar data (a VCALENDAR or a bare VEVENT)."""
    upper = text.upper()
    return "BEGIN:VCALENDAR" in upper or "BEGIN:VEVENT" in upper


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def _ical_value(value: TemporalValue) -> date | datetime:
    if isinstance(value, PlainDate):
        return value.value
    if isinstance(value, Instant):
        return value.value
    if isinstance(value, ZonedDateTime):
        return value.aware()
    assert_never(value)


def _calendar_address(attendee: Attendee) -> vCalAddress:
    address = vCalAddress(f"mailto:{attendee.email}")
    if attendee.name:
        address.params["CN"] = vText(attendee.name)
    address.params["PARTSTAT"] = _PARTSTAT_BY_STATUS.get(attendee.status, "NEEDS-ACTION")
    address.params["ROLE"] = _ROLE_BY_TYPE[attendee.type]
    return address


def _recurrence_component(recurrence: Recurrence) -> Component:
    # DTSTART belongs to the event itself, not to the rule lines.
    lines = to_recurrence_properties(recurrence.model_copy(update={"dtstart": None}))
    return ICalEvent.from_ical("BEGIN:VEVENT\r\n" + "\r\n".join(lines) + "\r\nEND:VEVENT\r\n")


def _to_vevent(event: CalendarEvent, stamp: datetime) -> ICalEvent:
    vevent = ICalEvent()
    vevent.add("uid", event.id)
    vevent.add("dtstamp", stamp)
    vevent.add("dtstart", _ical_value(event.start))
    vevent.add("dtend", _ical_value(event.end))
    if event.title:
        vevent.add("summary", event.title)
    if event.description:
        vevent.add("description", event.description)
    if event.location:
        vevent.add("location", event.location)
    if event.url:
        vevent.add("url", event.url)
    if event.status:
        vevent.add("status", event.status.upper())
    if event.availability:
        vevent.add("transp", "TRANSPARENT" if event.availability == "free" else "OPAQUE")
    if event.visibility and event.visibility is not EventVisibility.default:
        vevent.add("class", event.visibility.value.upper())
    if event.created_at is not None:
        vevent.add("created", event.created_at.value)
    if event.updated_at is not None:
        vevent.add("last-modified", event.updated_at.value)

    for attendee in event.attendees:
        if attendee.organizer:
            organizer = vCalAddress(f"mailto:{attendee.email}")
            if attendee.name:
                organizer.params["CN"] = vText(attendee.name)
            vevent.add("organizer", organizer)
        vevent.add("attendee", _calendar_address(attendee))

    if event.recurrence is not None:
        rules = _recurrence_component(event.recurrence)
        for name in _RECURRENCE_PROPERTIES:
            prop = rules.get(name)
            if prop is None:
                continue
            for value in prop if isinstance(prop, list) else [prop]:
                vevent.add(name, value)
    return vevent


def export_events(events: Iterable[CalendarEvent], *, prodid: str = DEFAULT_PRODID) -> str:
    """Render *events* as one ``VCALENDAR`` document.

    Raises:
        InvalidRecurrenceError: when an event's recurrence carries COUNT and UNTIL.
    """
    calendar = ICalendar()
    calendar.add("prodid", prodid)
    calendar.add("version", "2.0")
    stamp = datetime.now(UTC).replace(microsecond=0)
    count = 0
    for event in events:
        calendar.add_component(_to_vevent(event, stamp))
        count += 1
    logger.debug("Exported %d event(s) to iCalendar", count)
    return calendar.to_ical().decode("utf-8")


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


def _zone_name(name: Any) -> str | None:
    if name is None:
        return None
    return windows_to_iana(str(name))


def _temporal(prop: Any, fallback_zone: str) -> TemporalValue:
    value = prop.dt
    if not isinstance(value, datetime):
        return PlainDate(value=value)
    declared = _zone_name(prop.params.get("TZID"))
    if value.tzinfo is None:
        return ZonedDateTime(value=value, time_zone=declared or fallback_zone)
    tzinfo = value.tzinfo
    zone = declared or _zone_name(getattr(tzinfo, "key", None) or getattr(tzinfo, "zone", None))
    if zone is None or zone == "UTC":
        return Instant(value=value)
    return ZonedDateTime(value=value, time_zone=zone)


def _same_kind(value: TemporalValue, like: TemporalValue, time_zone: str) -> TemporalValue:
    if value.kind == like.kind:
        return value
    if isinstance(like, PlainDate):
        return to_plain_date(value, time_zone)
    if isinstance(like, ZonedDateTime):
        return to_zoned(value, like.time_zone)
    return to_instant(value, time_zone)


def _shift(value: TemporalValue, delta: timedelta) -> TemporalValue:
    if isinstance(value, PlainDate):
        return PlainDate(value=value.value + timedelta(days=delta.days))
    if isinstance(value, Instant):
        return Instant(value=value.value + delta)
    if isinstance(value, ZonedDateTime):
        return ZonedDateTime(value=value.value + delta, time_zone=value.time_zone)
    assert_never(value)


def _as_list(prop: Any) -> list[Any]:
    if prop is None:
        return []
    return list(prop) if isinstance(prop, list) else [prop]


def _email(address: Any) -> str:
    text = str(address).strip()
    if text.lower().startswith("mailto:"):
        text = text[len("mailto:") :]
    return text


def _text(vevent: Component, name: str) -> str | None:
    value = vevent.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _attendees(vevent: Component) -> list[Attendee]:
    attendees: list[Attendee] = []
    for address in _as_list(vevent.get("ATTENDEE")):
        email = _email(address)
        if not email:
            continue
        params = getattr(address, "params", {})
        attendees.append(
            Attendee(
                email=email,
                name=str(params["CN"]) if params.get("CN") else None,
                status=_STATUS_BY_PARTSTAT.get(
                    str(params.get("PARTSTAT", "")).upper(), AttendeeStatus.unknown
                ),
                type=_TYPE_BY_ROLE.get(str(params.get("ROLE", "")).upper(), AttendeeType.required),
            )
        )

    organizer = vevent.get("ORGANIZER")
    if organizer is not None and _email(organizer):
        email = _email(organizer)
        for index, attendee in enumerate(attendees):
            if attendee.email.lower() == email.lower():
                attendees[index] = attendee.model_copy(update={"organizer": True})
                break
        else:
            params = getattr(organizer, "params", {})
            name = str(params["CN"]) if params.get("CN") else None
            attendees.insert(0, Attendee(email=email, name=name, organizer=True))
    return attendees


def _recurrence(vevent: Component, time_zone: str) -> Recurrence | None:
    if vevent.get("RRULE") is None:
        return None
    lines = [
        str(vevent.content_line(name, value))
        for name in _RECURRENCE_PROPERTIES
        for value in _as_list(vevent.get(name))
    ]
    return parse_recurrence_properties(lines, time_zone)


def _instance_suffix(value: TemporalValue, time_zone: str) -> str:
    if isinstance(value, PlainDate):
        return value.value.strftime("%Y%m%d")
    return to_instant(value, time_zone).value.strftime("%Y%m%dT%H%M%SZ")


def _to_event(vevent: Component, calendar: Calendar, time_zone: str) -> CalendarEvent | None:
    uid = _text(vevent, "UID")
    dtstart = vevent.get("DTSTART")
    if uid is None or dtstart is None:
        logger.warning("Skipping VEVENT without UID or DTSTART (uid=%s)", uid)
        return None

    start = _temporal(dtstart, time_zone)
    if vevent.get("DTEND") is not None:
        end = _same_kind(_temporal(vevent.get("DTEND"), time_zone), start, time_zone)
    elif vevent.get("DURATION") is not None:
        end = _shift(start, vevent.get("DURATION").dt)
    else:
        end = start

    event_id = uid
    recurring_event_id = None
    recurrence_id = vevent.get("RECURRENCE-ID")
    if recurrence_id is not None:
        original = _temporal(recurrence_id, time_zone)
        event_id = f"{uid}_{_instance_suffix(original, time_zone)}"
        recurring_event_id = uid

    transp = (_text(vevent, "TRANSP") or "").upper()
    visibility = (_text(vevent, "CLASS") or "").lower()
    created = vevent.get("CREATED")
    modified = vevent.get("LAST-MODIFIED")

    return CalendarEvent(
        id=event_id,
        title=_text(vevent, "SUMMARY"),
        description=_text(vevent, "DESCRIPTION"),
        start=start,
        end=end,
        all_day=isinstance(start, PlainDate),
        location=_text(vevent, "LOCATION"),
        status=(_text(vevent, "STATUS") or "").lower() or None,
        availability={"TRANSPARENT": "free", "OPAQUE": "busy"}.get(transp),
        attendees=_attendees(vevent),
        visibility=EventVisibility(visibility) if visibility in EventVisibility else None,
        read_only=calendar.read_only,
        provider_id=calendar.provider_id,
        account_id=calendar.account_id,
        calendar_id=calendar.id,
        recurrence=_recurrence(vevent, time_zone) if recurrence_id is None else None,
        recurring_event_id=recurring_event_id,
        url=_text(vevent, "URL"),
        created_at=Instant(value=created.dt) if created is not None else None,
        updated_at=Instant(value=modified.dt) if modified is not None else None,
    )


def import_events(
    text: str,
    calendar: Calendar,
    *,
    time_zone: str | None = None,
) -> list[CalendarEvent]:
    """Parse every ``VEVENT`` in *text* into events owned by *calendar*.

    Floating date-times are read in *time_zone*, else the document's
    ``X-WR-TIMEZONE``, else the calendar's zone, else UTC.

    Raises:
        ParseError: when *text* is empty, is not iCalendar data or is malformed.
    """
    if not text or not text.strip():
        raise ParseError("iCalendar document is empty")
    if not is_icalendar(text):
        raise ParseError("Not an iCalendar document: expected BEGIN:VCALENDAR or BEGIN:VEVENT")
    try:
        document = ICalendar.from_ical(text)
    except ValueError as exc:
        raise ParseError(f"Malformed iCalendar document: {exc}") from exc

    zone = (
        time_zone
        or _zone_name(document.get("X-WR-TIMEZONE"))
        or calendar.time_zone
        or "UTC"
    )
    events: list[CalendarEvent] = []
    for vevent in document.walk("VEVENT"):
        try:
            event = _to_event(vevent, calendar, zone)
        except CalendarError:
            raise
        except ValueError as exc:
            raise ParseError(f"Invalid VEVENT {vevent.get('UID')!s}: {exc}") from exc
        if event is not None:
            events.append(event)
    logger.debug("Imported %d event(s) from iCalendar", len(events))
    return events
