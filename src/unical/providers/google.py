"""Google Calendar API v3 adapter."""

from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import quote

import httpx

from unical.errors import (
    NotFoundError,
    ParseError,
    ProviderError,
    RangeError,
    SyncTokenExpiredError,
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
    JoinUrl,
    ProviderId,
    ResponseToEventInput,
    SyncDeleted,
    SyncItem,
    SyncResult,
    SyncUpdated,
    UpdateCalendarInput,
)
from unical.providers.base import HttpCalendarProvider, SyncOptions, rfc3339
from unical.recurrence import parse_recurrence_properties, to_recurrence_properties
from unical.temporal import (
    Instant,
    PlainDate,
    TemporalValue,
    ZonedDateTime,
    compare,
    parse_instant,
    parse_plain_date,
    zone_info,
)

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_EVENTS_PAGE_SIZE = 250

_READ_ONLY_EVENT_TYPES = frozenset({"birthday", "focusTime", "outOfOffice", "workingLocation"})
_READ_ONLY_ACCESS_ROLES = frozenset({"reader", "freeBusyReader"})
_GMT_ZONE_PATTERN = re.compile(r"^GMT([+-])(\d{1,2})(?::?([0-5]\d))?$")

_GOOGLE_RESPONSE_STATUS = {
    "accepted": AttendeeStatus.accepted,
    "tentative": AttendeeStatus.tentative,
    "declined": AttendeeStatus.declined,
    "needsAction": AttendeeStatus.unknown,
}
_RESPONSE_STATUS_TO_GOOGLE = {
    AttendeeStatus.accepted: "accepted",
    AttendeeStatus.tentative: "tentative",
    AttendeeStatus.declined: "declined",
    AttendeeStatus.unknown: "needsAction",
}


# ---------------------------------------------------------------------------
# Payload -> canonical model
# ---------------------------------------------------------------------------


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def normalize_google_time_zone(time_zone: Any) -> str | None:
    """Map a Google zone name to an IANA id, or ``None`` when no zone applies.

    Google reports some calendars as ``GMT+05`` style names. Whole-hour offsets
    become ``Etc/GMT-5`` (POSIX sign inversion); anything that cannot be
    expressed as a zone id returns ``None`` so the caller keeps an Instant.
    """
    name = _optional_text(time_zone)
    if name is None:
        return None
    if name in ("GMT", "UTC"):
        return "UTC"

    match = _GMT_ZONE_PATTERN.match(name)
    if match is not None:
        sign, hours_text, minutes_text = match.groups()
        hours = int(hours_text)
        if minutes_text and int(minutes_text) != 0:
            return None
        if hours == 0:
            return "UTC"
        name = f"Etc/GMT{'-' if sign == '+' else '+'}{hours}"

    try:
        zone_info(name)
    except RangeError:
        logger.debug("Unknown Google time zone %r; keeping the instant", name)
        return None
    return name


def _parse_google_boundary(payload: Any, *, event_id: str) -> TemporalValue:
    if not isinstance(payload, dict):
        raise ParseError(f"Google Calendar event '{event_id}' is missing start/end payloads")

    date_time = _optional_text(payload.get("dateTime"))
    if date_time is not None:
        instant = parse_instant(date_time)
        time_zone = normalize_google_time_zone(payload.get("timeZone"))
        if time_zone is None:
            return instant
        return ZonedDateTime.from_aware(instant.value, time_zone)

    date_value = _optional_text(payload.get("date"))
    if date_value is not None:
        return parse_plain_date(date_value)

    raise ParseError(f"Google Calendar event '{event_id}' has neither dateTime nor date")


def _parse_google_attendee(entry: dict[str, Any]) -> Attendee | None:
    email = _optional_text(entry.get("email"))
    if email is None:
        return None

    if entry.get("resource") is True:
        attendee_type = AttendeeType.resource
    elif entry.get("optional") is True:
        attendee_type = AttendeeType.optional
    else:
        attendee_type = AttendeeType.required

    additional_guests = entry.get("additionalGuests")
    return Attendee(
        email=email,
        name=_optional_text(entry.get("displayName")),
        status=_GOOGLE_RESPONSE_STATUS.get(entry.get("responseStatus"), AttendeeStatus.unknown),
        type=attendee_type,
        organizer=True if entry.get("organizer") is True else None,
        comment=_optional_text(entry.get("comment")),
        additional_guests=additional_guests if isinstance(additional_guests, int) else None,
    )


def parse_google_attendees(payload: Any) -> list[Attendee]:
    """Parse an attendees array, placing the organizer first."""
    if not isinstance(payload, list):
        return []

    attendees: list[Attendee] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        attendee = _parse_google_attendee(entry)
        if attendee is None:
            continue
        if attendee.organizer:
            attendees.insert(0, attendee)
        else:
            attendees.append(attendee)
    return attendees


def _parse_google_response(payload: Any) -> EventResponse | None:
    if not isinstance(payload, list):
        return None
    for entry in payload:
        if isinstance(entry, dict) and entry.get("self") is True:
            return EventResponse(
                status=_GOOGLE_RESPONSE_STATUS.get(
                    entry.get("responseStatus"), AttendeeStatus.unknown
                ),
                comment=_optional_text(entry.get("comment")),
            )
    return None


def _parse_entry_point(entry: dict[str, Any]) -> ConferenceEntryPoint | None:
    uri = _optional_text(entry.get("uri"))
    if uri is None:
        return None
    return ConferenceEntryPoint(
        join_url=JoinUrl(value=uri, label=_optional_text(entry.get("label"))),
        meeting_code=_optional_text(entry.get("meetingCode")),
        access_code=_optional_text(entry.get("accessCode")),
        password=_optional_text(entry.get("password")),
        pin=_optional_text(entry.get("pin")),
    )


def parse_google_conference(payload: dict[str, Any]) -> ConferenceData | None:
    """Read ``conferenceData`` entry points, falling back to the legacy ``hangoutLink``."""
    conference_data = payload.get("conferenceData")
    entry_points = conference_data.get("entryPoints") if isinstance(conference_data, dict) else None

    if isinstance(entry_points, list) and entry_points:
        video: ConferenceEntryPoint | None = None
        sip: ConferenceEntryPoint | None = None
        phone: list[ConferenceEntryPoint] = []
        for entry in entry_points:
            if not isinstance(entry, dict):
                continue
            parsed = _parse_entry_point(entry)
            if parsed is None:
                continue
            entry_type = entry.get("entryPointType")
            if entry_type == "video" and video is None:
                video = parsed
            elif entry_type == "sip" and sip is None:
                sip = parsed
            elif entry_type == "phone":
                phone.append(parsed)

        solution = conference_data.get("conferenceSolution")
        conference_id = _optional_text(conference_data.get("conferenceId"))
        if video is not None and video.meeting_code is None and conference_id is not None:
            video = video.model_copy(update={"meeting_code": conference_id})
        return ConferenceData(
            provider_id="google",
            conference_id=conference_id,
            name=_optional_text(solution.get("name")) if isinstance(solution, dict) else None,
            video=video,
            sip=sip,
            phone=phone,
            notes=_optional_text(conference_data.get("notes")),
        )

    hangout_link = _optional_text(payload.get("hangoutLink"))
    if hangout_link is not None:
        return ConferenceData(
            provider_id="google",
            name="Google Meet",
            video=ConferenceEntryPoint(join_url=JoinUrl(value=hangout_link)),
        )
    return None


def _parse_optional_instant(value: Any) -> Instant | None:
    text = _optional_text(value)
    if text is None:
        return None
    try:
        return parse_instant(text)
    except (ParseError, RangeError):
        return None


def parse_google_calendar(payload: dict[str, Any], *, account_id: str) -> Calendar:
    """Map a ``calendarList`` entry (or a bare ``calendars`` resource)."""
    calendar_id = _optional_text(payload.get("id"))
    if calendar_id is None:
        raise ParseError("Google calendar payload is missing a non-empty id")
    return Calendar(
        id=calendar_id,
        provider_id="google",
        account_id=account_id,
        name=_optional_text(payload.get("summaryOverride"))
        or _optional_text(payload.get("summary"))
        or calendar_id,
        description=_optional_text(payload.get("description")),
        time_zone=_optional_text(payload.get("timeZone")),
        primary=payload.get("primary") is True,
        color=_optional_text(payload.get("backgroundColor")),
        read_only=payload.get("accessRole") in _READ_ONLY_ACCESS_ROLES,
    )


def parse_google_event(
    payload: dict[str, Any],
    *,
    calendar: Calendar,
    default_time_zone: str = "UTC",
) -> CalendarEvent:
    """Map a Google event resource onto :class:`CalendarEvent`."""
    event_id = _optional_text(payload.get("id"))
    if event_id is None:
        raise ParseError("Google Calendar event payload is missing a non-empty id")

    start_payload = payload.get("start")
    start = _parse_google_boundary(start_payload, event_id=event_id)
    end = _parse_google_boundary(payload.get("end"), event_id=event_id)

    metadata: dict[str, Any] = {}
    recurrence = None
    recurrence_lines = payload.get("recurrence")
    if isinstance(recurrence_lines, list) and recurrence_lines:
        metadata["original_recurrence"] = list(recurrence_lines)
        rule_zone = (
            normalize_google_time_zone(start_payload.get("timeZone"))
            or calendar.time_zone
            or default_time_zone
        )
        try:
            recurrence = parse_recurrence_properties(recurrence_lines, rule_zone)
        except (ParseError, RangeError) as exc:
            logger.warning(
                "Google event %s has an unreadable recurrence %r: %s",
                event_id,
                recurrence_lines,
                exc,
            )

    recurring_event_id = _optional_text(payload.get("recurringEventId"))
    if recurring_event_id is not None:
        metadata["recurring_event_id"] = recurring_event_id
    event_type = _optional_text(payload.get("eventType"))
    if event_type is not None:
        metadata["event_type"] = event_type

    visibility_raw = payload.get("visibility")
    visibility = (
        EventVisibility(visibility_raw) if visibility_raw in EventVisibility.__members__ else None
    )

    return CalendarEvent(
        id=event_id,
        title=_optional_text(payload.get("summary")),
        description=_optional_text(payload.get("description")),
        start=start,
        end=end,
        all_day=isinstance(start, PlainDate),
        location=_optional_text(payload.get("location")),
        status=_optional_text(payload.get("status")),
        availability="free" if payload.get("transparency") == "transparent" else "busy",
        attendees=parse_google_attendees(payload.get("attendees")),
        visibility=visibility,
        read_only=calendar.read_only or event_type in _READ_ONLY_EVENT_TYPES,
        provider_id="google",
        account_id=calendar.account_id,
        calendar_id=calendar.id,
        response=_parse_google_response(payload.get("attendees")),
        conference=parse_google_conference(payload),
        recurrence=recurrence,
        recurring_event_id=recurring_event_id,
        url=_optional_text(payload.get("htmlLink")),
        etag=_optional_text(payload.get("etag")),
        color=_optional_text(payload.get("colorId")),
        created_at=_parse_optional_instant(payload.get("created")),
        updated_at=_parse_optional_instant(payload.get("updated")),
        metadata=metadata,
    )


# ---------------------------------------------------------------------------
# Canonical model -> payload
# ---------------------------------------------------------------------------


def format_google_boundary(value: TemporalValue) -> dict[str, str]:
    if isinstance(value, PlainDate):
        return {"date": value.value.isoformat()}
    if isinstance(value, ZonedDateTime):
        return {"dateTime": value.aware().isoformat(), "timeZone": value.time_zone}
    return {"dateTime": rfc3339(value)}


def _attendee_to_google(attendee: Attendee) -> dict[str, Any]:
    body: dict[str, Any] = {
        "email": attendee.email,
        "responseStatus": _RESPONSE_STATUS_TO_GOOGLE[attendee.status],
    }
    if attendee.name:
        body["displayName"] = attendee.name
    if attendee.type == AttendeeType.optional:
        body["optional"] = True
    if attendee.type == AttendeeType.resource:
        body["resource"] = True
    if attendee.comment:
        body["comment"] = attendee.comment
    if attendee.additional_guests:
        body["additionalGuests"] = attendee.additional_guests
    return body


def _conference_to_google(conference: ConferenceData | CreateConferenceRequest) -> dict[str, Any]:
    if isinstance(conference, CreateConferenceRequest):
        return {
            "createRequest": {
                "requestId": conference.request_id,
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        }

    entry_points: list[dict[str, Any]] = []
    typed_points = [("video", conference.video), ("sip", conference.sip)]
    typed_points.extend(("phone", point) for point in conference.phone)
    for entry_type, point in typed_points:
        if point is None:
            continue
        entry: dict[str, Any] = {"entryPointType": entry_type, "uri": point.join_url.value}
        for key, value in (
            ("label", point.join_url.label),
            ("meetingCode", point.meeting_code),
            ("accessCode", point.access_code),
            ("password", point.password),
            ("pin", point.pin),
        ):
            if value:
                entry[key] = value
        entry_points.append(entry)

    body: dict[str, Any] = {"entryPoints": entry_points}
    if conference.conference_id:
        body["conferenceId"] = conference.conference_id
    if conference.notes:
        body["notes"] = conference.notes
    return body


def build_google_event_body(event: CalendarEvent, *, include_id: bool = False) -> dict[str, Any]:
    """Render the writable fields of *event* as a Google event resource."""
    body: dict[str, Any] = {
        "start": format_google_boundary(event.start),
        "end": format_google_boundary(event.end),
        "transparency": "transparent" if event.availability == "free" else "opaque",
    }
    if include_id:
        body["id"] = event.id
    if event.title is not None:
        body["summary"] = event.title
    if event.description is not None:
        body["description"] = event.description
    if event.location is not None:
        body["location"] = event.location
    if event.visibility is not None:
        body["visibility"] = event.visibility.value
    if event.color is not None:
        body["colorId"] = event.color
    if event.attendees:
        body["attendees"] = [_attendee_to_google(attendee) for attendee in event.attendees]
    if event.recurrence is not None:
        # Google takes the series start from start/end and rejects DTSTART lines.
        body["recurrence"] = [
            line
            for line in to_recurrence_properties(event.recurrence)
            if not line.startswith("DTSTART")
        ]
    if event.recurring_event_id is not None:
        body["recurringEventId"] = event.recurring_event_id
    if event.conference is not None:
        body["conferenceData"] = _conference_to_google(event.conference)
    return body


def _send_updates(send_update: bool | None) -> str:
    return "all" if send_update else "none"


def _apply_self_response(
    attendees: list[dict[str, Any]],
    *,
    self_email: str,
    status: AttendeeStatus,
    comment: str | None,
) -> list[dict[str, Any]]:
    updated: list[dict[str, Any]] = []
    found = False
    for entry in attendees:
        email = entry.get("email") if isinstance(entry, dict) else None
        if isinstance(email, str) and email.strip().lower() == self_email.lower():
            entry = {**entry, "responseStatus": _RESPONSE_STATUS_TO_GOOGLE[status]}
            if comment is not None:
                entry["comment"] = comment
            found = True
        updated.append(entry)
    if not found:
        raise ProviderError(
            f"current user {self_email} is not an attendee",
            provider="google",
            operation="response_to_event",
        )
    return updated


def _self_email(payload: dict[str, Any]) -> str | None:
    attendees = payload.get("attendees")
    if not isinstance(attendees, list):
        return None
    for entry in attendees:
        if isinstance(entry, dict) and entry.get("self") is True:
            return _optional_text(entry.get("email"))
    return None


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class GoogleCalendarProvider(HttpCalendarProvider):
    """Google Calendar backend for one connected account."""

    base_url = GOOGLE_CALENDAR_API_BASE_URL

    def __init__(self, *, default_time_zone: str = "UTC", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._default_time_zone = default_time_zone

    @property
    def provider_id(self) -> ProviderId:
        return "google"

    def _is_sync_token_invalid(self, response: httpx.Response) -> bool:
        if response.status_code == 410:
            return True
        try:
            payload = response.json()
        except ValueError:
            return False
        error = payload.get("error") if isinstance(payload, dict) else None
        details = error.get("errors") if isinstance(error, dict) else None
        if not isinstance(details, list):
            return False
        return any(
            isinstance(detail, dict) and detail.get("reason") == "fullSyncRequired"
            for detail in details
        )

    @staticmethod
    def _events_path(calendar_id: str) -> str:
        return f"/calendars/{quote(calendar_id, safe='')}/events"

    def _event_path(self, calendar_id: str, event_id: str) -> str:
        return f"{self._events_path(calendar_id)}/{quote(event_id, safe='')}"

    def _parse_event(
        self, payload: dict[str, Any], calendar: Calendar, time_zone: str | None = None
    ) -> CalendarEvent:
        return parse_google_event(
            payload,
            calendar=calendar,
            default_time_zone=time_zone or self._default_time_zone,
        )

    # -- calendars ------------------------------------------------------------

    async def calendars(self) -> list[Calendar]:
        calendars: list[Calendar] = []
        params: dict[str, Any] = {}
        while True:
            payload = await self._request_json(
                "GET", "/users/me/calendarList", operation="calendars", params=params
            )
            for item in payload.get("items") or []:
                if isinstance(item, dict):
                    calendars.append(parse_google_calendar(item, account_id=self.account_id))
            page_token = payload.get("nextPageToken")
            if not page_token:
                return calendars
            params["pageToken"] = page_token

    async def calendar(self, calendar_id: str) -> Calendar:
        payload = await self._request_json(
            "GET",
            f"/users/me/calendarList/{quote(calendar_id, safe='')}",
            operation="calendar",
        )
        return parse_google_calendar(payload, account_id=self.account_id)

    async def create_calendar(self, calendar: CreateCalendarInput) -> Calendar:
        body: dict[str, Any] = {"summary": calendar.name}
        if calendar.description is not None:
            body["description"] = calendar.description
        if calendar.time_zone is not None:
            body["timeZone"] = calendar.time_zone
        payload = await self._request_json(
            "POST", "/calendars", operation="create_calendar", json_body=body
        )
        return parse_google_calendar(payload, account_id=self.account_id)

    async def update_calendar(self, calendar_id: str, calendar: UpdateCalendarInput) -> Calendar:
        encoded_id = quote(calendar_id, safe="")
        body: dict[str, Any] = {}
        if calendar.name is not None:
            body["summary"] = calendar.name
        if calendar.description is not None:
            body["description"] = calendar.description
        if body:
            await self._request_json(
                "PATCH", f"/calendars/{encoded_id}", operation="update_calendar", json_body=body
            )
        if calendar.color is not None:
            await self._request_json(
                "PATCH",
                f"/users/me/calendarList/{encoded_id}",
                operation="update_calendar",
                params={"colorRgbFormat": True},
                json_body={"backgroundColor": calendar.color},
            )
        return await self.calendar(calendar_id)

    async def delete_calendar(self, calendar_id: str) -> None:
        await self._request_json(
            "DELETE", f"/calendars/{quote(calendar_id, safe='')}", operation="delete_calendar"
        )

    # -- events ---------------------------------------------------------------

    async def _fetch_masters(
        self,
        calendar: Calendar,
        master_ids: set[str],
        time_zone: str | None,
    ) -> list[CalendarEvent]:
        masters: list[CalendarEvent] = []
        for master_id in sorted(master_ids):
            try:
                payload = await self._request_json(
                    "GET",
                    self._event_path(calendar.id, master_id),
                    operation="recurring_master",
                )
            except NotFoundError:
                logger.info(
                    "Series master %s in calendar=%s no longer exists; skipping",
                    master_id,
                    calendar.id,
                )
                continue
            masters.append(self._parse_event(payload, calendar, time_zone))
        return masters

    async def events(
        self,
        calendar: Calendar,
        *,
        time_min: TemporalValue,
        time_max: TemporalValue,
        time_zone: str = "UTC",
    ) -> EventsPage:
        params: dict[str, Any] = {
            "singleEvents": True,
            "orderBy": "startTime",
            "maxResults": GOOGLE_EVENTS_PAGE_SIZE,
            "timeMin": rfc3339(time_min, time_zone),
            "timeMax": rfc3339(time_max, time_zone),
            "timeZone": time_zone,
        }
        events: list[CalendarEvent] = []
        while True:
            payload = await self._request_json(
                "GET", self._events_path(calendar.id), operation="events", params=params
            )
            for item in payload.get("items") or []:
                if not isinstance(item, dict) or item.get("status") == "cancelled":
                    continue
                events.append(self._parse_event(item, calendar, time_zone))
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = page_token

        master_ids = {event.recurring_event_id for event in events if event.recurring_event_id}
        masters = await self._fetch_masters(calendar, master_ids, time_zone)
        return EventsPage(events=events, recurring_master_events=masters)

    async def _collect_sync(self, options: SyncOptions, sync_token: str | None) -> SyncResult:
        calendar = options.calendar
        params: dict[str, Any] = {
            "singleEvents": True,
            "showDeleted": True,
            "maxResults": GOOGLE_EVENTS_PAGE_SIZE,
        }
        if sync_token is not None:
            params["syncToken"] = sync_token
        else:
            if options.time_min is not None:
                params["timeMin"] = rfc3339(options.time_min, options.time_zone)
            if options.time_max is not None:
                params["timeMax"] = rfc3339(options.time_max, options.time_zone)

        changes: list[SyncItem] = []
        updated_ids: set[str] = set()
        master_ids: set[str] = set()
        next_sync_token: str | None = None

        while True:
            payload = await self._request_json(
                "GET",
                self._events_path(calendar.id),
                operation="sync",
                params=params,
                sync_cursor=sync_token is not None,
            )
            for item in payload.get("items") or []:
                if not isinstance(item, dict):
                    continue
                item_id = _optional_text(item.get("id"))
                if item_id is None:
                    continue
                if item.get("status") == "cancelled":
                    changes.append(
                        SyncDeleted(
                            event=EventRef(
                                id=item_id,
                                calendar_id=calendar.id,
                                account_id=calendar.account_id,
                                provider_id="google",
                            )
                        )
                    )
                    continue
                event = self._parse_event(item, calendar, options.time_zone)
                changes.append(SyncUpdated(event=event))
                updated_ids.add(event.id)
                if event.recurring_event_id:
                    master_ids.add(event.recurring_event_id)

            candidate = _optional_text(payload.get("nextSyncToken"))
            if candidate is not None:
                next_sync_token = candidate
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = page_token

        if next_sync_token is None:
            raise ProviderError(
                f"events listing for '{calendar.id}' did not return nextSyncToken",
                provider=self.provider_id,
                operation="sync",
            )

        masters = await self._fetch_masters(calendar, master_ids - updated_ids, options.time_zone)
        changes.extend(SyncUpdated(event=master) for master in masters)
        return SyncResult(
            changes=changes,
            sync_token=next_sync_token,
            status="incremental" if sync_token is not None else "full",
        )

    async def sync(self, options: SyncOptions) -> SyncResult:
        initial_token = options.initial_sync_token
        if initial_token is not None:
            try:
                return await self._collect_sync(options, initial_token)
            except SyncTokenExpiredError:
                logger.warning(
                    "Google sync token expired for account=%s calendar=%s; running full sync",
                    self.account_id,
                    options.calendar.id,
                )

        result = await self._collect_sync(options, None)
        if initial_token is not None and result.sync_token == initial_token:
            # Some read-only calendars (e.g. public holidays) hand back the
            # rejected token unchanged; treat that as "nothing changed".
            return SyncResult(changes=[], sync_token=initial_token, status="incremental")
        return result

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
            params={"timeZone": time_zone},
        )
        return self._parse_event(payload, calendar, time_zone)

    async def create_event(self, calendar: Calendar, event: CalendarEvent) -> CalendarEvent:
        send_update = event.response.send_update if event.response else None
        try:
            payload = await self._request_json(
                "POST",
                self._events_path(calendar.id),
                operation="create_event",
                params={"conferenceDataVersion": 1, "sendUpdates": _send_updates(send_update)},
                json_body=build_google_event_body(event, include_id=True),
            )
        except ProviderError as exc:
            if exc.status_code != 409:
                raise
            logger.info(
                "Event %s already exists in calendar=%s; updating instead",
                event.id,
                calendar.id,
            )
            return await self.update_event(calendar, event.id, event)
        return self._parse_event(payload, calendar)

    async def update_event(
        self,
        calendar: Calendar,
        event_id: str,
        event: CalendarEvent,
    ) -> CalendarEvent:
        body = build_google_event_body(event)
        response = event.response
        send_update = response.send_update if response else None

        if response is not None and response.status != AttendeeStatus.unknown:
            existing = await self._request_json(
                "GET", self._event_path(calendar.id, event_id), operation="update_event"
            )
            self_email = _self_email(existing)
            if self_email is not None:
                attendees = body.get("attendees") or existing.get("attendees") or []
                body["attendees"] = _apply_self_response(
                    attendees,
                    self_email=self_email,
                    status=response.status,
                    comment=response.comment,
                )

        payload = await self._request_json(
            "PATCH",
            self._event_path(calendar.id, event_id),
            operation="update_event",
            params={"conferenceDataVersion": 1, "sendUpdates": _send_updates(send_update)},
            json_body=body,
        )
        return self._parse_event(payload, calendar)

    async def delete_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        send_update: bool = True,
    ) -> None:
        try:
            await self._request_json(
                "DELETE",
                self._event_path(calendar_id, event_id),
                operation="delete_event",
                params={"sendUpdates": _send_updates(send_update)},
            )
        except NotFoundError:
            logger.info("Event %s in calendar=%s was already deleted", event_id, calendar_id)

    async def response_to_event(
        self,
        calendar_id: str,
        event_id: str,
        response: ResponseToEventInput,
    ) -> None:
        if response.status == AttendeeStatus.unknown:
            return

        existing = await self._request_json(
            "GET", self._event_path(calendar_id, event_id), operation="response_to_event"
        )
        self_email = _self_email(existing)
        if self_email is None:
            raise ProviderError(
                f"event '{event_id}' has no attendee entry for the current user",
                provider=self.provider_id,
                operation="response_to_event",
            )
        attendees = _apply_self_response(
            existing.get("attendees") or [],
            self_email=self_email,
            status=response.status,
            comment=response.comment,
        )
        await self._request_json(
            "PATCH",
            self._event_path(calendar_id, event_id),
            operation="response_to_event",
            params={"sendUpdates": _send_updates(response.send_update)},
            json_body={"attendees": attendees},
        )

    async def move_event(
        self,
        source_calendar: Calendar,
        destination_calendar: Calendar,
        event_id: str,
        *,
        send_update: bool = True,
    ) -> CalendarEvent:
        payload = await self._request_json(
            "POST",
            f"{self._event_path(source_calendar.id, event_id)}/move",
            operation="move_event",
            params={
                "destination": destination_calendar.id,
                "sendUpdates": _send_updates(send_update),
            },
        )
        return self._parse_event(payload, destination_calendar)

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
            "/freeBusy",
            operation="free_busy",
            json_body={
                "timeMin": rfc3339(time_min),
                "timeMax": rfc3339(time_max),
                "timeZone": "UTC",
                "items": [{"id": schedule_id} for schedule_id in schedule_ids],
            },
        )

        results: list[CalendarFreeBusy] = []
        calendars = payload.get("calendars")
        if not isinstance(calendars, dict):
            return results
        for schedule_id, data in calendars.items():
            if not isinstance(data, dict):
                continue
            if data.get("errors"):
                logger.warning(
                    "Google free/busy returned errors for schedule=%s: %s",
                    schedule_id,
                    data["errors"],
                )
            slots = [
                FreeBusySlot(start=parse_instant(slot["start"]), end=parse_instant(slot["end"]))
                for slot in data.get("busy") or []
                if isinstance(slot, dict) and slot.get("start") and slot.get("end")
            ]
            results.append(CalendarFreeBusy(schedule_id=schedule_id, busy=slots))
        return results
