"""Canonical calendar data model shared by every provider adapter."""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from unical.temporal import Instant, TemporalValue, ZonedDateTime

ProviderId = Literal["google", "microsoft"]
SyncStatus = Literal["incremental", "full"]

_BY_DAY_PATTERN = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")

# (min magnitude, max magnitude, negatives allowed) per numeric BY* rule part.
_BY_RANGES: dict[str, tuple[int, int, bool]] = {
    "by_month": (1, 12, False),
    "by_month_day": (1, 31, True),
    "by_year_day": (1, 366, True),
    "by_week_no": (1, 53, True),
    "by_set_pos": (1, 366, True),
}
_BY_TIME_RANGES: dict[str, int] = {
    "by_hour": 23,
    "by_minute": 59,
    "by_second": 60,
}


def _whole_seconds(value: Any) -> Any:
    # iCalendar date-times have no fractional seconds.
    if isinstance(value, Instant | ZonedDateTime) and value.value.microsecond:
        return value.model_copy(update={"value": value.value.replace(microsecond=0)})
    return value


class Frequency(StrEnum):
    SECONDLY = "SECONDLY"
    MINUTELY = "MINUTELY"
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class Weekday(StrEnum):
    MO = "MO"
    TU = "TU"
    WE = "WE"
    TH = "TH"
    FR = "FR"
    SA = "SA"
    SU = "SU"


class AttendeeStatus(StrEnum):
    """RSVP state of an attendee (or of the current user, for ``response``)."""

    accepted = "accepted"
    tentative = "tentative"
    declined = "declined"
    unknown = "unknown"


class AttendeeType(StrEnum):
    required = "required"
    optional = "optional"
    resource = "resource"


class EventVisibility(StrEnum):
    default = "default"
    public = "public"
    private = "private"
    confidential = "confidential"


class Recurrence(BaseModel):
    """RFC 5545 recurrence rule plus RDATE/EXDATE/DTSTART and RFC 7529 extensions.

    ``by_day`` entries are RFC 5545 weekdaynum strings, so ordinals survive
    (``"MO"``, ``"2TU"``, ``"-1FR"``). Empty lists are normalized to ``None``.
    COUNT with UNTIL is representable here so that provider payloads can be
    inspected, but the iCalendar encoder rejects it.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    freq: Frequency
    interval: int | None = Field(default=None, ge=1)
    count: int | None = Field(default=None, ge=1)
    until: TemporalValue | None = None
    by_day: list[str] | None = None
    by_month: list[int] | None = None
    by_month_day: list[int] | None = None
    by_year_day: list[int] | None = None
    by_week_no: list[int] | None = None
    by_hour: list[int] | None = None
    by_minute: list[int] | None = None
    by_second: list[int] | None = None
    by_set_pos: list[int] | None = None
    wkst: Weekday | None = None
    r_date: list[TemporalValue] | None = None
    ex_date: list[TemporalValue] | None = None
    dtstart: TemporalValue | None = None
    rscale: str | None = None
    skip: Literal["OMIT", "BACKWARD", "FORWARD"] | None = None

    @field_validator(
        "by_day",
        "by_month",
        "by_month_day",
        "by_year_day",
        "by_week_no",
        "by_hour",
        "by_minute",
        "by_second",
        "by_set_pos",
        "r_date",
        "ex_date",
        mode="before",
    )
    @classmethod
    def _empty_to_none(cls, value: Any) -> Any:
        if isinstance(value, list | tuple) and not value:
            return None
        return value

    @field_validator("by_day")
    @classmethod
    def _validate_by_day(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        normalized: list[str] = []
        for entry in value:
            token = entry.strip().upper()
            match = _BY_DAY_PATTERN.match(token)
            if match is None:
                raise ValueError(f"invalid BYDAY value: {entry!r}")
            ordinal = match.group(1)
            if ordinal is not None:
                number = int(ordinal)
                if number == 0 or abs(number) > 53:
                    raise ValueError(f"BYDAY ordinal out of range: {entry!r}")
                token = f"{number}{match.group(2)}"
            normalized.append(token)
        return normalized

    @field_validator("by_month", "by_month_day", "by_year_day", "by_week_no", "by_set_pos")
    @classmethod
    def _validate_ordinal_range(
        cls, value: list[int] | None, info: ValidationInfo
    ) -> list[int] | None:
        if value is None:
            return None
        low, high, signed = _BY_RANGES[info.field_name]
        for number in value:
            magnitude = abs(number) if signed else number
            if magnitude < low or magnitude > high:
                raise ValueError(f"{info.field_name} value out of range: {number}")
        return value

    @field_validator("by_hour", "by_minute", "by_second")
    @classmethod
    def _validate_time_range(
        cls, value: list[int] | None, info: ValidationInfo
    ) -> list[int] | None:
        if value is None:
            return None
        high = _BY_TIME_RANGES[info.field_name]
        for number in value:
            if number < 0 or number > high:
                raise ValueError(f"{info.field_name} value out of range: {number}")
        return value

    @field_validator("until", "dtstart")
    @classmethod
    def _truncate_sub_second(cls, value: Any) -> Any:
        return _whole_seconds(value)

    @field_validator("r_date", "ex_date")
    @classmethod
    def _truncate_sub_second_list(cls, value: list[Any] | None) -> list[Any] | None:
        if value is None:
            return None
        return [_whole_seconds(item) for item in value]

    @field_validator("rscale")
    @classmethod
    def _normalize_rscale(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().upper()
        return normalized or None


class Calendar(BaseModel):
    """A provider calendar owned by one connected account."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    provider_id: ProviderId
    account_id: str = Field(min_length=1)
    name: str
    description: str | None = None
    time_zone: str | None = None
    primary: bool = False
    color: str | None = None
    read_only: bool = False
    sync_token: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.account_id, self.id)


class Attendee(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    name: str | None = None
    status: AttendeeStatus = AttendeeStatus.unknown
    type: AttendeeType = AttendeeType.required
    organizer: bool | None = None
    comment: str | None = None
    additional_guests: int | None = None


class EventResponse(BaseModel):
    """The current user's RSVP; ``send_update`` is only set on outgoing writes."""

    model_config = ConfigDict(extra="forbid")

    status: AttendeeStatus
    comment: str | None = None
    send_update: bool | None = None


class ResponseToEventInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: AttendeeStatus
    comment: str | None = None
    send_update: bool = False


class JoinUrl(BaseModel):
    model_config = ConfigDict(extra="forbid")

    value: str
    label: str | None = None


class ConferenceEntryPoint(BaseModel):
    model_config = ConfigDict(extra="forbid")

    join_url: JoinUrl
    meeting_code: str | None = None
    access_code: str | None = None
    password: str | None = None
    pin: str | None = None


class ConferenceData(BaseModel):
    """An existing online meeting attached to an event."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["conference"] = "conference"
    provider_id: str
    id: str | None = None
    conference_id: str | None = None
    name: str | None = None
    video: ConferenceEntryPoint | None = None
    sip: ConferenceEntryPoint | None = None
    phone: list[ConferenceEntryPoint] = Field(default_factory=list)
    host_url: str | None = None
    notes: str | None = None


class CreateConferenceRequest(BaseModel):
    """Ask the provider to mint a new meeting when the event is written."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["create"] = "create"
    provider_id: str
    request_id: str


Conference = Annotated[ConferenceData | CreateConferenceRequest, Field(discriminator="type")]


class EventRef(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    calendar_id: str
    account_id: str
    provider_id: ProviderId


class CalendarEvent(BaseModel):
    """Canonical event shape shared across provider implementations.

    ``recurring_event_id`` is set exactly when the event is a generated
    instance of a series, and names the series master's ``id``.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    title: str | None = None
    description: str | None = None
    start: TemporalValue
    end: TemporalValue
    all_day: bool | None = None
    location: str | None = None
    status: str | None = None
    availability: Literal["busy", "free"] | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    visibility: EventVisibility | None = None
    read_only: bool = False
    provider_id: ProviderId
    account_id: str
    calendar_id: str
    response: EventResponse | None = None
    conference: Conference | None = None
    recurrence: Recurrence | None = None
    recurring_event_id: str | None = None
    url: str | None = None
    etag: str | None = None
    color: str | None = None
    created_at: Instant | None = None
    updated_at: Instant | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_boundary_kinds(self) -> CalendarEvent:
        if self.start.kind != self.end.kind:
            raise ValueError(
                f"start and end must be the same kind (got {self.start.kind} and {self.end.kind})"
            )
        return self

    def ref(self) -> EventRef:
        return EventRef(
            id=self.id,
            calendar_id=self.calendar_id,
            account_id=self.account_id,
            provider_id=self.provider_id,
        )


class SyncUpdated(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Literal["updated"] = "updated"
    event: CalendarEvent


class SyncDeleted(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Literal["deleted"] = "deleted"
    event: EventRef


SyncItem = Annotated[SyncUpdated | SyncDeleted, Field(discriminator="status")]


class SyncResult(BaseModel):
    """One adapter sync cycle; consumed by the merge step, never persisted."""

    model_config = ConfigDict(extra="forbid")

    changes: list[SyncItem] = Field(default_factory=list)
    sync_token: str | None = None
    status: SyncStatus


class EventsPage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    events: list[CalendarEvent] = Field(default_factory=list)
    recurring_master_events: list[CalendarEvent] = Field(default_factory=list)


class FreeBusySlot(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start: TemporalValue
    end: TemporalValue
    status: Literal["busy", "tentative", "free", "oof", "working_elsewhere"] = "busy"


class CalendarFreeBusy(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schedule_id: str
    busy: list[FreeBusySlot] = Field(default_factory=list)


class CreateCalendarInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    description: str | None = None
    time_zone: str | None = None


class UpdateCalendarInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    description: str | None = None
    color: str | None = None
