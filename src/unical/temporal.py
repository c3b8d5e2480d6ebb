"""Date/time values used for event boundaries and recurrence fields.

Three kinds exist and are never mixed implicitly:

- ``PlainDate``: a calendar date with no time or zone (all-day events).
- ``Instant``: an absolute point in time, always stored as aware UTC.
- ``ZonedDateTime``: a wall-clock time attached to an IANA zone id.

Values are frozen pydantic models tagged by ``kind`` so that they serialize
cleanly into storage and can be validated back as a discriminated union.
Anything that needs to order or compare values across kinds goes through
:func:`to_instant` with an explicit fallback time zone.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import UTC, date, datetime, time
from typing import Annotated, Literal, assert_never
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from unical.errors import ParseError, RangeError

_DATE_PATTERN = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_DATE_TIME_PATTERN = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt ](\d{2}):(\d{2})(?::(\d{2})(\.\d+)?)?"
    r"(?P<offset>[Zz]|[+-]\d{2}:?\d{2})?(?:\[(?P<zone>[^\]]+)\])?$"
)


def zone_info(time_zone: str) -> ZoneInfo:
    """Resolve an IANA zone id, raising :class:`RangeError` for unknown ids."""
    if not isinstance(time_zone, str) or not time_zone.strip():
        raise RangeError("time zone must be a non-empty IANA zone id")
    try:
        return ZoneInfo(time_zone.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise RangeError(f"Unknown time zone: {time_zone!r}") from exc


class PlainDate(BaseModel):
    """A calendar date with no time component."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["date"] = "date"
    value: date

    @classmethod
    def of(cls, year: int, month: int, day: int) -> PlainDate:
        try:
            return cls(value=date(year, month, day))
        except ValueError as exc:
            raise RangeError(str(exc)) from exc


class Instant(BaseModel):
    """An absolute timestamp normalized to UTC."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["instant"] = "instant"
    value: datetime

    @field_validator("value")
    @classmethod
    def _normalize_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class ZonedDateTime(BaseModel):
    """A wall-clock date-time in a named IANA zone."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["zoned"] = "zoned"
    time_zone: str
    value: datetime

    @field_validator("time_zone")
    @classmethod
    def _validate_zone(cls, value: str) -> str:
        zone_info(value)
        return value.strip()

    @field_validator("value")
    @classmethod
    def _to_wall_clock(cls, value: datetime, info: ValidationInfo) -> datetime:
        # Aware input is re-expressed in the carried zone before its offset is dropped.
        time_zone = info.data.get("time_zone")
        if value.tzinfo is not None and time_zone is not None:
            value = value.astimezone(zone_info(time_zone))
        return value.replace(tzinfo=None)

    @classmethod
    def from_aware(cls, value: datetime, time_zone: str) -> ZonedDateTime:
        """Build from an aware datetime, re-expressed in *time_zone*."""
        local = value.astimezone(zone_info(time_zone))
        return cls(value=local.replace(tzinfo=None), time_zone=time_zone)

    def aware(self) -> datetime:
        return self.value.replace(tzinfo=zone_info(self.time_zone))


TemporalValue = Annotated[PlainDate | Instant | ZonedDateTime, Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


def to_instant(value: PlainDate | Instant | ZonedDateTime, time_zone: str) -> Instant:
    """Convert any temporal value to an :class:`Instant`.

    PlainDate is read as midnight in *time_zone*. ZonedDateTime carries its own
    zone and is converted with it. Instant passes through unchanged.
    """
    if isinstance(value, Instant):
        return value
    if isinstance(value, ZonedDateTime):
        return Instant(value=value.aware().astimezone(UTC))
    if isinstance(value, PlainDate):
        midnight = datetime.combine(value.value, time(0, 0), tzinfo=zone_info(time_zone))
        return Instant(value=midnight.astimezone(UTC))
    assert_never(value)


def to_datetime(value: PlainDate | Instant | ZonedDateTime, time_zone: str) -> datetime:
    """Return an aware datetime for *value* (PlainDate becomes midnight in *time_zone*)."""
    if isinstance(value, ZonedDateTime):
        return value.aware()
    return to_instant(value, time_zone).value


def to_zoned(value: PlainDate | Instant | ZonedDateTime, time_zone: str) -> ZonedDateTime:
    """Express *value* as wall-clock time in *time_zone*."""
    if isinstance(value, ZonedDateTime):
        if value.time_zone == time_zone:
            return value
        return ZonedDateTime.from_aware(value.aware(), time_zone)
    if isinstance(value, Instant):
        return ZonedDateTime.from_aware(value.value, time_zone)
    if isinstance(value, PlainDate):
        zone_info(time_zone)
        return ZonedDateTime(value=datetime.combine(value.value, time(0, 0)), time_zone=time_zone)
    assert_never(value)


def to_plain_date(value: PlainDate | Instant | ZonedDateTime, time_zone: str) -> PlainDate:
    """Return the calendar date *value* falls on, as seen in *time_zone*."""
    if isinstance(value, PlainDate):
        return value
    if isinstance(value, Instant | ZonedDateTime):
        return PlainDate(value=to_zoned(value, time_zone).value.date())
    assert_never(value)


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------


def compare(
    a: PlainDate | Instant | ZonedDateTime,
    b: PlainDate | Instant | ZonedDateTime,
    time_zone: str,
) -> int:
    """Order two values on the timeline; returns -1, 0 or 1.

    Callers must pass the same authoritative zone for every comparison in a
    batch: a PlainDate compared against a ZonedDateTime can flip order when
    the zone changes.
    """
    left = to_instant(a, time_zone).value
    right = to_instant(b, time_zone).value
    if left < right:
        return -1
    if left > right:
        return 1
    return 0


def sort_temporal(
    values: Iterable[PlainDate | Instant | ZonedDateTime],
    time_zone: str,
) -> list[PlainDate | Instant | ZonedDateTime]:
    """Stable sort by instant."""
    return sorted(values, key=lambda item: to_instant(item, time_zone).value)


def same_variant_equal(
    a: PlainDate | Instant | ZonedDateTime,
    b: PlainDate | Instant | ZonedDateTime,
) -> bool:
    """Equality without cross-kind conversion; mixed kinds are never equal."""
    if isinstance(a, PlainDate):
        return isinstance(b, PlainDate) and a.value == b.value
    if isinstance(a, Instant):
        return isinstance(b, Instant) and a.value == b.value
    if isinstance(a, ZonedDateTime):
        return isinstance(b, ZonedDateTime) and a.aware() == b.aware()
    assert_never(a)


# ---------------------------------------------------------------------------
# Parsing / formatting
# ---------------------------------------------------------------------------


def _build_date(year: str, month: str, day: str, text: str) -> date:
    try:
        return date(int(year), int(month), int(day))
    except ValueError as exc:
        raise RangeError(f"Out-of-range date {text!r}: {exc}") from exc


def _build_naive(match: re.Match[str], text: str) -> datetime:
    year, month, day, hour, minute, second, fraction = match.group(1, 2, 3, 4, 5, 6, 7)
    microsecond = int(fraction[1:7].ljust(6, "0")) if fraction else 0
    try:
        return datetime(
            int(year),
            int(month),
            int(day),
            int(hour),
            int(minute),
            int(second or 0),
            microsecond,
        )
    except ValueError as exc:
        raise RangeError(f"Out-of-range date-time {text!r}: {exc}") from exc


def _apply_offset(naive: datetime, offset: str) -> datetime:
    if offset in ("Z", "z"):
        return naive.replace(tzinfo=UTC)
    normalized = offset if ":" in offset else f"{offset[:3]}:{offset[3:]}"
    try:
        return datetime.fromisoformat(f"{naive.isoformat()}{normalized}")
    except ValueError as exc:
        raise RangeError(f"Out-of-range UTC offset {offset!r}") from exc


def parse_plain_date(text: str) -> PlainDate:
    """Parse ``YYYY-MM-DD``."""
    match = _DATE_PATTERN.match(text.strip()) if isinstance(text, str) else None
    if match is None:
        raise ParseError(f"Invalid ISO date: {text!r}")
    return PlainDate(value=_build_date(*match.groups(), text=text))


def parse_instant(text: str) -> Instant:
    """Parse an RFC 3339 timestamp that carries ``Z`` or a numeric offset."""
    match = _DATE_TIME_PATTERN.match(text.strip()) if isinstance(text, str) else None
    if match is None or match.group("offset") is None:
        raise ParseError(f"Invalid RFC 3339 timestamp: {text!r}")
    naive = _build_naive(match, text)
    return Instant(value=_apply_offset(naive, match.group("offset")))


def parse_zoned(text: str, time_zone: str | None = None) -> ZonedDateTime:
    """Parse a local ISO date-time, optionally suffixed with ``[Zone/Id]``.

    A bracketed zone wins over *time_zone*. When an offset is present the
    value is re-expressed in the target zone.
    """
    match = _DATE_TIME_PATTERN.match(text.strip()) if isinstance(text, str) else None
    if match is None:
        raise ParseError(f"Invalid ISO date-time: {text!r}")
    zone = match.group("zone") or time_zone
    if zone is None:
        raise ParseError(f"Date-time {text!r} has no zone and no fallback zone was given")
    zone_info(zone)
    naive = _build_naive(match, text)
    offset = match.group("offset")
    if offset is not None:
        return ZonedDateTime.from_aware(_apply_offset(naive, offset), zone)
    return ZonedDateTime(value=naive, time_zone=zone)


def parse_iso(text: str, time_zone: str | None = None) -> PlainDate | Instant | ZonedDateTime:
    """Parse any of the three ISO shapes.

    ``YYYY-MM-DD`` gives a PlainDate, a trailing offset without a bracketed zone
    gives an Instant, anything else is zoned in the bracketed or fallback zone.
    """
    if not isinstance(text, str):
        raise ParseError(f"Expected ISO text, got {type(text).__name__}")
    stripped = text.strip()
    if _DATE_PATTERN.match(stripped):
        return parse_plain_date(stripped)
    match = _DATE_TIME_PATTERN.match(stripped)
    if match is None:
        raise ParseError(f"Invalid ISO date/time: {text!r}")
    if match.group("offset") is not None and match.group("zone") is None:
        return parse_instant(stripped)
    return parse_zoned(stripped, time_zone)


def format_iso(value: PlainDate | Instant | ZonedDateTime) -> str:
    if isinstance(value, PlainDate):
        return value.value.isoformat()
    if isinstance(value, Instant):
        return value.value.isoformat().replace("+00:00", "Z")
    if isinstance(value, ZonedDateTime):
        return f"{value.value.isoformat()}[{value.time_zone}]"
    assert_never(value)
