"""iCalendar recurrence codec (RFC 5545 / RFC 7529).

Encodes :class:`~unical.models.Recurrence` into ``DTSTART``/``RRULE``/``RDATE``/
``EXDATE`` property lines in the exact shape Google Calendar accepts, parses
them back, and answers series-membership questions for the reconciler.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import UTC, datetime, time
from typing import Any, assert_never

from dateutil.rrule import (
    DAILY,
    FR,
    HOURLY,
    MINUTELY,
    MO,
    MONTHLY,
    SA,
    SECONDLY,
    SU,
    TH,
    TU,
    WE,
    WEEKLY,
    YEARLY,
    rrule,
    rruleset,
)
from pydantic import ValidationError

from unical.errors import InvalidRecurrenceError, ParseError, RangeError, UnsupportedRecurrenceError
from unical.models import CalendarEvent, Frequency, Recurrence, Weekday
from unical.temporal import (
    Instant,
    PlainDate,
    ZonedDateTime,
    same_variant_equal,
    to_datetime,
    to_zoned,
    zone_info,
)

logger = logging.getLogger(__name__)

DEFAULT_EXPANSION_LIMIT = 1000

_VALUE_PATTERN = re.compile(r"^(\d{4})(\d{2})(\d{2})(?:T(\d{2})(\d{2})(\d{2})?)?(Z)?$")
_BY_DAY_PATTERN = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")

_FREQUENCIES = {freq.value: freq for freq in Frequency}
_WEEKDAYS = {day.value: day for day in Weekday}
_SKIP_VALUES = ("OMIT", "BACKWARD", "FORWARD")

# rule part -> (model field, min, max, negatives allowed)
_NUMERIC_LIST_PARTS: dict[str, tuple[str, int, int, bool]] = {
    "BYMONTH": ("by_month", 1, 12, False),
    "BYMONTHDAY": ("by_month_day", 1, 31, True),
    "BYYEARDAY": ("by_year_day", 1, 366, True),
    "BYWEEKNO": ("by_week_no", 1, 53, True),
    "BYHOUR": ("by_hour", 0, 23, False),
    "BYMINUTE": ("by_minute", 0, 59, False),
    "BYSECOND": ("by_second", 0, 60, False),
    "BYSETPOS": ("by_set_pos", 1, 366, True),
}

_DATEUTIL_FREQUENCIES = {
    Frequency.YEARLY: YEARLY,
    Frequency.MONTHLY: MONTHLY,
    Frequency.WEEKLY: WEEKLY,
    Frequency.DAILY: DAILY,
    Frequency.HOURLY: HOURLY,
    Frequency.MINUTELY: MINUTELY,
    Frequency.SECONDLY: SECONDLY,
}
_DATEUTIL_WEEKDAYS = {
    Weekday.MO: MO,
    Weekday.TU: TU,
    Weekday.WE: WE,
    Weekday.TH: TH,
    Weekday.FR: FR,
    Weekday.SA: SA,
    Weekday.SU: SU,
}

Temporal = PlainDate | Instant | ZonedDateTime


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def _compact(value: datetime) -> str:
    return value.strftime("%Y%m%dT%H%M%S")


def _format_until(value: Temporal) -> str:
    if isinstance(value, PlainDate):
        return value.value.strftime("%Y%m%d")
    if isinstance(value, ZonedDateTime):
        return f"{_compact(to_zoned(value, 'UTC').value)}Z"
    if isinstance(value, Instant):
        return f"{_compact(value.value)}Z"
    assert_never(value)


def _format_property_value(value: Temporal) -> str:
    if isinstance(value, PlainDate):
        return f";VALUE=DATE:{value.value.strftime('%Y%m%d')}"
    if isinstance(value, ZonedDateTime):
        return f";TZID={value.time_zone}:{_compact(value.value)}"
    if isinstance(value, Instant):
        return f":{_compact(value.value)}Z"
    assert_never(value)


def _join(values: Iterable[Any]) -> str:
    return ",".join(str(value) for value in values)


def to_rrule(recurrence: Recurrence) -> str:
    """Render the ``RRULE:`` line with rule parts in a fixed order.

    Raises:
        InvalidRecurrenceError: when both ``count`` and ``until`` are set.
    """
    if recurrence.count is not None and recurrence.until is not None:
        raise InvalidRecurrenceError("RRULE cannot carry both COUNT and UNTIL")

    parts = [
        f"RSCALE={recurrence.rscale}" if recurrence.rscale else "",
        f"SKIP={recurrence.skip}" if recurrence.skip else "",
        f"FREQ={recurrence.freq}",
        f"INTERVAL={recurrence.interval}" if recurrence.interval else "",
        f"COUNT={recurrence.count}" if recurrence.count else "",
        f"UNTIL={_format_until(recurrence.until)}" if recurrence.until else "",
        f"BYDAY={_join(recurrence.by_day)}" if recurrence.by_day else "",
        f"BYMONTH={_join(recurrence.by_month)}" if recurrence.by_month else "",
        f"BYMONTHDAY={_join(recurrence.by_month_day)}" if recurrence.by_month_day else "",
        f"BYYEARDAY={_join(recurrence.by_year_day)}" if recurrence.by_year_day else "",
        f"BYWEEKNO={_join(recurrence.by_week_no)}" if recurrence.by_week_no else "",
        f"BYHOUR={_join(recurrence.by_hour)}" if recurrence.by_hour else "",
        f"BYMINUTE={_join(recurrence.by_minute)}" if recurrence.by_minute else "",
        f"BYSECOND={_join(recurrence.by_second)}" if recurrence.by_second else "",
        f"BYSETPOS={_join(recurrence.by_set_pos)}" if recurrence.by_set_pos else "",
        f"WKST={recurrence.wkst}" if recurrence.wkst else "",
    ]
    return "RRULE:" + ";".join(part for part in parts if part)


def to_recurrence_properties(recurrence: Recurrence) -> list[str]:
    """Render DTSTART, RRULE, every RDATE and every EXDATE line, in that order."""
    properties: list[str] = []
    if recurrence.dtstart is not None:
        properties.append(f"DTSTART{_format_property_value(recurrence.dtstart)}")
    properties.append(to_rrule(recurrence))
    for value in recurrence.r_date or []:
        properties.append(f"RDATE{_format_property_value(value)}")
    for value in recurrence.ex_date or []:
        properties.append(f"EXDATE{_format_property_value(value)}")
    return properties


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _parse_value(raw: str, *, time_zone: str, params: dict[str, str] | None = None) -> Temporal:
    params = params or {}
    text = raw.strip()
    match = _VALUE_PATTERN.match(text)
    if match is None:
        raise ParseError(f"Invalid iCalendar date/time value: {raw!r}")
    year, month, day, hour, minute, second, utc = match.groups()

    if hour is None or params.get("VALUE", "").upper() == "DATE":
        if hour is not None:
            raise ParseError(f"VALUE=DATE property carries a time component: {raw!r}")
        return PlainDate.of(int(year), int(month), int(day))

    try:
        naive = datetime(int(year), int(month), int(day), int(hour), int(minute), int(second or 0))
    except ValueError as exc:
        raise RangeError(f"Out-of-range iCalendar value {raw!r}: {exc}") from exc

    if utc:
        return Instant(value=naive.replace(tzinfo=UTC))
    zone = params.get("TZID") or time_zone
    zone_info(zone)
    return ZonedDateTime(value=naive, time_zone=zone)


def _split_property(line: str) -> tuple[str, dict[str, str], str]:
    head, sep, value = line.strip().partition(":")
    if not sep:
        raise ParseError(f"iCalendar property has no value: {line!r}")
    name, *raw_params = head.split(";")
    params: dict[str, str] = {}
    for raw_param in raw_params:
        key, eq, param_value = raw_param.partition("=")
        if not eq:
            raise ParseError(f"Malformed property parameter {raw_param!r} in {line!r}")
        params[key.strip().upper()] = param_value.strip().strip('"')
    return name.strip().upper(), params, value


def _parse_int(part: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ParseError(f"{part} value is not an integer: {raw!r}") from exc


def _parse_numeric_list(part: str, raw: str) -> list[int]:
    _, low, high, signed = _NUMERIC_LIST_PARTS[part]
    numbers: list[int] = []
    for item in raw.split(","):
        number = _parse_int(part, item.strip())
        magnitude = abs(number) if signed else number
        if magnitude < low or magnitude > high:
            raise RangeError(f"{part} value out of range: {number}")
        numbers.append(number)
    return numbers


def _parse_by_day(raw: str) -> list[str]:
    days: list[str] = []
    for item in raw.split(","):
        token = item.strip().upper()
        match = _BY_DAY_PATTERN.match(token)
        if match is None:
            raise ParseError(f"Invalid BYDAY value: {item!r}")
        if match.group(1) is not None:
            ordinal = int(match.group(1))
            if ordinal == 0 or abs(ordinal) > 53:
                raise RangeError(f"BYDAY ordinal out of range: {item!r}")
            token = f"{ordinal}{match.group(2)}"
        days.append(token)
    return days


def parse_rrule(line: str, time_zone: str = "UTC") -> Recurrence:
    """Parse one ``RRULE:`` line. Unknown rule parts are ignored."""
    name, _, body = _split_property(line)
    if name != "RRULE":
        raise ParseError(f"Expected an RRULE property, got {name!r}")

    fields: dict[str, Any] = {}
    for part in body.split(";"):
        key, eq, value = part.partition("=")
        if not eq or not value:
            continue
        key = key.strip().upper()
        value = value.strip()

        if key == "FREQ":
            freq = _FREQUENCIES.get(value.upper())
            if freq is None:
                raise ParseError(f"Unsupported FREQ: {value!r}")
            fields["freq"] = freq
        elif key in ("INTERVAL", "COUNT"):
            number = _parse_int(key, value)
            if number < 1:
                raise RangeError(f"{key} must be at least 1, got {number}")
            fields[key.lower()] = number
        elif key == "UNTIL":
            fields["until"] = _parse_value(value, time_zone=time_zone)
        elif key == "BYDAY":
            fields["by_day"] = _parse_by_day(value)
        elif key in _NUMERIC_LIST_PARTS:
            fields[_NUMERIC_LIST_PARTS[key][0]] = _parse_numeric_list(key, value)
        elif key == "WKST":
            weekday = _WEEKDAYS.get(value.upper())
            if weekday is None:
                raise ParseError(f"Invalid WKST: {value!r}")
            fields["wkst"] = weekday
        elif key == "RSCALE":
            fields["rscale"] = value.upper()
        elif key == "SKIP":
            if value.upper() not in _SKIP_VALUES:
                raise ParseError(f"Invalid SKIP: {value!r}")
            fields["skip"] = value.upper()

    if "freq" not in fields:
        raise ParseError("RRULE must include FREQ")

    try:
        return Recurrence(**fields)
    except ValidationError as exc:
        raise ParseError(f"Invalid RRULE {line!r}: {exc}") from exc


def _parse_date_list(params: dict[str, str], body: str, time_zone: str) -> list[Temporal]:
    if not body.strip():
        return []
    return [_parse_value(item, time_zone=time_zone, params=params) for item in body.split(",")]


def parse_recurrence_properties(lines: Iterable[str], time_zone: str = "UTC") -> Recurrence:
    """Parse a provider's recurrence property list back into one Recurrence.

    Raises:
        ParseError: when there is no RRULE, more than one RRULE, or a malformed line.
    """
    recurrence: Recurrence | None = None
    dtstart: Temporal | None = None
    r_dates: list[Temporal] = []
    ex_dates: list[Temporal] = []

    for line in lines:
        if not line or not line.strip():
            continue
        name, params, body = _split_property(line)
        if name == "RRULE":
            if recurrence is not None:
                raise ParseError("Multiple RRULE properties are not allowed")
            recurrence = parse_rrule(line, time_zone)
        elif name == "RDATE":
            r_dates.extend(_parse_date_list(params, body, time_zone))
        elif name == "EXDATE":
            ex_dates.extend(_parse_date_list(params, body, time_zone))
        elif name == "DTSTART":
            dtstart = _parse_value(body, time_zone=time_zone, params=params)
        else:
            logger.debug("Ignoring unsupported recurrence property %s", name)

    if recurrence is None:
        raise ParseError("Recurrence properties must contain an RRULE")

    return recurrence.model_copy(
        update={
            "r_date": r_dates or None,
            "ex_date": ex_dates or None,
            "dtstart": dtstart,
        }
    )


# ---------------------------------------------------------------------------
# Series membership
# ---------------------------------------------------------------------------


def is_recurring_instance(event: CalendarEvent) -> bool:
    return event.recurring_event_id is not None


def is_series_master(event: CalendarEvent) -> bool:
    return event.recurrence is not None and event.recurring_event_id is None


def is_first_instance(event: CalendarEvent, master: CalendarEvent) -> bool:
    """True when *event* is the occurrence that starts *master*'s series.

    Starts of different kinds never match, even when they denote the same
    moment; this may under-report for providers that mix representations.
    """
    if event.recurring_event_id != master.id:
        return False
    return same_variant_equal(event.start, master.start)


# ---------------------------------------------------------------------------
# Expansion
# ---------------------------------------------------------------------------


def _as_rule_datetime(
    value: Temporal,
    *,
    aware: bool,
    time_zone: str,
    end_of_day: bool = False,
) -> datetime:
    if isinstance(value, PlainDate):
        clock = time(23, 59, 59) if end_of_day else time(0, 0)
        return datetime.combine(value.value, clock, tzinfo=zone_info(time_zone) if aware else None)
    if aware:
        return to_datetime(value, time_zone)
    return to_zoned(value, time_zone).value


def _from_rule_datetime(value: datetime, start: Temporal) -> Temporal:
    if isinstance(start, PlainDate):
        return PlainDate(value=value.date())
    if isinstance(start, ZonedDateTime):
        return ZonedDateTime.from_aware(value, start.time_zone)
    if isinstance(start, Instant):
        return Instant(value=value)
    assert_never(start)


def _dateutil_weekdays(by_day: list[str]) -> list[Any]:
    weekdays: list[Any] = []
    for token in by_day:
        match = _BY_DAY_PATTERN.match(token)
        assert match is not None
        weekday = _DATEUTIL_WEEKDAYS[Weekday(match.group(2))]
        weekdays.append(weekday(int(match.group(1))) if match.group(1) else weekday)
    return weekdays


def expand_occurrences(
    recurrence: Recurrence,
    start: Temporal,
    *,
    time_zone: str,
    window_start: Temporal | None = None,
    window_end: Temporal | None = None,
    limit: int = DEFAULT_EXPANSION_LIMIT,
) -> list[Temporal]:
    """Expand a series into occurrence starts of the same kind as *start*.

    PlainDate series are expanded on naive dates, zoned series keep their
    wall-clock time across DST transitions. At most *limit* occurrences are
    returned.
    """
    if recurrence.count is not None and recurrence.until is not None:
        raise InvalidRecurrenceError("RRULE cannot carry both COUNT and UNTIL")
    if recurrence.rscale is not None and recurrence.rscale != "GREGORIAN":
        raise UnsupportedRecurrenceError(f"RSCALE={recurrence.rscale} cannot be expanded")

    aware = not isinstance(start, PlainDate)
    dtstart = _as_rule_datetime(start, aware=aware, time_zone=time_zone)

    kwargs: dict[str, Any] = {
        "dtstart": dtstart,
        "interval": recurrence.interval or 1,
        "count": recurrence.count,
        "bymonth": recurrence.by_month,
        "bymonthday": recurrence.by_month_day,
        "byyearday": recurrence.by_year_day,
        "byweekno": recurrence.by_week_no,
        "byhour": recurrence.by_hour,
        "byminute": recurrence.by_minute,
        "bysecond": recurrence.by_second,
        "bysetpos": recurrence.by_set_pos,
    }
    if recurrence.until is not None:
        kwargs["until"] = _as_rule_datetime(
            recurrence.until, aware=aware, time_zone=time_zone, end_of_day=True
        )
    if recurrence.by_day:
        kwargs["byweekday"] = _dateutil_weekdays(recurrence.by_day)
    if recurrence.wkst is not None:
        kwargs["wkst"] = _DATEUTIL_WEEKDAYS[recurrence.wkst]

    ruleset = rruleset()
    ruleset.rrule(rrule(_DATEUTIL_FREQUENCIES[recurrence.freq], **kwargs))
    for value in recurrence.r_date or []:
        ruleset.rdate(_as_rule_datetime(value, aware=aware, time_zone=time_zone))
    for value in recurrence.ex_date or []:
        ruleset.exdate(_as_rule_datetime(value, aware=aware, time_zone=time_zone))

    lower = (
        _as_rule_datetime(window_start, aware=aware, time_zone=time_zone)
        if window_start is not None
        else None
    )
    upper = (
        _as_rule_datetime(window_end, aware=aware, time_zone=time_zone)
        if window_end is not None
        else None
    )

    occurrences: list[Temporal] = []
    for occurrence in ruleset:
        if upper is not None and occurrence >= upper:
            break
        if lower is not None and occurrence < lower:
            continue
        occurrences.append(_from_rule_datetime(occurrence, start))
        if len(occurrences) >= limit:
            break
    return occurrences
