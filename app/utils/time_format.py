"""
Conversion boundary between display time and storage time.

Storage is always 24-hour (`datetime.time`, serialized as HH:MM:SS); anything
shown to a person is 12-hour ("10:00 AM"). Dates are ISO (YYYY-MM-DD).
"""

import datetime
import re

_TWELVE_HOUR = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AaPp][Mm])\s*$")
_TWENTY_FOUR_HOUR = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*$")


def parse_time(value):
    """
    Parse a 12-hour ("1:30 PM") or 24-hour ("13:30", "13:30:00") string into
    a `datetime.time`. `datetime.time` values are returned unchanged.

    Raises ValueError on anything else.
    """
    if isinstance(value, datetime.time):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Invalid time: {value!r}")

    match = _TWELVE_HOUR.match(value)
    if match:
        hours, minutes, seconds, modifier = match.groups()
        hours = int(hours)
        if not 1 <= hours <= 12:
            raise ValueError(f"Invalid 12-hour time: {value!r}")
        modifier = modifier.upper()
        if modifier == "AM" and hours == 12:
            hours = 0
        elif modifier == "PM" and hours != 12:
            hours += 12
        return datetime.time(hours, int(minutes), int(seconds or 0))

    match = _TWENTY_FOUR_HOUR.match(value)
    if match:
        hours, minutes, seconds = match.groups()
        return datetime.time(int(hours), int(minutes), int(seconds or 0))

    raise ValueError(f"Invalid time: {value!r}")


def to_24_hour(value):
    """'10:00 AM' -> '10:00:00'"""
    return parse_time(value).strftime("%H:%M:%S")


def to_12_hour(value):
    """'13:05:00' (or a time) -> '1:05 PM'"""
    if value is None or value == "":
        return ""
    parsed = parse_time(value)
    hours = parsed.hour % 12 or 12
    modifier = "PM" if parsed.hour >= 12 else "AM"
    return f"{hours}:{parsed.minute:02d} {modifier}"


def parse_date(value):
    """Accept a date, a datetime or an ISO YYYY-MM-DD string."""
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Invalid date: {value!r}")
    try:
        return datetime.date.fromisoformat(value.strip()[:10])
    except ValueError:
        raise ValueError(f"Invalid date format {value!r}, use YYYY-MM-DD") from None


def format_date(value):
    return value.isoformat() if value else None


def format_time(value):
    return value.strftime("%H:%M:%S") if value else None


def format_datetime(value):
    return value.isoformat() if value else None


def now():
    return datetime.datetime.now()


def today():
    return now().date()


def current_time():
    return now().time().replace(microsecond=0)


def minutes_between(start, end):
    return int((end - start).total_seconds() // 60)
