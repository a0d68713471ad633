from __future__ import annotations

import re
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

from occasion_notifier.models import EventDate

_FULL_DATE = re.compile(r"(\d{4})-(\d{2})-(\d{2})(?:[T ].*)?")
_RECURRING_DATE = re.compile(r"(?:--)?(\d{2})-(\d{2})")


class InvalidEventDateError(ValueError):
    pass


def validate_month_day(month: int, day: int) -> None:
    if month < 1 or month > 12:
        raise InvalidEventDateError(f"Invalid month: {month}")

    if day < 1 or day > 31:
        raise InvalidEventDateError(f"Invalid day: {day}")

    # 2000 is a leap year, so Feb 29 is accepted.
    try:
        date(2000, month, day)
    except ValueError as exc:
        raise InvalidEventDateError(f"Invalid month/day combination: {month:02d}-{day:02d}") from exc


def parse_event_date(raw_text: str) -> EventDate:
    value = raw_text.strip()

    full_match = _FULL_DATE.fullmatch(value)
    if full_match:
        year = int(full_match.group(1))
        month = int(full_match.group(2))
        day = int(full_match.group(3))
        try:
            date(year, month, day)
        except ValueError as exc:
            raise InvalidEventDateError(f"Invalid calendar date: {value}") from exc
        return EventDate(month=month, day=day, year=year)

    short_match = _RECURRING_DATE.fullmatch(value)
    if short_match:
        month = int(short_match.group(1))
        day = int(short_match.group(2))
        validate_month_day(month, day)
        return EventDate(month=month, day=day, year=None)

    raise InvalidEventDateError(f"Event date must use YYYY-MM-DD, --MM-DD or MM-DD: {raw_text!r}")


def truncate_to_minute(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc).replace(second=0, microsecond=0)


def local_now(now_utc: datetime, zone: str) -> datetime:
    return truncate_to_minute(now_utc).astimezone(ZoneInfo(zone))


def is_event_today(event_date: EventDate, local_date: date) -> bool:
    return event_date.month == local_date.month and event_date.day == local_date.day


def parse_time_string(value: str) -> time:
    pieces = value.strip().split(":")
    if len(pieces) != 2 or not all(piece.isdigit() for piece in pieces):
        raise ValueError("Trigger time must be in HH:MM format")

    hour, minute = int(pieces[0]), int(pieces[1])
    if hour > 23 or minute > 59:
        raise ValueError("Trigger time must be a valid 24-hour time")
    return time(hour=hour, minute=minute)
