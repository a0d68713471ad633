from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

SUPPORTED_EVENT_TYPES = {"birthday", "anniversary"}


class UnsupportedEventTypeError(ValueError):
    pass


class MalformedRecordError(ValueError):
    pass


class MalformedMessageError(ValueError):
    pass


def require_supported_event_type(value: str | None) -> str:
    event_type = (value or "").strip().lower()
    if event_type not in SUPPORTED_EVENT_TYPES:
        raise UnsupportedEventTypeError(f"Unsupported EVENT_TYPE: {value}")
    return event_type


@dataclass(frozen=True)
class TimeZoneSample:
    zone: str
    local_time: datetime = field(compare=False)
    utc_offset_label: str = field(compare=False)


@dataclass(frozen=True)
class EventDate:
    month: int
    day: int
    year: int | None = None


@dataclass(frozen=True)
class UserRecord:
    user_id: str
    first_name: str
    last_name: str
    event_date: EventDate
    time_zone: str


@dataclass(frozen=True)
class LedgerEntry:
    user_id: str
    message_key: str


@dataclass(frozen=True)
class DispatchMessage:
    user_id: str
    first_name: str
    last_name: str
    event_type: str
    year: int

    @property
    def message_key(self) -> str:
        return f"{self.event_type}#{self.year}"

    @property
    def deduplication_id(self) -> str:
        return f"{self.user_id}-{self.message_key}"

    def ledger_entry(self) -> LedgerEntry:
        return LedgerEntry(user_id=self.user_id, message_key=self.message_key)

    def to_body(self) -> str:
        return json.dumps(
            {
                "userId": self.user_id,
                "firstName": self.first_name,
                "lastName": self.last_name,
                "eventType": self.event_type,
                "year": self.year,
            }
        )


@dataclass(frozen=True)
class MatchedUser:
    record: UserRecord
    year: int

    def to_dispatch_message(self, event_type: str) -> DispatchMessage:
        return DispatchMessage(
            user_id=self.record.user_id,
            first_name=self.record.first_name,
            last_name=self.record.last_name,
            event_type=event_type,
            year=self.year,
        )


def required_text(item: Mapping[str, Any], attribute: str, error: type[ValueError]) -> str:
    value = item.get(attribute)
    if not isinstance(value, str) or not value.strip():
        raise error(f"Missing or empty attribute: {attribute}")
    return value.strip()


def dispatch_message_from_body(body: str | bytes) -> DispatchMessage:
    try:
        data = json.loads(body)
    except (TypeError, ValueError) as exc:
        raise MalformedMessageError(f"Dispatch message is not valid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise MalformedMessageError("Dispatch message must be a JSON object")

    user_id = required_text(data, "userId", MalformedMessageError)
    try:
        event_type = require_supported_event_type(data.get("eventType"))
    except UnsupportedEventTypeError as exc:
        raise MalformedMessageError(str(exc)) from exc

    year = data.get("year")
    if isinstance(year, bool) or not isinstance(year, int):
        raise MalformedMessageError("Dispatch message year must be an integer")

    return DispatchMessage(
        user_id=user_id,
        first_name=str(data.get("firstName", "")),
        last_name=str(data.get("lastName", "")),
        event_type=event_type,
        year=year,
    )
