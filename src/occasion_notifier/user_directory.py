from __future__ import annotations

import logging
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol

from boto3.dynamodb.conditions import Key

from occasion_notifier import aws
from occasion_notifier.date_logic import InvalidEventDateError, parse_event_date
from occasion_notifier.models import MalformedRecordError, UserRecord, required_text
from occasion_notifier.settings import Settings

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEZONE_INDEX = "timezone-index"

# Storage attribute holding the event date, per event type.
EVENT_DATE_ATTRIBUTES = {
    "birthday": "birthday",
    "anniversary": "anniversary",
}

# TOML keys -> storage attribute names.
_TOML_ATTRIBUTES = {
    "user_id": "userId",
    "first_name": "firstName",
    "last_name": "lastName",
    "birthday": "birthday",
    "anniversary": "anniversary",
    "timezone": "timezone",
}


class UserDirectory(Protocol):
    def users_in_zone(self, zone: str) -> list[Mapping[str, Any]]:
        ...

    def get_user(self, user_id: str) -> Mapping[str, Any] | None:
        ...


def user_record_from_item(item: Mapping[str, Any], event_type: str) -> UserRecord:
    user_id = required_text(item, "userId", MalformedRecordError)
    time_zone = required_text(item, "timezone", MalformedRecordError)
    raw_event_date = required_text(item, EVENT_DATE_ATTRIBUTES[event_type], MalformedRecordError)

    try:
        event_date = parse_event_date(raw_event_date)
    except InvalidEventDateError as exc:
        raise MalformedRecordError(f"User {user_id} has an invalid {event_type}: {exc}") from exc

    return UserRecord(
        user_id=user_id,
        first_name=str(item.get("firstName", "")).strip(),
        last_name=str(item.get("lastName", "")).strip(),
        event_date=event_date,
        time_zone=time_zone,
    )


class DynamoUserDirectory:
    def __init__(self, table: Any, *, index_name: str = DEFAULT_TIMEZONE_INDEX) -> None:
        self._table = table
        self._index_name = index_name

    def users_in_zone(self, zone: str) -> list[Mapping[str, Any]]:
        items: list[Mapping[str, Any]] = []
        query_args: dict[str, Any] = {
            "IndexName": self._index_name,
            "KeyConditionExpression": Key("timezone").eq(zone),
        }

        while True:
            response = self._table.query(**query_args)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            query_args["ExclusiveStartKey"] = last_key

        LOGGER.debug("Zone %s has %s users", zone, len(items))
        return items

    def get_user(self, user_id: str) -> Mapping[str, Any] | None:
        response = self._table.get_item(Key={"userId": user_id})
        return response.get("Item")


class TomlUserDirectory:
    def __init__(self, path: Path) -> None:
        self._path = path
        self._by_zone: dict[str, list[Mapping[str, Any]]] = {}
        self._by_id: dict[str, Mapping[str, Any]] = {}
        self.reload()

    def reload(self) -> None:
        if not self._path.exists():
            raise FileNotFoundError(f"User directory file not found: {self._path}")

        with self._path.open("rb") as file_obj:
            data = tomllib.load(file_obj)

        by_zone: dict[str, list[Mapping[str, Any]]] = {}
        by_id: dict[str, Mapping[str, Any]] = {}
        for row in data.get("users", []):
            item = {_TOML_ATTRIBUTES[key]: str(value) for key, value in row.items() if key in _TOML_ATTRIBUTES}
            by_zone.setdefault(item.get("timezone", ""), []).append(item)
            if "userId" in item:
                by_id[item["userId"]] = item

        self._by_zone = by_zone
        self._by_id = by_id
        LOGGER.info("Loaded %s users from %s", len(by_id), self._path)

    def users_in_zone(self, zone: str) -> list[Mapping[str, Any]]:
        return list(self._by_zone.get(zone, []))

    def get_user(self, user_id: str) -> Mapping[str, Any] | None:
        return self._by_id.get(user_id)


def build_user_directory(settings: Settings) -> UserDirectory:
    if settings.users_table:
        return DynamoUserDirectory(
            aws.dynamodb_table(settings, settings.users_table),
            index_name=settings.users_timezone_index,
        )
    return TomlUserDirectory(settings.users_file)
