from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfoNotFoundError

from occasion_notifier.date_logic import is_event_today, local_now
from occasion_notifier.models import MalformedRecordError, MatchedUser, TimeZoneSample
from occasion_notifier.user_directory import UserDirectory, user_record_from_item

LOGGER = logging.getLogger(__name__)


class ZoneLookupError(RuntimeError):
    def __init__(self, failed_zones: Mapping[str, BaseException]) -> None:
        self.failed_zones = dict(failed_zones)
        names = ", ".join(sorted(self.failed_zones))
        super().__init__(f"User lookup failed for {len(self.failed_zones)} zone(s): {names}")


@dataclass(frozen=True)
class MatchResult:
    matches: list[MatchedUser] = field(default_factory=list)
    failed_zones: dict[str, BaseException] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.failed_zones


class EventMatcher:
    def __init__(self, directory: UserDirectory) -> None:
        self._directory = directory

    async def match(
        self,
        samples: Iterable[TimeZoneSample],
        event_type: str,
        *,
        now_utc: datetime,
    ) -> MatchResult:
        zones = sorted({sample.zone for sample in samples})
        if not zones:
            return MatchResult()

        results = await asyncio.gather(
            *(asyncio.to_thread(self._directory.users_in_zone, zone) for zone in zones),
            return_exceptions=True,
        )

        failed_zones: dict[str, BaseException] = {}
        candidates: list[Mapping[str, Any]] = []
        seen_ids: set[str] = set()
        for zone, result in zip(zones, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                LOGGER.error("User lookup for zone %s failed: %s", zone, result)
                failed_zones[zone] = result
                continue
            for item in result:
                user_id = item.get("userId")
                if isinstance(user_id, str):
                    if user_id in seen_ids:
                        continue
                    seen_ids.add(user_id)
                candidates.append(item)

        LOGGER.info("Fetched %s candidate users across %s zones", len(candidates), len(zones))

        matches: list[MatchedUser] = []
        for item in candidates:
            matched = self._match_item(item, event_type, now_utc)
            if matched is not None:
                matches.append(matched)

        LOGGER.info("Number of users to process: %s", len(matches))
        return MatchResult(matches=matches, failed_zones=failed_zones)

    @staticmethod
    def _match_item(item: Mapping[str, Any], event_type: str, now_utc: datetime) -> MatchedUser | None:
        try:
            record = user_record_from_item(item, event_type)
            now_local = local_now(now_utc, record.time_zone)
        except (MalformedRecordError, ZoneInfoNotFoundError, ValueError) as exc:
            LOGGER.warning("Skipping user %s: %s", item.get("userId"), exc)
            return None

        if not is_event_today(record.event_date, now_local.date()):
            return None
        return MatchedUser(record=record, year=now_local.year)
