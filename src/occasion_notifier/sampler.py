from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from datetime import datetime, time
from zoneinfo import ZoneInfo, available_timezones

from occasion_notifier.date_logic import truncate_to_minute
from occasion_notifier.models import TimeZoneSample

LOGGER = logging.getLogger(__name__)

DEFAULT_TRIGGER_TIME = time(hour=9, minute=0)

_NON_ZONE_NAMES = {"Factory", "localtime", "posixrules"}
_NON_ZONE_PREFIXES = ("posix/", "right/")


@dataclass(frozen=True)
class ZoneCatalog:
    """Read-only table of the IANA zones a sampler checks."""

    zones: tuple[str, ...]

    def __len__(self) -> int:
        return len(self.zones)

    def __contains__(self, zone: object) -> bool:
        return zone in self.zones


def _is_zone_name(name: str) -> bool:
    return name not in _NON_ZONE_NAMES and not name.startswith(_NON_ZONE_PREFIXES)


@functools.lru_cache(maxsize=1)
def load_zone_catalog() -> ZoneCatalog:
    zones = tuple(sorted(name for name in available_timezones() if _is_zone_name(name)))
    LOGGER.info("Loaded %s time zones", len(zones))
    return ZoneCatalog(zones=zones)


class TimeZoneSampler:
    def __init__(self, catalog: ZoneCatalog, trigger_time: time = DEFAULT_TRIGGER_TIME) -> None:
        self._catalog = catalog
        self._trigger_time = trigger_time.replace(second=0, microsecond=0, tzinfo=None)

    @property
    def trigger_time(self) -> time:
        return self._trigger_time

    def sample(self, now_utc: datetime) -> frozenset[TimeZoneSample]:
        instant = truncate_to_minute(now_utc)
        matches: set[TimeZoneSample] = set()

        for zone in self._catalog.zones:
            local_time = instant.astimezone(ZoneInfo(zone))
            if local_time.hour == self._trigger_time.hour and local_time.minute == self._trigger_time.minute:
                matches.add(
                    TimeZoneSample(
                        zone=zone,
                        local_time=local_time,
                        utc_offset_label=local_time.tzname() or local_time.strftime("%z"),
                    )
                )

        return frozenset(matches)
