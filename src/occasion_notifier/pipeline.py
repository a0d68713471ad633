from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from occasion_notifier.date_logic import parse_time_string, truncate_to_minute
from occasion_notifier.dispatch_queue import DispatchChannel, build_dispatch_channel
from occasion_notifier.matcher import EventMatcher, ZoneLookupError
from occasion_notifier.models import DispatchMessage, TimeZoneSample, require_supported_event_type
from occasion_notifier.sampler import TimeZoneSampler, load_zone_catalog
from occasion_notifier.settings import Settings
from occasion_notifier.user_directory import build_user_directory

LOGGER = logging.getLogger(__name__)


class Sampler(Protocol):
    def sample(self, now_utc: datetime) -> frozenset[TimeZoneSample]:
        ...


@dataclass(frozen=True)
class TriggerReport:
    now_utc: datetime
    zones: tuple[str, ...] = ()
    matched: int = 0
    dispatched: list[DispatchMessage] = field(default_factory=list)


class TriggerPipeline:
    def __init__(
        self,
        *,
        event_type: str,
        sampler: Sampler,
        matcher: EventMatcher,
        channel: DispatchChannel,
    ) -> None:
        self._event_type = event_type
        self._sampler = sampler
        self._matcher = matcher
        self._channel = channel

    async def run(self, now_utc: datetime) -> TriggerReport:
        event_type = require_supported_event_type(self._event_type)
        instant = truncate_to_minute(now_utc)

        samples = self._sampler.sample(instant)
        zones = tuple(sorted(sample.zone for sample in samples))
        LOGGER.info("Timezones at trigger time now (%s): %s", len(zones), ", ".join(zones))
        if not samples:
            LOGGER.info("No timezones at trigger time right now, skipping")
            return TriggerReport(now_utc=instant)

        result = await self._matcher.match(samples, event_type, now_utc=instant)

        dispatched: list[DispatchMessage] = []
        for matched in result.matches:
            message = matched.to_dispatch_message(event_type)
            await asyncio.to_thread(self._channel.send, message)
            LOGGER.info(
                "Dispatched %s for %s %s (%s)",
                message.message_key,
                message.first_name,
                message.last_name,
                message.user_id,
            )
            dispatched.append(message)

        if result.failed_zones:
            raise ZoneLookupError(result.failed_zones)

        return TriggerReport(now_utc=instant, zones=zones, matched=len(result.matches), dispatched=dispatched)


def build_trigger_pipeline(settings: Settings, *, channel: DispatchChannel | None = None) -> TriggerPipeline:
    event_type = require_supported_event_type(settings.event_type)
    sampler = TimeZoneSampler(load_zone_catalog(), parse_time_string(settings.trigger_time))
    return TriggerPipeline(
        event_type=event_type,
        sampler=sampler,
        matcher=EventMatcher(build_user_directory(settings)),
        channel=channel if channel is not None else build_dispatch_channel(settings),
    )
