from __future__ import annotations

import asyncio
import enum
import hashlib
import logging
from collections.abc import Sequence

from telegram import Bot

from occasion_notifier.ledger import SentLedger, build_sent_ledger
from occasion_notifier.models import DispatchMessage, dispatch_message_from_body
from occasion_notifier.notifiers import Notifier, build_notifiers
from occasion_notifier.settings import Settings

LOGGER = logging.getLogger(__name__)

BIRTHDAY_TEMPLATES = (
    "Hey, {first_name} {last_name} it's your birthday",
    "🎉 Happy birthday, {first_name} {last_name}!",
    "🎂 It's {first_name} {last_name} Day. Happy birthday!",
    "🥳 Today we celebrate {first_name} {last_name}. Happy birthday!",
    "🎈 {first_name} {last_name} levelled up today. Happy birthday!",
    "🌟 Wishing you a wonderful birthday, {first_name} {last_name}.",
)

ANNIVERSARY_TEMPLATES = (
    "Hey, {first_name} {last_name} it's your anniversary",
    "💐 Happy anniversary, {first_name} {last_name}!",
    "🥂 Another year together. Happy anniversary, {first_name} {last_name}.",
    "🗓️ Marked and confirmed: it's {first_name} {last_name}'s anniversary.",
    "🎊 Cheers to {first_name} {last_name} on this anniversary.",
)

TEMPLATES_BY_EVENT_TYPE = {
    "birthday": BIRTHDAY_TEMPLATES,
    "anniversary": ANNIVERSARY_TEMPLATES,
}


class DeliveryOutcome(enum.Enum):
    SENT = "sent"
    DUPLICATE = "duplicate"


class DeliveryService:
    def __init__(self, *, ledger: SentLedger, notifiers: Sequence[Notifier]) -> None:
        self._ledger = ledger
        self._notifiers = list(notifiers)

    async def deliver_body(self, body: str | bytes) -> DeliveryOutcome:
        return await self.deliver(dispatch_message_from_body(body))

    async def deliver(self, message: DispatchMessage) -> DeliveryOutcome:
        # The ledger insert must precede every notification side effect.
        inserted = await asyncio.to_thread(self._ledger.try_record, message.ledger_entry())
        if not inserted:
            LOGGER.info("Already sent %s to %s, skipping", message.message_key, message.user_id)
            return DeliveryOutcome.DUPLICATE

        text = format_greeting(message)
        for notifier in self._notifiers:
            try:
                await notifier.notify(message, text)
            except Exception:
                LOGGER.exception(
                    "Notifier %s failed for %s (%s); not retried",
                    notifier.name,
                    message.user_id,
                    message.message_key,
                )

        LOGGER.info("Sent %s notification to %s", message.message_key, message.user_id)
        return DeliveryOutcome.SENT


def format_greeting(message: DispatchMessage) -> str:
    template = select_template(message, TEMPLATES_BY_EVENT_TYPE[message.event_type])
    return template.format(first_name=message.first_name, last_name=message.last_name)


def select_template(message: DispatchMessage, templates: tuple[str, ...]) -> str:
    seed = "|".join((message.user_id, message.event_type, str(message.year)))
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    index = int.from_bytes(digest[:4], "big") % len(templates)
    return templates[index]


def build_delivery_service(settings: Settings, *, bot: Bot | None = None) -> DeliveryService:
    return DeliveryService(ledger=build_sent_ledger(settings), notifiers=build_notifiers(settings, bot=bot))
