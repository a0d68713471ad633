from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import requests
from telegram import Bot

from occasion_notifier import aws
from occasion_notifier.models import DispatchMessage
from occasion_notifier.settings import Settings

LOGGER = logging.getLogger(__name__)


class Notifier(Protocol):
    name: str

    async def notify(self, message: DispatchMessage, text: str) -> None:
        ...


class TelegramNotifier:
    name = "telegram"

    def __init__(self, *, bot: Bot, chat_id: int) -> None:
        self._bot = bot
        self._chat_id = chat_id

    async def notify(self, message: DispatchMessage, text: str) -> None:
        await self._bot.send_message(chat_id=self._chat_id, text=text)


class SnsNotifier:
    name = "sns"

    def __init__(self, *, client: Any, topic_arn: str) -> None:
        self._client = client
        self._topic_arn = topic_arn

    async def notify(self, message: DispatchMessage, text: str) -> None:
        response = await asyncio.to_thread(self._client.publish, TopicArn=self._topic_arn, Message=text)
        LOGGER.debug("SNS publish for %s: %s", message.user_id, response.get("MessageId"))


class WebhookNotifier:
    name = "webhook"

    def __init__(self, *, url: str, timeout: float = 10.0) -> None:
        self._url = url
        self._timeout = timeout

    def _post(self, text: str) -> None:
        response = requests.post(self._url, json={"message": text}, timeout=self._timeout)
        response.raise_for_status()

    async def notify(self, message: DispatchMessage, text: str) -> None:
        await asyncio.to_thread(self._post, text)


def build_notifiers(settings: Settings, *, bot: Bot | None = None, sns_client: Any = None) -> list[Notifier]:
    notifiers: list[Notifier] = []

    if settings.telegram_chat_id is not None and (bot is not None or settings.telegram_bot_token):
        telegram_bot = bot if bot is not None else Bot(token=settings.telegram_bot_token or "")
        notifiers.append(TelegramNotifier(bot=telegram_bot, chat_id=settings.telegram_chat_id))

    if settings.topic_arn:
        if sns_client is None:
            sns_client = aws.sns_client(settings)
        notifiers.append(SnsNotifier(client=sns_client, topic_arn=settings.topic_arn))

    if settings.webhook_url:
        notifiers.append(WebhookNotifier(url=settings.webhook_url))

    if not notifiers:
        LOGGER.warning("No notification channels configured; deliveries will only be recorded")
    return notifiers
