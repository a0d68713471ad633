from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from occasion_notifier import aws
from occasion_notifier.delivery import DeliveryService
from occasion_notifier.ledger import LedgerUnavailableError
from occasion_notifier.models import DispatchMessage, MalformedMessageError
from occasion_notifier.settings import Settings

LOGGER = logging.getLogger(__name__)

DEFAULT_DEDUP_WINDOW = timedelta(minutes=5)


class DispatchChannel(Protocol):
    def send(self, message: DispatchMessage) -> str:
        ...


class SqsDispatchChannel:
    def __init__(self, *, client: Any, queue_url: str) -> None:
        self._client = client
        self._queue_url = queue_url

    def send(self, message: DispatchMessage) -> str:
        response = self._client.send_message(
            QueueUrl=self._queue_url,
            MessageGroupId=message.user_id,
            MessageDeduplicationId=message.deduplication_id,
            MessageBody=message.to_body(),
        )
        message_id = str(response.get("MessageId", ""))
        LOGGER.info("SQS send for %s (%s): %s", message.user_id, message.message_key, message_id)
        return message_id


@dataclass(frozen=True)
class QueuedMessage:
    receipt: str
    group_id: str
    body: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryDispatchQueue:
    """Process-local FIFO queue with per-user groups and a deduplication window.

    Delivery is at-least-once: a received message stays in flight until it is
    acked, and a released message goes back to the front of the queue. At most
    one message per group is in flight at a time.
    """

    def __init__(
        self,
        *,
        dedup_window: timedelta = DEFAULT_DEDUP_WINDOW,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._dedup_window = dedup_window
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: list[QueuedMessage] = []
        self._in_flight: dict[str, QueuedMessage] = {}
        self._recent_dedup_ids: dict[str, datetime] = {}

    def send(self, message: DispatchMessage) -> str:
        now = self._clock()
        with self._lock:
            self._recent_dedup_ids = {
                dedup_id: sent_at
                for dedup_id, sent_at in self._recent_dedup_ids.items()
                if now - sent_at < self._dedup_window
            }
            if message.deduplication_id in self._recent_dedup_ids:
                LOGGER.info("Suppressed duplicate enqueue of %s", message.deduplication_id)
                return ""

            self._recent_dedup_ids[message.deduplication_id] = now
            queued = QueuedMessage(receipt=str(uuid.uuid4()), group_id=message.user_id, body=message.to_body())
            self._pending.append(queued)
            return queued.receipt

    def receive(self, max_messages: int = 10) -> list[QueuedMessage]:
        with self._lock:
            busy_groups = {queued.group_id for queued in self._in_flight.values()}
            received: list[QueuedMessage] = []
            remaining: list[QueuedMessage] = []

            for queued in self._pending:
                if len(received) < max_messages and queued.group_id not in busy_groups:
                    received.append(queued)
                    self._in_flight[queued.receipt] = queued
                else:
                    remaining.append(queued)
                # Later messages in a group wait behind the earlier one.
                busy_groups.add(queued.group_id)

            self._pending = remaining
            return received

    def ack(self, receipt: str) -> None:
        with self._lock:
            self._in_flight.pop(receipt, None)

    def release(self, receipt: str) -> None:
        with self._lock:
            queued = self._in_flight.pop(receipt, None)
            if queued is not None:
                self._pending.insert(0, queued)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending) + len(self._in_flight)


async def drain_in_memory_queue(queue: InMemoryDispatchQueue, delivery: DeliveryService) -> int:
    processed = 0
    while True:
        batch = queue.receive()
        if not batch:
            return processed
        unfinished = list(batch)
        try:
            for queued in batch:
                try:
                    await delivery.deliver_body(queued.body)
                except MalformedMessageError:
                    LOGGER.exception("Dropping malformed dispatch message %s", queued.receipt)
                else:
                    processed += 1
                queue.ack(queued.receipt)
                unfinished.remove(queued)
        finally:
            # Anything not acked goes back in its original order.
            for queued in reversed(unfinished):
                queue.release(queued.receipt)


class SqsDeliveryConsumer:
    def __init__(
        self,
        *,
        client: Any,
        queue_url: str,
        delivery: DeliveryService,
        wait_time_seconds: int = 20,
        max_messages: int = 10,
    ) -> None:
        self._client = client
        self._queue_url = queue_url
        self._delivery = delivery
        self._wait_time_seconds = wait_time_seconds
        self._max_messages = max_messages

    async def poll_once(self) -> int:
        response = await asyncio.to_thread(
            self._client.receive_message,
            QueueUrl=self._queue_url,
            MaxNumberOfMessages=self._max_messages,
            WaitTimeSeconds=self._wait_time_seconds,
        )
        messages = response.get("Messages", [])
        handled = 0

        for sqs_message in messages:
            try:
                await self._delivery.deliver_body(sqs_message["Body"])
            except (MalformedMessageError, LedgerUnavailableError):
                # The rest of the batch stays on the queue too, so a group never runs out of order.
                LOGGER.exception(
                    "Delivery failed for SQS message %s; leaving %s messages for redelivery",
                    sqs_message.get("MessageId"),
                    len(messages) - handled,
                )
                break

            await asyncio.to_thread(
                self._client.delete_message,
                QueueUrl=self._queue_url,
                ReceiptHandle=sqs_message["ReceiptHandle"],
            )
            handled += 1

        return handled

    async def run_forever(self) -> None:
        while True:
            await self.poll_once()


def build_dispatch_channel(settings: Settings) -> DispatchChannel:
    if settings.queue_url:
        return SqsDispatchChannel(client=aws.sqs_client(settings), queue_url=settings.queue_url)
    LOGGER.warning("QUEUE_URL is not set; dispatching through an in-process queue")
    return InMemoryDispatchQueue()
