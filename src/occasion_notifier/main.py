from __future__ import annotations

import argparse
import asyncio
import logging
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from telegram.ext import Application, CallbackContext

from occasion_notifier import aws
from occasion_notifier.delivery import DeliveryService, build_delivery_service
from occasion_notifier.dispatch_queue import (
    InMemoryDispatchQueue,
    SqsDeliveryConsumer,
    build_dispatch_channel,
    drain_in_memory_queue,
)
from occasion_notifier.matcher import ZoneLookupError
from occasion_notifier.models import require_supported_event_type
from occasion_notifier.pipeline import TriggerPipeline, build_trigger_pipeline
from occasion_notifier.settings import Settings, load_settings, required_env

LOGGER = logging.getLogger(__name__)

TRIGGER_INTERVAL = timedelta(minutes=1)
DRAIN_INTERVAL = timedelta(seconds=5)
TRIGGER_RETRY_DELAY = timedelta(seconds=10)
MAX_TRIGGER_ATTEMPTS = 3


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _seconds_until_next_minute(now: datetime) -> float:
    next_minute = now.replace(second=0, microsecond=0) + timedelta(minutes=1)
    return (next_minute - now).total_seconds()


def _parse_instant(value: str) -> datetime:
    instant = datetime.fromisoformat(value)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant


async def _run_trigger(context: CallbackContext, now_utc: datetime, attempt: int) -> None:
    pipeline: TriggerPipeline = context.application.bot_data["trigger_pipeline"]
    try:
        await pipeline.run(now_utc)
    except ZoneLookupError:
        if attempt >= MAX_TRIGGER_ATTEMPTS:
            LOGGER.exception("Trigger for %s failed after %s attempts", now_utc.isoformat(), attempt)
            return
        LOGGER.warning("Trigger for %s failed, retrying (attempt %s)", now_utc.isoformat(), attempt + 1)
        context.job_queue.run_once(
            retry_trigger_callback,
            when=TRIGGER_RETRY_DELAY,
            data={"now_utc": now_utc, "attempt": attempt + 1},
            name="occasion-trigger-retry",
        )


async def scheduled_trigger_callback(context: CallbackContext) -> None:
    await _run_trigger(context, datetime.now(timezone.utc), attempt=1)


async def retry_trigger_callback(context: CallbackContext) -> None:
    data = context.job.data
    await _run_trigger(context, data["now_utc"], attempt=data["attempt"])


async def drain_queue_callback(context: CallbackContext) -> None:
    queue: InMemoryDispatchQueue = context.application.bot_data["dispatch_queue"]
    delivery: DeliveryService = context.application.bot_data["delivery_service"]
    await drain_in_memory_queue(queue, delivery)


async def poll_sqs_callback(context: CallbackContext) -> None:
    consumer: SqsDeliveryConsumer = context.application.bot_data["sqs_consumer"]
    await consumer.poll_once()


def serve(settings: Settings) -> None:
    require_supported_event_type(settings.event_type)
    token = required_env("TELEGRAM_BOT_TOKEN")

    application = Application.builder().token(token).build()
    channel = build_dispatch_channel(settings)
    application.bot_data["settings"] = settings
    application.bot_data["trigger_pipeline"] = build_trigger_pipeline(settings, channel=channel)
    delivery = build_delivery_service(settings, bot=application.bot)
    application.bot_data["delivery_service"] = delivery

    if isinstance(channel, InMemoryDispatchQueue):
        application.bot_data["dispatch_queue"] = channel
        application.job_queue.run_repeating(drain_queue_callback, interval=DRAIN_INTERVAL, name="occasion-drain")
    else:
        application.bot_data["sqs_consumer"] = SqsDeliveryConsumer(
            client=aws.sqs_client(settings),
            queue_url=settings.queue_url or "",
            delivery=delivery,
            wait_time_seconds=0,
        )
        application.job_queue.run_repeating(poll_sqs_callback, interval=DRAIN_INTERVAL, name="occasion-sqs-poll")

    application.job_queue.run_repeating(
        scheduled_trigger_callback,
        interval=TRIGGER_INTERVAL,
        first=_seconds_until_next_minute(datetime.now(timezone.utc)),
        name="occasion-trigger",
    )

    application.run_polling()


async def trigger_once(settings: Settings, now_utc: datetime) -> int:
    require_supported_event_type(settings.event_type)
    channel = build_dispatch_channel(settings)
    pipeline = build_trigger_pipeline(settings, channel=channel)
    report = await pipeline.run(now_utc)
    LOGGER.info("Dispatched %s messages for %s", len(report.dispatched), report.now_utc.isoformat())

    if isinstance(channel, InMemoryDispatchQueue):
        await drain_in_memory_queue(channel, build_delivery_service(settings))
    return len(report.dispatched)


async def deliver_from_sqs(settings: Settings, *, once: bool) -> None:
    consumer = SqsDeliveryConsumer(
        client=aws.sqs_client(settings),
        queue_url=required_env("QUEUE_URL"),
        delivery=build_delivery_service(settings),
    )
    if once:
        await consumer.poll_once()
        return
    await consumer.run_forever()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="occasion-notifier")
    commands = parser.add_subparsers(dest="command", required=True)

    trigger = commands.add_parser("trigger", help="Evaluate the trigger once and dispatch matching users")
    trigger.add_argument("--at", type=_parse_instant, default=None, help="ISO-8601 instant (default: now)")

    deliver = commands.add_parser("deliver", help="Consume dispatch messages from SQS")
    deliver.add_argument("--once", action="store_true", help="Poll a single batch and exit")

    commands.add_parser("serve", help="Run the trigger and delivery loops inside the Telegram bot")
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    configure_logging()
    args = build_parser().parse_args(argv)
    settings = load_settings()

    if args.command == "trigger":
        asyncio.run(trigger_once(settings, args.at or datetime.now(timezone.utc)))
    elif args.command == "deliver":
        asyncio.run(deliver_from_sqs(settings, once=args.once))
    else:
        serve(settings)


if __name__ == "__main__":
    main()
