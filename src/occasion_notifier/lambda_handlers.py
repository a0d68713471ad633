from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from occasion_notifier.delivery import DeliveryOutcome, DeliveryService, build_delivery_service
from occasion_notifier.ledger import LedgerUnavailableError
from occasion_notifier.models import MalformedMessageError
from occasion_notifier.pipeline import build_trigger_pipeline
from occasion_notifier.settings import load_settings

LOGGER = logging.getLogger(__name__)
# The Lambda runtime leaves the root logger at WARNING.
logging.getLogger("occasion_notifier").setLevel(logging.INFO)


def scheduler_handler(event: Any, context: Any) -> dict[str, Any]:
    pipeline = build_trigger_pipeline(load_settings())
    report = asyncio.run(pipeline.run(datetime.now(timezone.utc)))
    return {
        "zones": list(report.zones),
        "matched": report.matched,
        "dispatched": len(report.dispatched),
    }


def _records(event: Any) -> list[Mapping[str, Any]]:
    if isinstance(event, Mapping):
        return list(event.get("Records", []))
    if isinstance(event, list):
        return event
    return []


async def process_records(records: list[Mapping[str, Any]], delivery: DeliveryService) -> dict[str, Any]:
    failures: list[dict[str, str]] = []
    outcomes = {outcome.value: 0 for outcome in DeliveryOutcome}

    for index, record in enumerate(records):
        item_id = str(record.get("messageId", index))
        if failures:
            # FIFO batches: everything after the first failure goes back unprocessed.
            failures.append({"itemIdentifier": item_id})
            continue
        try:
            outcome = await delivery.deliver_body(record.get("body", ""))
        except (MalformedMessageError, LedgerUnavailableError) as exc:
            LOGGER.error("Delivery failed for record %s: %s", item_id, exc)
            failures.append({"itemIdentifier": item_id})
            continue
        outcomes[outcome.value] += 1

    LOGGER.info("Processed %s records: %s", len(records), outcomes)
    return {"batchItemFailures": failures}


def delivery_handler(event: Any, context: Any) -> dict[str, Any]:
    delivery = build_delivery_service(load_settings())
    return asyncio.run(process_records(_records(event), delivery))
