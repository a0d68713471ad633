from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

import pytest
from botocore.exceptions import ClientError

from occasion_notifier.ledger import (
    DynamoSentLedger,
    FileSentLedger,
    InMemorySentLedger,
    LedgerUnavailableError,
)
from occasion_notifier.models import LedgerEntry

ENTRY = LedgerEntry(user_id="u1", message_key="birthday#2026")


@dataclass
class FakeLedgerTable:
    items: set[tuple[str, str]] = field(default_factory=set)
    error_code: str | None = None
    calls: list[dict] = field(default_factory=list)

    def put_item(self, **kwargs) -> dict:
        self.calls.append(kwargs)
        if self.error_code is not None:
            raise ClientError({"Error": {"Code": self.error_code, "Message": "boom"}}, "PutItem")
        key = (kwargs["Item"]["userId"], kwargs["Item"]["messageKey"])
        if key in self.items:
            raise ClientError(
                {"Error": {"Code": "ConditionalCheckFailedException", "Message": "exists"}},
                "PutItem",
            )
        self.items.add(key)
        return {}


def test_in_memory_ledger_records_once() -> None:
    ledger = InMemorySentLedger()

    assert ledger.try_record(ENTRY) is True
    assert ledger.try_record(ENTRY) is False
    assert ledger.try_record(LedgerEntry(user_id="u1", message_key="birthday#2027")) is True
    assert len(ledger) == 2


def test_in_memory_ledger_single_winner_under_concurrency() -> None:
    ledger = InMemorySentLedger()
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: ledger.try_record(ENTRY), range(50)))

    assert results.count(True) == 1


def test_file_ledger_records_once(tmp_path: Path) -> None:
    ledger = FileSentLedger(tmp_path / "sent")

    assert ledger.try_record(ENTRY) is True
    assert ledger.try_record(ENTRY) is False
    assert ENTRY in ledger
    assert LedgerEntry(user_id="u1", message_key="anniversary#2026") not in ledger


def test_file_ledger_shared_between_instances(tmp_path: Path) -> None:
    first = FileSentLedger(tmp_path / "sent")
    second = FileSentLedger(tmp_path / "sent")

    assert first.try_record(ENTRY) is True
    assert second.try_record(ENTRY) is False


def test_file_ledger_single_winner_under_concurrency(tmp_path: Path) -> None:
    ledger = FileSentLedger(tmp_path / "sent")
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: ledger.try_record(ENTRY), range(50)))

    assert results.count(True) == 1


def test_dynamo_ledger_uses_conditional_put() -> None:
    table = FakeLedgerTable()
    ledger = DynamoSentLedger(table)

    assert ledger.try_record(ENTRY) is True
    assert table.calls[0] == {
        "Item": {"userId": "u1", "messageKey": "birthday#2026"},
        "ConditionExpression": "attribute_not_exists(messageKey)",
    }


def test_dynamo_ledger_condition_failure_is_duplicate() -> None:
    table = FakeLedgerTable()
    ledger = DynamoSentLedger(table)

    assert ledger.try_record(ENTRY) is True
    assert ledger.try_record(ENTRY) is False
    assert len(table.items) == 1


def test_dynamo_ledger_other_errors_are_unavailable() -> None:
    ledger = DynamoSentLedger(FakeLedgerTable(error_code="ProvisionedThroughputExceededException"))

    with pytest.raises(LedgerUnavailableError):
        ledger.try_record(ENTRY)
