from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from occasion_notifier import aws
from occasion_notifier.models import LedgerEntry
from occasion_notifier.settings import Settings

LOGGER = logging.getLogger(__name__)

_CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"


class LedgerUnavailableError(RuntimeError):
    pass


class SentLedger(Protocol):
    def try_record(self, entry: LedgerEntry) -> bool:
        """Insert the entry if absent. True only for the insert that created it."""
        ...


class InMemorySentLedger:
    def __init__(self) -> None:
        self._entries: set[LedgerEntry] = set()
        self._lock = threading.Lock()

    def try_record(self, entry: LedgerEntry) -> bool:
        with self._lock:
            if entry in self._entries:
                return False
            self._entries.add(entry)
            return True

    def __contains__(self, entry: object) -> bool:
        return entry in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def entry_filename(entry: LedgerEntry) -> str:
    digest = hashlib.sha256(f"{entry.user_id}|{entry.message_key}".encode("utf-8")).hexdigest()
    return f"{digest}.json"


class FileSentLedger:
    def __init__(self, directory: Path) -> None:
        self._directory = directory

    def try_record(self, entry: LedgerEntry) -> bool:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self._directory / entry_filename(entry)

        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            return False
        except OSError as exc:
            raise LedgerUnavailableError(f"Cannot write ledger entry {path}: {exc}") from exc

        payload = {"userId": entry.user_id, "messageKey": entry.message_key}
        with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
            json.dump(payload, file_obj)
            file_obj.write("\n")
        return True

    def __contains__(self, entry: object) -> bool:
        if not isinstance(entry, LedgerEntry):
            return False
        return (self._directory / entry_filename(entry)).exists()


class DynamoSentLedger:
    def __init__(self, table: Any) -> None:
        self._table = table

    def try_record(self, entry: LedgerEntry) -> bool:
        try:
            self._table.put_item(
                Item={"userId": entry.user_id, "messageKey": entry.message_key},
                ConditionExpression="attribute_not_exists(messageKey)",
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == _CONDITIONAL_CHECK_FAILED:
                return False
            raise LedgerUnavailableError(f"Ledger write failed for {entry.user_id}: {exc}") from exc
        except BotoCoreError as exc:
            raise LedgerUnavailableError(f"Ledger write failed for {entry.user_id}: {exc}") from exc
        return True


def build_sent_ledger(settings: Settings) -> SentLedger:
    if settings.sent_table:
        return DynamoSentLedger(aws.dynamodb_table(settings, settings.sent_table))
    return FileSentLedger(settings.sent_ledger_dir)
