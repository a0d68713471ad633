from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    event_type: str
    trigger_time: str
    users_table: str | None
    users_timezone_index: str
    users_file: Path
    sent_table: str | None
    sent_ledger_dir: Path
    queue_url: str | None
    topic_arn: str | None
    webhook_url: str | None
    telegram_bot_token: str | None
    telegram_chat_id: int | None
    aws_region: str | None
    aws_endpoint_url: str | None


def _optional_env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name)
        if value is not None and value.strip():
            return value.strip()
    return None


def required_env(name: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        raise ValueError(f"Missing required environment variable: {name}")
    return value.strip()


def load_settings() -> Settings:
    root = Path.cwd()

    chat_id = _optional_env("TELEGRAM_CHAT_ID")

    # EVENT_TYPE is validated by the pipeline, before any work starts.
    return Settings(
        event_type=os.getenv("EVENT_TYPE", "birthday"),
        trigger_time=os.getenv("TRIGGER_TIME", "09:00"),
        users_table=_optional_env("USERS_TABLE"),
        users_timezone_index=os.getenv("USERS_TIMEZONE_INDEX", "timezone-index"),
        users_file=Path(os.getenv("USERS_FILE", root / "config" / "users.toml")),
        sent_table=_optional_env("SENT_TABLE"),
        sent_ledger_dir=Path(os.getenv("SENT_LEDGER_DIR", root / "data" / "sent_ledger")),
        queue_url=_optional_env("QUEUE_URL"),
        topic_arn=_optional_env("TOPIC_ARN"),
        webhook_url=_optional_env("WEBHOOK_URL", "REQUEST_BIN_URL"),
        telegram_bot_token=_optional_env("TELEGRAM_BOT_TOKEN"),
        telegram_chat_id=int(chat_id) if chat_id is not None else None,
        aws_region=_optional_env("AWS_REGION", "AWS_DEFAULT_REGION"),
        aws_endpoint_url=_optional_env("AWS_ENDPOINT_URL"),
    )
