from __future__ import annotations

from typing import Any

import boto3

from occasion_notifier.settings import Settings


def _client_args(settings: Settings) -> dict[str, Any]:
    args: dict[str, Any] = {}
    if settings.aws_region:
        args["region_name"] = settings.aws_region
    if settings.aws_endpoint_url:
        args["endpoint_url"] = settings.aws_endpoint_url
    return args


def dynamodb_table(settings: Settings, table_name: str) -> Any:
    return boto3.resource("dynamodb", **_client_args(settings)).Table(table_name)


def sqs_client(settings: Settings) -> Any:
    return boto3.client("sqs", **_client_args(settings))


def sns_client(settings: Settings) -> Any:
    return boto3.client("sns", **_client_args(settings))
