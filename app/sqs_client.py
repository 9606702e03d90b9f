"""
AWS SQS helpers for the status-change queue. Used when SQS_QUEUE_URL is set.
Sync boto3 calls; async callers run them in a thread.
"""
import asyncio
import json
from typing import Any

import boto3

from app.config import settings

_sqs_client: Any = None


def _get_client():
    global _sqs_client
    if _sqs_client is None:
        _sqs_client = boto3.client("sqs", region_name=settings.aws_region)
    return _sqs_client


async def send_message(body: dict, queue_url: str | None = None) -> None:
    """Send message to the main queue, or to queue_url when given."""
    client = _get_client()
    await asyncio.to_thread(
        client.send_message,
        QueueUrl=queue_url or settings.sqs_queue_url,
        MessageBody=json.dumps(body),
    )


def receive_messages(max_number: int = 10, wait_seconds: int = 5, queue_url: str | None = None) -> list[dict]:
    """Returns list of {ReceiptHandle, Body, Attributes}."""
    url = queue_url or settings.sqs_queue_url
    if not url:
        return []
    resp = _get_client().receive_message(
        QueueUrl=url,
        MaxNumberOfMessages=max_number,
        WaitTimeSeconds=wait_seconds,
        MessageAttributeNames=["All"],
        AttributeNames=["ApproximateReceiveCount"],
    )
    return resp.get("Messages") or []


def delete_message(receipt_handle: str, queue_url: str | None = None) -> None:
    url = queue_url or settings.sqs_queue_url
    if not url:
        return
    _get_client().delete_message(QueueUrl=url, ReceiptHandle=receipt_handle)


def change_message_visibility(receipt_handle: str, visibility_timeout: int) -> None:
    """Delay next delivery of a failed message (backoff)."""
    _get_client().change_message_visibility(
        QueueUrl=settings.sqs_queue_url,
        ReceiptHandle=receipt_handle,
        VisibilityTimeout=visibility_timeout,
    )


async def get_queue_depth() -> tuple[int, int]:
    """Return (ApproximateNumberOfMessages, ApproximateNumberOfMessagesNotVisible) for metrics."""
    if not settings.sqs_queue_url:
        return 0, 0
    client = _get_client()

    def _get():
        r = client.get_queue_attributes(
            QueueUrl=settings.sqs_queue_url,
            AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
        )
        attrs = r.get("Attributes") or {}
        return (
            int(attrs.get("ApproximateNumberOfMessages", 0)),
            int(attrs.get("ApproximateNumberOfMessagesNotVisible", 0)),
        )

    return await asyncio.to_thread(_get)
