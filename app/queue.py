"""
Push status-change events to queue. Backend: Redis (LPUSH) or AWS SQS when SQS_QUEUE_URL is set.
"""
import asyncio
import json
import logging

from app.config import settings
from app.redis_client import get_redis
from app.sqs_client import delete_message, receive_messages, send_message

logger = logging.getLogger(__name__)

STATUS_QUEUE_KEY = "queue:order_status_events"
STATUS_DLQ_KEY = "queue:order_status_events:dlq"

REQUIRED_FIELDS = ("event_id", "order_id", "status")


def make_body(
    event_id: str,
    order_id: str,
    status: str,
    comment: str | None = None,
    changed_by: str | None = None,
    attempts: int = 0,
) -> dict:
    return {
        "event_id": event_id,
        "order_id": order_id,
        "status": status,
        "comment": comment,
        "changed_by": changed_by,
        "attempts": attempts,
    }


def parse_body(raw: str) -> dict | None:
    """Decode a queued message. None if it is not JSON, lacks a required field or has a non-integer attempts."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or not all(data.get(f) for f in REQUIRED_FIELDS):
        return None
    try:
        attempts = int(data.get("attempts") or 0)
    except (TypeError, ValueError):
        return None
    return make_body(
        event_id=data["event_id"],
        order_id=data["order_id"],
        status=data["status"],
        comment=data.get("comment"),
        changed_by=data.get("changed_by"),
        attempts=attempts,
    )


async def push_to_queue(
    event_id: str,
    order_id: str,
    status: str,
    comment: str | None = None,
    changed_by: str | None = None,
    attempts: int = 0,
) -> None:
    body = make_body(event_id, order_id, status, comment, changed_by, attempts)
    if settings.sqs_queue_url:
        await send_message(body)
    else:
        r = await get_redis()
        await r.lpush(STATUS_QUEUE_KEY, json.dumps(body))


async def replay_sqs_dlq(limit: int = 100) -> int:
    """
    Read messages from the SQS DLQ, re-send them to the main queue with attempts reset,
    delete them from the DLQ. Malformed messages are deleted without replay.
    Returns number of DLQ messages consumed.
    """
    if not settings.sqs_dlq_url or not settings.sqs_queue_url:
        return 0
    dlq = settings.sqs_dlq_url
    replayed = 0
    while replayed < limit:
        messages = await asyncio.to_thread(receive_messages, 10, 0, dlq)
        if not messages:
            break
        for msg in messages:
            if replayed >= limit:
                break
            receipt = msg.get("ReceiptHandle") or ""
            body = parse_body(msg.get("Body") or "{}")
            if body is not None:
                body["attempts"] = 0
                await send_message(body)
            else:
                logger.warning("Discarding malformed DLQ message")
            await asyncio.to_thread(delete_message, receipt, dlq)
            replayed += 1
    return replayed
