"""
Worker: pull status-change messages from Redis or AWS SQS and apply them to Postgres.
- Illegal transitions, unknown orders and unknown statuses are rejected once; never retried.
- Other failures: Redis gets exponential backoff + manual DLQ; SQS leaves the message for
  redelivery and relies on the queue's redrive policy for the DLQ.
- Prometheus /metrics on port 9090 (worker metrics).
- Graceful shutdown on SIGTERM.
Run: python -m app.worker
"""
import asyncio
import json
import logging
import signal
import sys
import threading
import time

import redis.asyncio as redis

from app import notifications
from app.config import settings
from app.db import (
    DuplicateEventError,
    IllegalTransitionError,
    OrderNotFoundError,
    apply_status_transition,
    close_pool,
    get_pool,
    init_schema,
)
from app.metrics import (
    messages_dlq_total,
    messages_failed_total,
    messages_processed_total,
    messages_rejected_total,
    record_rejection,
    record_transition,
)
from app.order_state import InvalidStatusError
from app.queue import STATUS_DLQ_KEY, STATUS_QUEUE_KEY, make_body, parse_body
from app.redis_client import close_redis
from app.sqs_client import change_message_visibility, delete_message, receive_messages

logger = logging.getLogger(__name__)

BRPOP_TIMEOUT = 5
GRACEFUL_SHUTDOWN_WAIT_SEC = 30
WORKER_METRICS_PORT = 9090
MAX_SQS_VISIBILITY_BACKOFF = 900

APPLIED = "applied"
DUPLICATE = "duplicate"
REJECTED = "rejected"


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(WORKER_METRICS_PORT)


async def apply_message(pool, msg: dict) -> str:
    """
    Apply one decoded status-change message. Returns APPLIED, DUPLICATE or REJECTED.
    Anything else raised is a transient failure and the caller retries.
    """
    event_id = msg["event_id"]
    try:
        order = await apply_status_transition(
            pool,
            msg["order_id"],
            msg["status"],
            comment=msg.get("comment"),
            changed_by=msg.get("changed_by"),
            idempotency_key=event_id,
        )
    except DuplicateEventError:
        logger.info("Duplicate event_id=%s (UNIQUE constraint), skipped", event_id)
        return DUPLICATE
    except IllegalTransitionError as e:
        logger.warning("Rejected event_id=%s order_id=%s: %s", event_id, msg["order_id"], e.message)
        record_rejection(e.current_status.value, e.requested_status.value)
        return REJECTED
    except (OrderNotFoundError, InvalidStatusError) as e:
        logger.warning("Rejected event_id=%s: %s", event_id, e)
        return REJECTED

    record_transition(order["previous_status"], order["order_status"])
    await notifications.publish_order_update(order)
    logger.info("Processed event_id=%s order_id=%s -> %s", event_id, order["order_id"], order["order_status"])
    return APPLIED


def _count_outcome(outcome: str) -> None:
    if outcome == REJECTED:
        messages_rejected_total.inc()
    else:
        messages_processed_total.inc()


async def process_one_redis(
    r: redis.Redis,
    pool,
    raw: str,
    sem: asyncio.Semaphore,
) -> None:
    msg = parse_body(raw)
    if msg is None:
        logger.warning("Malformed message from queue, skipping")
        return
    event_id = msg["event_id"]
    attempts = msg["attempts"]

    async with sem:
        try:
            outcome = await apply_message(pool, msg)
        except Exception as e:
            messages_failed_total.inc()
            logger.exception("Failed to process event_id=%s (attempt %d): %s", event_id, attempts + 1, e)
            next_attempts = attempts + 1
            if next_attempts >= settings.worker_max_retries:
                dlq_message = make_body(
                    event_id, msg["order_id"], msg["status"], msg["comment"], msg["changed_by"], next_attempts,
                )
                dlq_message["last_error"] = str(e)
                dlq_message["failed_at"] = time.time()
                await r.lpush(STATUS_DLQ_KEY, json.dumps(dlq_message))
                messages_dlq_total.inc()
                logger.warning("Moved event_id=%s to DLQ after %d attempts", event_id, settings.worker_max_retries)
            else:
                backoff_sec = 2 ** attempts
                logger.info(
                    "Re-queuing event_id=%s in %ds (attempt %d/%d)",
                    event_id, backoff_sec, next_attempts, settings.worker_max_retries,
                )
                await asyncio.sleep(backoff_sec)
                retry_message = make_body(
                    event_id, msg["order_id"], msg["status"], msg["comment"], msg["changed_by"], next_attempts,
                )
                await r.lpush(STATUS_QUEUE_KEY, json.dumps(retry_message))
        else:
            _count_outcome(outcome)


async def process_one_sqs(
    pool,
    body: str,
    receipt_handle: str,
    receive_count: int,
    sem: asyncio.Semaphore,
) -> None:
    msg = parse_body(body)
    if msg is None:
        logger.warning("Malformed message from SQS, deleting")
        await asyncio.to_thread(delete_message, receipt_handle)
        return
    event_id = msg["event_id"]

    async with sem:
        try:
            outcome = await apply_message(pool, msg)
        except Exception as e:
            messages_failed_total.inc()
            logger.exception("Failed to process event_id=%s (receive #%d): %s", event_id, receive_count, e)
            # Not deleted: reappears after visibility timeout; after max receives SQS moves it to DLQ
            backoff = min(2 ** receive_count, MAX_SQS_VISIBILITY_BACKOFF)
            await asyncio.to_thread(change_message_visibility, receipt_handle, backoff)
        else:
            _count_outcome(outcome)
            await asyncio.to_thread(delete_message, receipt_handle)


async def _drain(tasks: set[asyncio.Task]) -> None:
    if not tasks:
        return
    logger.info("Graceful shutdown: waiting for %d in-flight task(s) (max %ds) ...", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
    _, pending = await asyncio.wait(tasks, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC, return_when=asyncio.ALL_COMPLETED)
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def run_worker_redis(shutdown_event: asyncio.Event) -> None:
    pool = await get_pool()
    await init_schema(pool)
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Schema ready. Backend=Redis. Listening on %s (concurrency=%d, max_retries=%d) ...",
        STATUS_QUEUE_KEY,
        settings.worker_concurrency,
        settings.worker_max_retries,
    )
    r = redis.from_url(settings.redis_url, decode_responses=True)
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            result = await r.brpop(STATUS_QUEUE_KEY, timeout=BRPOP_TIMEOUT)
            if result is None:
                continue
            _key, raw = result
            t = asyncio.create_task(process_one_redis(r, pool, raw, sem))
            tasks.add(t)
            t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)
        await r.aclose()
        await close_pool()
        await close_redis()
        logger.info("Worker stopped.")


async def run_worker_sqs(shutdown_event: asyncio.Event) -> None:
    pool = await get_pool()
    await init_schema(pool)
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Schema ready. Backend=SQS. Queue=%s (concurrency=%d) ...",
        settings.sqs_queue_url,
        settings.worker_concurrency,
    )
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            messages = await asyncio.to_thread(receive_messages, 10, 5)
            for m in messages:
                body = m.get("Body") or "{}"
                receipt = m.get("ReceiptHandle") or ""
                attrs = m.get("Attributes") or {}
                receive_count = int(attrs.get("ApproximateReceiveCount", 1))
                t = asyncio.create_task(process_one_sqs(pool, body, receipt, receive_count, sem))
                tasks.add(t)
                t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)
        await close_pool()
        await close_redis()
        logger.info("Worker stopped.")


async def run_worker(shutdown_event: asyncio.Event) -> None:
    if settings.sqs_queue_url:
        await run_worker_sqs(shutdown_event)
    else:
        await run_worker_redis(shutdown_event)


def main() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", WORKER_METRICS_PORT)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
