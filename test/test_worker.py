"""
Worker message handling: applied, duplicate, permanently rejected, retried, dead-lettered.
"""
import asyncio
import json

import pytest

from app import worker
from app.config import settings
from app.order_state import OrderStatus
from app.queue import STATUS_DLQ_KEY, STATUS_QUEUE_KEY, make_body, parse_body


class FakeRedis:
    def __init__(self):
        self.lists: dict[str, list[str]] = {}

    async def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)
        return len(self.lists[key])


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def apply_with_store(monkeypatch, store):
    monkeypatch.setattr(worker, "apply_status_transition", store.apply_status_transition)
    return store


def run_redis(r, raw: str) -> None:
    async def _run():
        await worker.process_one_redis(r, None, raw, asyncio.Semaphore(1))
    asyncio.run(_run())


def message(event_id: str, order_id: str, status: str, attempts: int = 0) -> str:
    return json.dumps(make_body(event_id, order_id, status, attempts=attempts))


def test_legal_transition_is_applied(fake_redis, apply_with_store) -> None:
    order_id = apply_with_store.seed(OrderStatus.PROCESSING)
    run_redis(fake_redis, message("evt-1", order_id, "SHIPPED"))
    assert apply_with_store.orders[order_id]["order_status"] == "SHIPPED"
    assert fake_redis.lists == {}


def test_redelivered_event_is_a_duplicate(apply_with_store) -> None:
    order_id = apply_with_store.seed(OrderStatus.PENDING)
    msg = parse_body(message("evt-2", order_id, "CONFIRMED"))
    assert asyncio.run(worker.apply_message(None, msg)) == worker.APPLIED
    # The order is CONFIRMED now; the same event again must not count as an illegal transition
    assert asyncio.run(worker.apply_message(None, msg)) == worker.DUPLICATE
    assert [h["to_status"] for h in apply_with_store.history[order_id]] == ["PENDING", "CONFIRMED"]


def test_redelivered_event_does_not_block_new_events(apply_with_store) -> None:
    order_id = apply_with_store.seed(OrderStatus.PENDING)
    first = parse_body(message("evt-2a", order_id, "CONFIRMED"))
    asyncio.run(worker.apply_message(None, first))
    asyncio.run(worker.apply_message(None, first))
    nxt = parse_body(message("evt-2b", order_id, "PROCESSING"))
    assert asyncio.run(worker.apply_message(None, nxt)) == worker.APPLIED


def test_illegal_transition_is_rejected_without_retry(fake_redis, apply_with_store) -> None:
    order_id = apply_with_store.seed(OrderStatus.SHIPPED)
    run_redis(fake_redis, message("evt-3", order_id, "CANCELLED"))
    assert apply_with_store.orders[order_id]["order_status"] == "SHIPPED"
    assert fake_redis.lists == {}


def test_unknown_order_is_rejected(apply_with_store) -> None:
    msg = parse_body(message("evt-4", "missing", "CONFIRMED"))
    assert asyncio.run(worker.apply_message(None, msg)) == worker.REJECTED


def test_unknown_status_is_rejected(apply_with_store) -> None:
    order_id = apply_with_store.seed(OrderStatus.PENDING)
    msg = parse_body(message("evt-5", order_id, "LOST"))
    assert asyncio.run(worker.apply_message(None, msg)) == worker.REJECTED


def test_malformed_message_is_dropped(fake_redis, apply_with_store) -> None:
    run_redis(fake_redis, "not json")
    run_redis(fake_redis, json.dumps({"event_id": "evt-6"}))
    assert fake_redis.lists == {}


def test_transient_failure_is_requeued(fake_redis, monkeypatch) -> None:
    async def broken(*args, **kwargs):
        raise ConnectionError("db down")

    async def no_sleep(seconds):
        return None

    monkeypatch.setattr(worker, "apply_status_transition", broken)
    monkeypatch.setattr(worker.asyncio, "sleep", no_sleep)
    run_redis(fake_redis, message("evt-7", "order1", "CONFIRMED"))

    requeued = [json.loads(m) for m in fake_redis.lists[STATUS_QUEUE_KEY]]
    assert len(requeued) == 1
    assert requeued[0]["event_id"] == "evt-7"
    assert requeued[0]["attempts"] == 1
    assert STATUS_DLQ_KEY not in fake_redis.lists


def test_exhausted_retries_go_to_dlq(fake_redis, monkeypatch) -> None:
    async def broken(*args, **kwargs):
        raise ConnectionError("db down")

    monkeypatch.setattr(worker, "apply_status_transition", broken)
    run_redis(fake_redis, message("evt-8", "order1", "CONFIRMED", attempts=settings.worker_max_retries - 1))

    dead = [json.loads(m) for m in fake_redis.lists[STATUS_DLQ_KEY]]
    assert len(dead) == 1
    assert dead[0]["attempts"] == settings.worker_max_retries
    assert dead[0]["last_error"] == "db down"
    assert STATUS_QUEUE_KEY not in fake_redis.lists


def test_sqs_message_is_deleted_after_rejection(monkeypatch, apply_with_store) -> None:
    deleted: list[str] = []
    monkeypatch.setattr(worker, "delete_message", lambda receipt: deleted.append(receipt))
    order_id = apply_with_store.seed(OrderStatus.REFUNDED)

    async def _run():
        await worker.process_one_sqs(
            None, message("evt-9", order_id, "PENDING"), "receipt-9", 1, asyncio.Semaphore(1),
        )

    asyncio.run(_run())
    assert deleted == ["receipt-9"]
    assert apply_with_store.orders[order_id]["order_status"] == "REFUNDED"


def test_sqs_transient_failure_extends_visibility(monkeypatch) -> None:
    visibility: list[tuple[str, int]] = []

    async def broken(*args, **kwargs):
        raise ConnectionError("db down")

    monkeypatch.setattr(worker, "apply_status_transition", broken)
    monkeypatch.setattr(worker, "delete_message", lambda receipt: pytest.fail("must not delete"))
    monkeypatch.setattr(
        worker, "change_message_visibility", lambda receipt, timeout: visibility.append((receipt, timeout)),
    )

    async def _run():
        await worker.process_one_sqs(
            None, message("evt-10", "order1", "CONFIRMED"), "receipt-10", 3, asyncio.Semaphore(1),
        )

    asyncio.run(_run())
    assert visibility == [("receipt-10", 8)]
