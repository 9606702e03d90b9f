"""
Shared fixtures: an in-memory stand-in for the Postgres layer (app.db) so API and worker
tests run without Postgres or Redis.
"""
import itertools
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from app import db
from app.config import settings
from app.main import app
from app.order_state import INITIAL_STATUS, OrderStatus, is_valid_transition, parse_status
from app.payments import INITIAL_PAYMENT_STATUS


class FakeOrderStore:
    """Mirrors the app.db order functions, applying the same lifecycle checks."""

    def __init__(self):
        self.orders: dict[str, dict] = {}
        self.history: dict[str, list[dict]] = {}
        self.idempotency_keys: set[str] = set()
        self._ids = itertools.count(1)

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    def seed(
        self,
        status: OrderStatus = INITIAL_STATUS,
        customer_id: str = "customer123",
        items: list[dict] | None = None,
    ) -> str:
        """Insert an order directly at the given status. Returns its order_id."""
        n = next(self._ids)
        order_id = f"order{n}"
        items = items if items is not None else [{
            "product_id": "product1",
            "product_name": "Test Product",
            "quantity": 2,
            "price": 50.0,
            "seller_id": None,
            "subtotal": 100.0,
        }]
        self.orders[order_id] = {
            "order_id": order_id,
            "order_number": f"ORD-20260101-{n:04d}",
            "customer_id": customer_id,
            "customer_email": f"{customer_id}@example.com",
            "items": items,
            "subtotal": 100.0,
            "tax": 0.0,
            "shipping": 0.0,
            "discount": 0.0,
            "coupon_code": None,
            "total": 100.0,
            "order_status": status.value,
            "payment_status": INITIAL_PAYMENT_STATUS.value,
            "payment_method": "credit_card",
            "shipping_address": None,
            "notes": None,
            "created_at": self._now(),
            "updated_at": self._now(),
        }
        self.history[order_id] = [{"from_status": None, "to_status": status.value}]
        return order_id

    def _get(self, order_id: str) -> dict:
        if order_id not in self.orders:
            raise db.OrderNotFoundError(order_id)
        return self.orders[order_id]

    async def create_order(self, pool, customer_id, customer_email, total, notes=None, items=None, **fields):
        order_id = self.seed(INITIAL_STATUS, customer_id, items=items or [])
        self.orders[order_id].update(customer_email=customer_email, total=total, notes=notes, **fields)
        return dict(self.orders[order_id])

    async def get_order(self, pool, order_id):
        return dict(self._get(order_id))

    def _matches(self, status=None, customer_id=None, seller_id=None) -> list[dict]:
        return [
            o for o in reversed(list(self.orders.values()))
            if (status is None or o["order_status"] == status.value)
            and (customer_id is None or o["customer_id"] == customer_id)
            and (seller_id is None or any(i.get("seller_id") == seller_id for i in o["items"]))
        ]

    async def list_orders(self, pool, status=None, customer_id=None, page=1, limit=20, seller_id=None):
        matches = self._matches(status, customer_id, seller_id)
        start = (page - 1) * limit
        return [dict(o) for o in matches[start:start + limit]], len(matches)

    async def get_seller_stats(self, pool, seller_id):
        return db.summarize_seller_orders(seller_id, self._matches(seller_id=seller_id))

    def _move(self, order: dict, current: OrderStatus, new_status: OrderStatus, comment, changed_by) -> dict:
        order["order_status"] = new_status.value
        order["updated_at"] = self._now()
        self.history[order["order_id"]].append({
            "from_status": current.value,
            "to_status": new_status.value,
            "comment": comment,
            "changed_by": changed_by,
        })
        return dict(order) | {"previous_status": current.value}

    async def apply_status_transition(
        self, pool, order_id, new_status, comment=None, changed_by=None, idempotency_key=None,
    ):
        new_status = parse_status(new_status)
        order = self._get(order_id)
        if idempotency_key is not None and idempotency_key in self.idempotency_keys:
            raise db.DuplicateEventError()
        current = parse_status(order["order_status"])
        if not is_valid_transition(current, new_status):
            raise db.IllegalTransitionError(current, new_status)
        if idempotency_key is not None:
            self.idempotency_keys.add(idempotency_key)
        return self._move(order, current, new_status, comment, changed_by)

    async def cancel_order(self, pool, order_id, comment=None, changed_by=None):
        order = self._get(order_id)
        current = parse_status(order["order_status"])
        if current == OrderStatus.CANCELLED:
            raise db.IllegalTransitionError(current, OrderStatus.CANCELLED, "Order is already cancelled")
        if not is_valid_transition(current, OrderStatus.CANCELLED):
            raise db.IllegalTransitionError(
                current, OrderStatus.CANCELLED, f"Cannot cancel order with status: {current.value}",
            )
        return self._move(order, current, OrderStatus.CANCELLED, comment, changed_by)

    async def update_payment_status(self, pool, order_id, payment_status):
        order = self._get(order_id)
        order["payment_status"] = payment_status.value
        order["updated_at"] = self._now()
        return dict(order)

    async def get_status_history(self, pool, order_id):
        self._get(order_id)
        return [dict(h, order_id=order_id) for h in self.history[order_id]]


@pytest.fixture(autouse=True)
def no_notifications(monkeypatch):
    monkeypatch.setattr(settings, "notifications_enabled", False)


@pytest.fixture
def store(monkeypatch) -> FakeOrderStore:
    fake = FakeOrderStore()
    for name in (
        "create_order",
        "get_order",
        "list_orders",
        "get_seller_stats",
        "apply_status_transition",
        "cancel_order",
        "update_payment_status",
        "get_status_history",
    ):
        monkeypatch.setattr(db, name, getattr(fake, name))
    return fake


@pytest.fixture
def client(store):
    app.dependency_overrides[db.get_pool] = lambda: None
    yield TestClient(app)
    app.dependency_overrides.clear()
