"""
Async Postgres: orders (current status per order) + order_status_history (one row per transition).
Every status change runs in a single transaction: lock the order row, re-validate against the
lifecycle state machine, update the status, then append the history row.
"""
import json
import logging
import random
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import asyncpg
from asyncpg.exceptions import UniqueViolationError

from app.config import settings
from app.order_state import INITIAL_STATUS, OrderStatus, is_valid_transition, parse_status
from app.payments import INITIAL_PAYMENT_STATUS, PaymentStatus

logger = logging.getLogger(__name__)

_pool: asyncpg.Pool | None = None

ORDER_NUMBER_ATTEMPTS = 3

# Seller revenue excludes orders whose money went back to the customer
NON_REVENUE_STATUSES = frozenset({OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value})
SELLER_IN_PROGRESS_STATUSES = frozenset({
    OrderStatus.CONFIRMED.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.OUT_FOR_DELIVERY.value,
})


class DuplicateEventError(Exception):
    """Raised when idempotency_key was already recorded. Transaction will roll back."""


class OrderNotFoundError(Exception):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"order not found: {order_id}")


class IllegalTransitionError(Exception):
    """Raised when order status transition is not allowed. Transaction will roll back."""
    def __init__(
        self,
        current_status: OrderStatus,
        requested_status: OrderStatus,
        message: str | None = None,
    ):
        self.current_status = current_status
        self.requested_status = requested_status
        self.message = message or f"cannot move from {current_status.value} to {requested_status.value}"
        super().__init__(self.message)


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                order_id VARCHAR(64) PRIMARY KEY,
                order_number VARCHAR(64) NOT NULL UNIQUE,
                customer_id VARCHAR(255) NOT NULL,
                customer_email VARCHAR(255) NOT NULL,
                items JSONB NOT NULL DEFAULT '[]'::jsonb,
                subtotal NUMERIC(12, 2) NOT NULL DEFAULT 0 CHECK (subtotal >= 0),
                tax NUMERIC(12, 2) NOT NULL DEFAULT 0 CHECK (tax >= 0),
                shipping NUMERIC(12, 2) NOT NULL DEFAULT 0 CHECK (shipping >= 0),
                discount NUMERIC(12, 2) NOT NULL DEFAULT 0 CHECK (discount >= 0),
                coupon_code VARCHAR(64),
                total NUMERIC(12, 2) NOT NULL CHECK (total >= 0),
                order_status VARCHAR(32) NOT NULL,
                payment_status VARCHAR(32) NOT NULL DEFAULT 'PENDING',
                payment_method VARCHAR(32),
                shipping_address JSONB,
                notes TEXT,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_customer_id ON orders(customer_id);
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_order_status ON orders(order_status);
        """)
        # items @> '[{"seller_id": ...}]' lookups for seller views
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_items ON orders USING GIN (items jsonb_path_ops);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_status_history (
                id UUID PRIMARY KEY,
                order_id VARCHAR(64) NOT NULL REFERENCES orders(order_id) ON DELETE CASCADE,
                from_status VARCHAR(32),
                to_status VARCHAR(32) NOT NULL,
                comment TEXT,
                changed_by VARCHAR(255),
                idempotency_key VARCHAR(255) UNIQUE,
                created_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_order_status_history_order_id
            ON order_status_history(order_id);
        """)


def generate_order_number(now: datetime | None = None) -> str:
    """ORD-YYYYMMDD-NNNN, with a random 4-digit suffix."""
    now = now or datetime.now(timezone.utc)
    return f"{settings.order_number_prefix}-{now:%Y%m%d}-{random.randint(0, 9999):04d}"


def _amount(value):
    return float(value) if isinstance(value, Decimal) else value


def _json_column(value):
    # asyncpg hands JSONB back as text unless a codec is registered
    return json.loads(value) if isinstance(value, str) else value


def _order_to_dict(row: asyncpg.Record) -> dict:
    return {
        "order_id": row["order_id"],
        "order_number": row["order_number"],
        "customer_id": row["customer_id"],
        "customer_email": row["customer_email"],
        "items": _json_column(row["items"]) or [],
        "subtotal": _amount(row["subtotal"]),
        "tax": _amount(row["tax"]),
        "shipping": _amount(row["shipping"]),
        "discount": _amount(row["discount"]),
        "coupon_code": row["coupon_code"],
        "total": _amount(row["total"]),
        "order_status": row["order_status"],
        "payment_status": row["payment_status"],
        "payment_method": row["payment_method"],
        "shipping_address": _json_column(row["shipping_address"]),
        "notes": row["notes"],
        "created_at": row["created_at"].isoformat() if row["created_at"] else None,
        "updated_at": row["updated_at"].isoformat() if row["updated_at"] else None,
    }


def _history_to_dict(row: asyncpg.Record) -> dict:
    return {
        "id": str(row["id"]),
        "order_id": row["order_id"],
        "from_status": row["from_status"],
        "to_status": row["to_status"],
        "comment": row["comment"],
        "changed_by": row["changed_by"],
        "created_at": row["created_at"].isoformat() if row["created_at"] else None,
    }


async def _insert_history(
    conn: asyncpg.Connection,
    order_id: str,
    from_status: OrderStatus | None,
    to_status: OrderStatus,
    comment: str | None,
    changed_by: str | None,
    idempotency_key: str | None = None,
) -> None:
    await conn.execute(
        """
        INSERT INTO order_status_history
            (id, order_id, from_status, to_status, comment, changed_by, idempotency_key)
        VALUES ($1, $2, $3, $4, $5, $6, $7);
        """,
        uuid.uuid4(),
        order_id,
        from_status.value if from_status else None,
        to_status.value,
        comment,
        changed_by,
        idempotency_key,
    )


async def create_order(
    pool: asyncpg.Pool,
    customer_id: str,
    customer_email: str,
    total: float,
    notes: str | None = None,
    items: list[dict] | None = None,
    subtotal: float | None = None,
    tax: float = 0,
    shipping: float = 0,
    discount: float = 0,
    coupon_code: str | None = None,
    payment_method: str | None = None,
    shipping_address: dict | None = None,
) -> dict:
    """Insert a new order in the initial status and record the first history row."""
    order_id = uuid.uuid4().hex
    items = items or []
    if subtotal is None:
        subtotal = sum(item["subtotal"] for item in items)
    async with pool.acquire() as conn:
        for attempt in range(ORDER_NUMBER_ATTEMPTS):
            order_number = generate_order_number()
            try:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        """
                        INSERT INTO orders
                            (order_id, order_number, customer_id, customer_email, items,
                             subtotal, tax, shipping, discount, coupon_code, total,
                             order_status, payment_status, payment_method, shipping_address, notes)
                        VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8, $9, $10, $11,
                                $12, $13, $14, $15::jsonb, $16)
                        RETURNING *;
                        """,
                        order_id,
                        order_number,
                        customer_id,
                        customer_email,
                        json.dumps(items),
                        Decimal(str(subtotal)),
                        Decimal(str(tax)),
                        Decimal(str(shipping)),
                        Decimal(str(discount)),
                        coupon_code,
                        Decimal(str(total)),
                        INITIAL_STATUS.value,
                        INITIAL_PAYMENT_STATUS.value,
                        payment_method,
                        json.dumps(shipping_address) if shipping_address is not None else None,
                        notes,
                    )
                    await _insert_history(conn, order_id, None, INITIAL_STATUS, "Order created", customer_id)
            except UniqueViolationError:
                logger.warning("Order number collision %s (attempt %d)", order_number, attempt + 1)
                continue
            logger.info("Created order_id=%s number=%s", order_id, order_number)
            return _order_to_dict(row)
    raise RuntimeError(f"could not allocate a unique order number after {ORDER_NUMBER_ATTEMPTS} attempts")


async def get_order(pool: asyncpg.Pool, order_id: str) -> dict:
    async with pool.acquire() as conn:
        row = await conn.fetchrow("SELECT * FROM orders WHERE order_id = $1;", order_id)
    if row is None:
        raise OrderNotFoundError(order_id)
    return _order_to_dict(row)


def _seller_filter(seller_id: str) -> str:
    return json.dumps([{"seller_id": seller_id}])


async def list_orders(
    pool: asyncpg.Pool,
    status: OrderStatus | None = None,
    customer_id: str | None = None,
    page: int = 1,
    limit: int = 20,
    seller_id: str | None = None,
) -> tuple[list[dict], int]:
    """Newest first. Returns (orders on the requested page, total matching)."""
    clauses = []
    args: list = []
    if status is not None:
        args.append(status.value)
        clauses.append(f"order_status = ${len(args)}")
    if customer_id is not None:
        args.append(customer_id)
        clauses.append(f"customer_id = ${len(args)}")
    if seller_id is not None:
        args.append(_seller_filter(seller_id))
        clauses.append(f"items @> ${len(args)}::jsonb")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    async with pool.acquire() as conn:
        total = await conn.fetchval(f"SELECT COUNT(*) FROM orders {where};", *args)
        rows = await conn.fetch(
            f"""
            SELECT * FROM orders {where}
            ORDER BY created_at DESC
            LIMIT ${len(args) + 1} OFFSET ${len(args) + 2};
            """,
            *args,
            limit,
            (page - 1) * limit,
        )
    return [_order_to_dict(r) for r in rows], total


def summarize_seller_orders(seller_id: str, orders: list[dict]) -> dict:
    """
    Dashboard figures for one seller over the orders containing their items.
    Revenue counts only the seller's own item subtotals, and skips cancelled or refunded orders.
    """
    revenue = 0.0
    revenue_orders = 0
    pending = completed = processing = cancelled = 0
    for order in orders:
        status = order["order_status"]
        if status == OrderStatus.PENDING.value:
            pending += 1
        elif status == OrderStatus.DELIVERED.value:
            completed += 1
        elif status in SELLER_IN_PROGRESS_STATUSES:
            processing += 1
        elif status == OrderStatus.CANCELLED.value:
            cancelled += 1
        if status in NON_REVENUE_STATUSES:
            continue
        revenue += sum(
            float(item.get("subtotal") or 0)
            for item in order["items"]
            if item.get("seller_id") == seller_id
        )
        revenue_orders += 1
    total_orders = len(orders)
    return {
        "seller_id": seller_id,
        "totalRevenue": round(revenue, 2),
        "totalOrders": total_orders,
        "pendingOrders": pending,
        "processingOrders": processing,
        "completedOrders": completed,
        "cancelledOrders": cancelled,
        "averageOrderValue": round(revenue / revenue_orders, 2) if revenue_orders else 0.0,
        "completionRate": round(completed / total_orders * 100, 2) if total_orders else 0.0,
    }


async def get_seller_stats(pool: asyncpg.Pool, seller_id: str) -> dict:
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            "SELECT order_status, items FROM orders WHERE items @> $1::jsonb;",
            _seller_filter(seller_id),
        )
    orders = [{"order_status": r["order_status"], "items": _json_column(r["items"]) or []} for r in rows]
    return summarize_seller_orders(seller_id, orders)


async def _lock_order(conn: asyncpg.Connection, order_id: str) -> asyncpg.Record:
    row = await conn.fetchrow("SELECT * FROM orders WHERE order_id = $1 FOR UPDATE;", order_id)
    if row is None:
        raise OrderNotFoundError(order_id)
    return row


async def _update_status(
    conn: asyncpg.Connection,
    order_id: str,
    current: OrderStatus,
    new_status: OrderStatus,
    comment: str | None,
    changed_by: str | None,
    idempotency_key: str | None,
) -> asyncpg.Record:
    row = await conn.fetchrow(
        """
        UPDATE orders SET order_status = $1, updated_at = NOW()
        WHERE order_id = $2
        RETURNING *;
        """,
        new_status.value,
        order_id,
    )
    try:
        await _insert_history(conn, order_id, current, new_status, comment, changed_by, idempotency_key)
    except UniqueViolationError:
        raise DuplicateEventError()
    return row


async def apply_status_transition(
    pool: asyncpg.Pool,
    order_id: str,
    new_status: OrderStatus | str,
    comment: str | None = None,
    changed_by: str | None = None,
    idempotency_key: str | None = None,
) -> dict:
    """
    Move one order to new_status in a single transaction.
    - SELECT order FOR UPDATE, so concurrent writers for the same order serialize on the row lock.
    - An idempotency_key already in the history is a redelivery of an applied event: DuplicateEventError,
      checked before validation because the order has already moved on to the event's status.
    - Validate against the state machine using the status read under the lock.
    - UPDATE the order and append a history row (UNIQUE idempotency_key backs the check above).
    Raises OrderNotFoundError, IllegalTransitionError or DuplicateEventError; all roll back.
    """
    new_status = parse_status(new_status)
    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await _lock_order(conn, order_id)
            if idempotency_key is not None:
                seen = await conn.fetchval(
                    "SELECT 1 FROM order_status_history WHERE idempotency_key = $1;",
                    idempotency_key,
                )
                if seen is not None:
                    raise DuplicateEventError()
            current = parse_status(row["order_status"])
            if not is_valid_transition(current, new_status):
                raise IllegalTransitionError(current, new_status)
            updated = await _update_status(
                conn, order_id, current, new_status, comment, changed_by, idempotency_key,
            )
    logger.info("order_id=%s %s -> %s", order_id, current.value, new_status.value)
    return _order_to_dict(updated) | {"previous_status": current.value}


async def cancel_order(
    pool: asyncpg.Pool,
    order_id: str,
    comment: str | None = None,
    changed_by: str | None = None,
) -> dict:
    """Cancel an order that has not shipped yet."""
    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await _lock_order(conn, order_id)
            current = parse_status(row["order_status"])
            if current == OrderStatus.CANCELLED:
                raise IllegalTransitionError(current, OrderStatus.CANCELLED, "Order is already cancelled")
            if not is_valid_transition(current, OrderStatus.CANCELLED):
                raise IllegalTransitionError(
                    current, OrderStatus.CANCELLED, f"Cannot cancel order with status: {current.value}",
                )
            updated = await _update_status(
                conn, order_id, current, OrderStatus.CANCELLED, comment, changed_by, None,
            )
    logger.info("order_id=%s cancelled (was %s)", order_id, current.value)
    return _order_to_dict(updated) | {"previous_status": current.value}


async def update_payment_status(pool: asyncpg.Pool, order_id: str, payment_status: PaymentStatus) -> dict:
    """Record the payment provider's status. Independent of the order lifecycle."""
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            """
            UPDATE orders SET payment_status = $1, updated_at = NOW()
            WHERE order_id = $2
            RETURNING *;
            """,
            payment_status.value,
            order_id,
        )
    if row is None:
        raise OrderNotFoundError(order_id)
    logger.info("order_id=%s payment_status=%s", order_id, payment_status.value)
    return _order_to_dict(row)


async def get_status_history(pool: asyncpg.Pool, order_id: str) -> list[dict]:
    """Status history for order_id, oldest first. Raises OrderNotFoundError for unknown orders."""
    async with pool.acquire() as conn:
        exists = await conn.fetchval("SELECT 1 FROM orders WHERE order_id = $1;", order_id)
        if exists is None:
            raise OrderNotFoundError(order_id)
        rows = await conn.fetch(
            """
            SELECT * FROM order_status_history
            WHERE order_id = $1
            ORDER BY created_at ASC;
            """,
            order_id,
        )
    return [_history_to_dict(r) for r in rows]
