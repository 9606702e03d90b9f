import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app import db, notifications
from app.config import settings
from app.metrics import orders_created_total, record_rejection, record_transition
from app.order_state import (
    FORWARD_LIFECYCLE,
    INITIAL_STATUS,
    TERMINAL_STATUSES,
    OrderStatus,
    allowed_next_statuses,
    parse_status,
)
from app.payments import PaymentMethod, PaymentStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

# NUMERIC(12, 2) ceiling
MAX_AMOUNT = 9_999_999_999.99


class OrderItemBody(BaseModel):
    product_id: str = Field(..., min_length=1)
    product_name: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, le=MAX_AMOUNT)
    seller_id: str | None = None
    subtotal: float = Field(..., ge=0, le=MAX_AMOUNT)


class ShippingAddressBody(BaseModel):
    name: str | None = None
    mobile: str | None = None
    email: str | None = None
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class CreateOrderBody(BaseModel):
    customer_id: str = Field(..., min_length=1)
    customer_email: str = Field(..., min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")
    items: list[OrderItemBody] = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0, le=MAX_AMOUNT)
    tax: float = Field(default=0, ge=0, le=MAX_AMOUNT)
    shipping: float = Field(default=0, ge=0, le=MAX_AMOUNT)
    discount: float = Field(default=0, ge=0, le=MAX_AMOUNT)
    coupon_code: str | None = None
    total: float = Field(..., ge=0, le=MAX_AMOUNT)
    payment_method: PaymentMethod
    shipping_address: ShippingAddressBody
    notes: str | None = None


class UpdateStatusBody(BaseModel):
    # Plain string: unknown values must surface as InvalidStatusError, not a schema error
    status: str = Field(..., description="Requested order status, e.g. CONFIRMED")
    comment: str | None = None
    changed_by: str | None = None


class UpdatePaymentStatusBody(BaseModel):
    payment_status: PaymentStatus


class CancelOrderBody(BaseModel):
    comment: str | None = None
    changed_by: str | None = None


def _ok(data: dict, message: str | None = None, status_code: int = 200) -> JSONResponse:
    content: dict = {"success": True}
    if message:
        content["message"] = message
    content["data"] = data
    return JSONResponse(status_code=status_code, content=content)


def _page(orders: list[dict], page: int, limit: int, total: int) -> dict:
    return {
        "orders": orders,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


@router.get("/lifecycle")
async def lifecycle() -> JSONResponse:
    """Status vocabulary and the legal transitions out of each status."""
    return _ok({
        "statuses": [s.value for s in OrderStatus],
        "initial": INITIAL_STATUS.value,
        "terminal": [s.value for s in OrderStatus if s in TERMINAL_STATUSES],
        "forward": [s.value for s in FORWARD_LIFECYCLE],
        "transitions": {s.value: [n.value for n in allowed_next_statuses(s)] for s in OrderStatus},
    })


@router.post("")
async def create_order(body: CreateOrderBody, pool=Depends(db.get_pool)) -> JSONResponse:
    order = await db.create_order(
        pool,
        customer_id=body.customer_id,
        customer_email=body.customer_email,
        total=body.total,
        notes=body.notes,
        items=[item.model_dump() for item in body.items],
        subtotal=body.subtotal,
        tax=body.tax,
        shipping=body.shipping,
        discount=body.discount,
        coupon_code=body.coupon_code,
        payment_method=body.payment_method.value,
        shipping_address=body.shipping_address.model_dump(),
    )
    orders_created_total.inc()
    await notifications.publish_new_order_alert(order)
    return _ok({"order": order}, message="Order created successfully", status_code=201)


@router.get("")
async def list_orders(
    status: str | None = None,
    customer_id: str | None = None,
    seller_id: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    pool=Depends(db.get_pool),
) -> JSONResponse:
    status_filter = parse_status(status) if status is not None else None
    limit = min(limit or settings.default_page_size, settings.max_page_size)
    orders, total = await db.list_orders(
        pool, status=status_filter, customer_id=customer_id, seller_id=seller_id, page=page, limit=limit,
    )
    return _ok(_page(orders, page, limit, total))


@router.get("/sellers/{seller_id}/orders")
async def list_seller_orders(
    seller_id: str,
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    pool=Depends(db.get_pool),
) -> JSONResponse:
    """Orders containing at least one item sold by seller_id, newest first."""
    limit = min(limit or settings.default_page_size, settings.max_page_size)
    orders, total = await db.list_orders(pool, seller_id=seller_id, page=page, limit=limit)
    return _ok(_page(orders, page, limit, total))


@router.get("/sellers/{seller_id}/stats")
async def seller_stats(seller_id: str, pool=Depends(db.get_pool)) -> JSONResponse:
    stats = await db.get_seller_stats(pool, seller_id)
    return _ok(stats)


@router.get("/{order_id}")
async def get_order(order_id: str, pool=Depends(db.get_pool)) -> JSONResponse:
    order = await db.get_order(pool, order_id)
    return _ok({"order": order})


@router.get("/{order_id}/history")
async def get_history(order_id: str, pool=Depends(db.get_pool)) -> JSONResponse:
    history = await db.get_status_history(pool, order_id)
    return _ok({"history": history})


@router.patch("/{order_id}/status")
async def update_status(order_id: str, body: UpdateStatusBody, pool=Depends(db.get_pool)) -> JSONResponse:
    """
    Move an order to the requested status. The transition is re-validated against the status
    read under the row lock, so a stale client view cannot force an illegal move.
    409 on an illegal transition, 422 on an unknown status.
    """
    requested = parse_status(body.status)
    order = await db.apply_status_transition(
        pool, order_id, requested, comment=body.comment, changed_by=body.changed_by,
    )
    record_transition(order["previous_status"], order["order_status"])
    await notifications.publish_order_update(order)
    return _ok({"order": order}, message="Order status updated successfully")


@router.patch("/{order_id}/payment-status")
async def update_payment_status(
    order_id: str,
    body: UpdatePaymentStatusBody,
    pool=Depends(db.get_pool),
) -> JSONResponse:
    order = await db.update_payment_status(pool, order_id, body.payment_status)
    return _ok({"order": order}, message="Payment status updated successfully")


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    body: CancelOrderBody | None = None,
    pool=Depends(db.get_pool),
) -> JSONResponse:
    body = body or CancelOrderBody()
    try:
        order = await db.cancel_order(pool, order_id, comment=body.comment, changed_by=body.changed_by)
    except db.IllegalTransitionError as e:
        logger.warning("Cancel rejected for order_id=%s: %s", order_id, e.message)
        record_rejection(e.current_status.value, e.requested_status.value)
        return JSONResponse(status_code=400, content={"success": False, "message": e.message})
    record_transition(order["previous_status"], order["order_status"])
    await notifications.publish_order_update(order)
    return _ok({"order": order}, message="Order cancelled successfully")
