from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.metrics import status_events_ingested_total
from app.order_state import parse_status
from app.queue import push_to_queue
from app.redis_client import check_idempotency, idempotency_key, release_idempotency

router = APIRouter(prefix="/events", tags=["events"])


class StatusChangeBody(BaseModel):
    event_id: str = Field(..., min_length=1, description="Unique idempotency key for this event")
    order_id: str = Field(..., min_length=1, description="Order whose status should change")
    status: str = Field(..., description="Requested order status, e.g. SHIPPED")
    comment: str | None = Field(default=None, description="Free-form note kept in the status history")
    changed_by: str | None = Field(default=None, description="Reporting system or user")


@router.post("/status-change")
async def ingest_status_change(body: StatusChangeBody) -> JSONResponse:
    """
    Accept a status change for asynchronous processing by the worker.
    Idempotent: same event_id twice -> 200 (already processed). New event -> 202 Accepted.
    Whether the transition is legal is decided by the worker against the current stored status.
    """
    status = parse_status(body.status)

    key = idempotency_key(body.event_id)
    if await check_idempotency(key):
        return JSONResponse(
            status_code=200,
            content={"status": "already_processed", "event_id": body.event_id},
        )

    try:
        await push_to_queue(
            event_id=body.event_id,
            order_id=body.order_id,
            status=status.value,
            comment=body.comment,
            changed_by=body.changed_by,
        )
    except Exception:
        await release_idempotency(key)
        raise
    status_events_ingested_total.labels(status=status.value).inc()
    return JSONResponse(
        status_code=202,
        content={"status": "accepted", "event_id": body.event_id},
    )
