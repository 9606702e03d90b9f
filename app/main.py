import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from app.config import settings
from app.db import IllegalTransitionError, OrderNotFoundError, close_pool, get_pool, init_schema
from app.metrics import (
    get_metrics_bytes,
    get_metrics_content_type,
    record_rejection,
    sqs_queue_messages_in_flight,
    sqs_queue_messages_waiting,
)
from app.order_state import InvalidStatusError
from app.redis_client import close_redis, get_redis
from app.routes import admin, events, orders
from app.sqs_client import get_queue_depth

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_redis()
    pool = await get_pool()
    await init_schema(pool)
    yield
    await close_pool()
    await close_redis()


app = FastAPI(title="Order Lifecycle Service", lifespan=lifespan)
app.include_router(orders.router)
app.include_router(events.router)
app.include_router(admin.router)


@app.exception_handler(InvalidStatusError)
async def invalid_status_handler(request: Request, exc: InvalidStatusError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"success": False, "message": str(exc)})


@app.exception_handler(IllegalTransitionError)
async def illegal_transition_handler(request: Request, exc: IllegalTransitionError) -> JSONResponse:
    logger.warning("Rejected transition on %s: %s", request.url.path, exc.message)
    record_rejection(exc.current_status.value, exc.requested_status.value)
    return JSONResponse(
        status_code=409,
        content={
            "success": False,
            "message": exc.message,
            "data": {
                "current_status": exc.current_status.value,
                "requested_status": exc.requested_status.value,
            },
        },
    )


@app.exception_handler(OrderNotFoundError)
async def order_not_found_handler(request: Request, exc: OrderNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"success": False, "message": "Order not found"})


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: transitions, ingested events, SQS queue depth (when using SQS)."""
    if settings.sqs_queue_url:
        try:
            waiting, in_flight = await get_queue_depth()
        except Exception:
            logger.exception("Could not read SQS queue depth")
        else:
            sqs_queue_messages_waiting.set(waiting)
            sqs_queue_messages_in_flight.set(in_flight)
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
