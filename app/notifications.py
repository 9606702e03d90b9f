"""
Order update broadcasts over Redis pub/sub.

Customers subscribe to orders:user:<customer_id> for status changes of their own orders;
back-office dashboards subscribe to orders:admin for newly placed orders.
"""
import json
import logging
from datetime import datetime, timezone

from redis.exceptions import RedisError

from app.config import settings
from app.redis_client import get_redis

logger = logging.getLogger(__name__)

ADMIN_CHANNEL = "orders:admin"


def user_channel(customer_id: str) -> str:
    return f"orders:user:{customer_id}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _publish(channel: str, message: dict) -> int:
    if not settings.notifications_enabled:
        return 0
    try:
        r = await get_redis()
        receivers = await r.publish(channel, json.dumps(message))
    except RedisError as e:
        # Status change is already committed at this point
        logger.warning("Failed to publish to %s: %s", channel, e)
        return 0
    logger.debug("Published to %s (%d receivers)", channel, receivers)
    return receivers


async def publish_order_update(order: dict) -> int:
    return await _publish(
        user_channel(order["customer_id"]),
        {
            "orderId": order["order_id"],
            "orderNumber": order["order_number"],
            "orderStatus": order["order_status"],
            "timestamp": _now(),
        },
    )


async def publish_new_order_alert(order: dict) -> int:
    return await _publish(
        ADMIN_CHANNEL,
        {
            "orderId": order["order_id"],
            "orderNumber": order["order_number"],
            "customerId": order["customer_id"],
            "customerEmail": order["customer_email"],
            "total": order["total"],
            "timestamp": _now(),
        },
    )
