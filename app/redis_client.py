import redis.asyncio as redis
from app.config import settings

_redis: redis.Redis | None = None

IDEMPOTENCY_KEY_PREFIX = "idempotency:status-event"


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


def idempotency_key(event_id: str) -> str:
    return f"{IDEMPOTENCY_KEY_PREFIX}:{event_id}"


async def check_idempotency(key: str, ttl_seconds: int | None = None) -> bool:
    """
    Returns True if this key was already seen (duplicate) -> caller should return 200.
    Returns False if key is new -> caller should proceed.
    Uses SET NX EX: if we set it, we're first; if not, duplicate.
    """
    r = await get_redis()
    ttl = ttl_seconds if ttl_seconds is not None else settings.idempotency_ttl_seconds
    was_set = await r.set(key, "1", nx=True, ex=ttl)
    return not was_set


async def release_idempotency(key: str) -> None:
    """Forget key, so a client may resend after the event could not be queued."""
    r = await get_redis()
    await r.delete(key)
