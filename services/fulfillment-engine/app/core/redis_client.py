"""
Fulfillment Engine — Redis client: stock cache + order event pub/sub

The engine exposes results through return values; Redis is only a side
channel. Cache and publish failures are logged and never fail a mutation
that has already committed.
"""
import json
import logging

import redis.asyncio as aioredis
from fastapi.encoders import jsonable_encoder

from app.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)
_redis_client: aioredis.Redis | None = None

STOCK_CACHE_KEY = "stock:{product_id}"
ORDER_CHANNEL = "order:{order_id}"


def get_redis() -> aioredis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=settings.HEALTH_CHECK_TIMEOUT,
        )
    return _redis_client


async def close_redis():
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


async def cache_available(redis: aioredis.Redis, product_id: str, available: int) -> None:
    """Keep the product's availability estimate in sync."""
    try:
        await redis.setex(
            STOCK_CACHE_KEY.format(product_id=product_id),
            settings.STOCK_CACHE_TTL_SECONDS,
            available,
        )
    except Exception as exc:
        logger.warning("Stock cache update failed for %s: %s", product_id, exc)


async def publish_order_event(redis: aioredis.Redis, event: str, payload: dict) -> None:
    """Push an order event to the global channel and the per-order channel."""
    message = json.dumps(jsonable_encoder({"event": event, **payload}))
    try:
        await redis.publish(settings.ORDER_EVENTS_CHANNEL, message)
        if payload.get("order_id"):
            await redis.publish(ORDER_CHANNEL.format(order_id=payload["order_id"]), message)
    except Exception as exc:
        # Event fan-out failures MUST NOT affect order processing
        logger.warning("Order event %s not published: %s", event, exc)
