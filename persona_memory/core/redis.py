"""
Memory event fan-out over Redis pub/sub.

Channels are `user:<id>` and `conversation:<id>`. Every event is a JSON object
with `type` and `data`. With FF_USE_REDIS off, or no REDIS_URL, publishing does nothing.
"""

import json
import logging
from typing import Any

import redis.asyncio as aioredis

from .config import get_settings
from .flags import get_flags

logger = logging.getLogger(__name__)

_redis_client: aioredis.Redis | None = None


async def _get_redis() -> aioredis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
        )
    return _redis_client


def _enabled() -> bool:
    return get_flags().use_redis and bool(get_settings().redis_url)


async def publish(channel: str, event_type: str, data: Any = None) -> None:
    if not _enabled():
        return

    message = json.dumps({"type": event_type, "data": data}, default=str)
    try:
        await (await _get_redis()).publish(channel, message)
    except Exception as e:
        # Notifications are best-effort
        logger.warning("Redis publish failed (channel=%s, event=%s): %s", channel, event_type, e)
    else:
        logger.debug("Published %s on %s", event_type, channel)


async def notify_user(user_id: str, event_type: str, data: Any = None) -> None:
    await publish(f"user:{user_id}", event_type, data)


async def notify_conversation(conversation_id: int, event_type: str, data: Any = None) -> None:
    await publish(f"conversation:{conversation_id}", event_type, data)


async def close_redis() -> None:
    global _redis_client
    client, _redis_client = _redis_client, None
    if client is not None:
        await client.aclose()
        logger.info("Redis connection closed")
