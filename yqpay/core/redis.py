# yqpay/core/redis.py
"""
Async Redis client used for per-transaction processing locks.
Redis is optional: callers treat a missing/unreachable server as "no locking".
"""
import logging
from typing import Optional

import redis.asyncio as aioredis

from yqpay.core import config

logger = logging.getLogger(__name__)

REDIS_SOCKET_TIMEOUT = 1.0

_redis_client: Optional[aioredis.Redis] = None


async def get_redis() -> aioredis.Redis:
    """Return the shared lock client, connecting on first use."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    if not config.REDIS_URL:
        raise RuntimeError("REDIS_URL not set")

    client = aioredis.from_url(
        config.REDIS_URL,
        socket_timeout=REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=REDIS_SOCKET_TIMEOUT,
        decode_responses=True,
    )
    try:
        await client.ping()
    except aioredis.RedisError as exc:
        await client.aclose()
        raise RuntimeError(f"Redis connection failed: {exc}") from exc

    logger.info("Connected to Redis at %s", config.REDIS_URL.split("@")[-1])
    _redis_client = client
    return client


async def get_optional_redis() -> Optional[aioredis.Redis]:
    """Like get_redis, but None when locking is off or the server is down."""
    if not config.REDIS_URL:
        return None
    try:
        return await get_redis()
    except RuntimeError as e:
        logger.warning("Redis unavailable, payment locks disabled: %s", e)
        return None


async def close_redis():
    global _redis_client
    if _redis_client is not None:
        try:
            await _redis_client.aclose()
        finally:
            _redis_client = None


async def health_check_redis():
    if not config.REDIS_URL:
        return {"status": "disabled", "detail": "REDIS_URL not set; payment locks disabled"}
    try:
        redis_client = await get_redis()
        await redis_client.ping()
        return {"status": "ok", "detail": "Redis is connected and responsive"}
    except (RuntimeError, aioredis.RedisError) as e:
        return {"status": "error", "detail": str(e)}
