"""Redis connection lifecycle for the snapshot cache."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None
_init_lock: Optional[asyncio.Lock] = None


def _get_lock() -> asyncio.Lock:
    global _init_lock
    if _init_lock is None:
        _init_lock = asyncio.Lock()
    return _init_lock


async def init_redis(url: str) -> Optional[redis.Redis]:
    """Connect and ping; returns None when Redis is unreachable."""
    global _redis_client
    if _redis_client:
        return _redis_client
    async with _get_lock():
        if _redis_client:
            return _redis_client
        client = redis.from_url(url, decode_responses=True)
        try:
            await client.ping()
        except Exception as e:  # noqa
            logger.warning(f"Redis init failed: {e}", extra={"backend": "redis"})
            await client.aclose()
            return None
        _redis_client = client
        logger.info("Redis connected", extra={"backend": "redis"})
        return _redis_client


async def redis_healthy() -> bool:
    if not _redis_client:
        return False
    try:
        await _redis_client.ping()
        return True
    except Exception:
        return False


async def close_redis() -> None:
    global _redis_client
    if _redis_client is None:
        return
    client, _redis_client = _redis_client, None
    try:
        await client.aclose()
    except Exception as e:
        logger.debug(f"Redis close failed: {e}")
