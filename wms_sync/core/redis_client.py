"""
Redis Client - async singleton.

Holds the WMS rate-limit status record and cached remote lookups
(shipping methods). Uses REDIS_URL from settings.
"""
import asyncio
import json
from typing import Any
from urllib.parse import urlparse

import redis.asyncio as aioredis

from wms_sync.core.config import settings
from wms_sync.core.logging import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "wms_sync"

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def redis_key(*parts: str) -> str:
    """Namespaced key, e.g. redis_key("rate_limit", "status") -> wms_sync:rate_limit:status"""
    return ":".join((KEY_PREFIX, *parts))


def _mask_redis_url(url: str) -> str:
    """Hide the password in REDIS_URL for logging"""
    try:
        parsed = urlparse(url)
        if parsed.password:
            return url.replace(f":{parsed.password}@", ":****@")
        return url
    except Exception:
        return "redis://****"


async def get_redis() -> aioredis.Redis:
    """Return the process-wide Redis client (async, connection pool)."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


async def load_json(key: str) -> Any | None:
    """GET + json decode; a corrupt value is treated as missing"""
    client = await get_redis()
    raw = await client.get(key)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Discarding unreadable Redis value", extra_data={"key": key})
        return None


async def store_json(key: str, value: Any, ttl_seconds: int | None = None) -> None:
    client = await get_redis()
    payload = json.dumps(value, default=str)
    if ttl_seconds:
        await client.setex(key, ttl_seconds, payload)
    else:
        await client.set(key, payload)


async def close_redis() -> None:
    """Close the Redis connection - call on shutdown / end of a Celery task."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
