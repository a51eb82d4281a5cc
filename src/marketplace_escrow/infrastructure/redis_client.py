"""Redis client for idempotency keys and notification de-duplication.

Redis is optional: the escrow core is correct without it (its idempotency
lives in the database), so callers check is_redis_ready() first.

Usage:
    from marketplace_escrow.infrastructure.redis_client import get_redis, close_redis

    redis = get_redis()
    await redis.set("key", "value", ex=3600)
"""

from __future__ import annotations

import redis.asyncio as aioredis

from marketplace_escrow.config import get_settings
from marketplace_escrow.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    await client.ping()
    _redis_client = client
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def is_redis_ready() -> bool:
    return _redis_client is not None


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Idempotency Helpers ---


async def claim_idempotency(key: str) -> bool:
    """Atomically mark a key as used. Returns False if it was already claimed."""
    settings = get_settings()
    redis = get_redis()
    claimed = await redis.set(
        f"idempotency:{key}",
        "1",
        ex=settings.redis_idempotency_ttl_seconds,
        nx=True,
    )
    return bool(claimed)
