"""
config/redis_client.py
Async Redis client for caching, idempotent response replay and
unauthenticated rate limiting. Redis is never the source of truth: every
caller treats it as optional and keeps working when it is down.
"""

import hashlib
import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis

from config.settings import settings

logger = logging.getLogger(__name__)


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    """Initialize the Redis connection pool."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    # Test connection
    await redis_client.ping()


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_optional_redis() -> Optional[aioredis.Redis]:
    """FastAPI dependency for fail-open features: None when Redis is not up."""
    return redis_client


# ── Cache Helpers ─────────────────────────────────────────────
class RedisCache:
    """Helper class for common Redis caching patterns."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def get(self, key: str) -> Optional[Any]:
        value = await self.client.get(key)
        if value:
            return json.loads(value)
        return None

    async def set(self, key: str, value: Any, ttl: int = settings.REDIS_CACHE_TTL) -> None:
        await self.client.setex(key, ttl, json.dumps(value, default=str))

    # ── Idempotent Replay ─────────────────────────────────────
    @staticmethod
    def replay_key(scope: str, actor_id: str, target_id: str, idempotency_key: str) -> str:
        digest = hashlib.sha256(
            f"{scope}:{actor_id}:{target_id}:{idempotency_key}".encode()
        ).hexdigest()
        return f"idem:{scope}:{digest}"

    async def get_replay(self, key: str) -> Optional[dict]:
        """Return a previously stored response, or None (also when Redis fails)."""
        try:
            return await self.get(key)
        except Exception as e:
            logger.warning(f"Idempotency lookup failed for {key}: {e}")
            return None

    async def store_replay(self, key: str, payload: dict) -> None:
        try:
            await self.set(key, payload, ttl=settings.IDEMPOTENCY_TTL_SECONDS)
        except Exception as e:
            logger.warning(f"Idempotency store failed for {key}: {e}")

    # ── Rate Limiting ─────────────────────────────────────────
    async def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """
        Fixed window rate limiter.
        Returns True if request is allowed, False if rate limited.
        """
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, window_seconds, nx=True)
        results = await pipe.execute()
        current_count = results[0]
        return current_count <= limit
