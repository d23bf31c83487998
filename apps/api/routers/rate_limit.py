"""Per-client fixed-window request quotas, shared through Redis when it is reachable."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from fastapi import HTTPException, Request
from redis.exceptions import RedisError

from config import settings

logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()
_redis_client: Optional[redis.Redis] = None


def _get_redis_client() -> Optional[redis.Redis]:
    """Return the shared client, or None when REDIS_URL is unset."""
    global _redis_client
    if not settings.REDIS_URL:
        return None
    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT_SECONDS,
        )
    return _redis_client


async def close_redis_client() -> None:
    global _redis_client
    client, _redis_client = _redis_client, None
    if client is not None:
        await client.aclose()


async def ping_redis() -> str:
    """Describe the quota store for health reporting."""
    client = _get_redis_client()
    if client is None:
        return "local"
    try:
        await client.ping()
        return "redis"
    except (RedisError, OSError) as exc:
        return f"local (redis down: {exc})"


def _client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def _consume_redis_quota(client: redis.Redis, key: str, limit: int, window_seconds: int) -> bool:
    current = await client.incr(key)
    if current == 1:
        await client.expire(key, window_seconds)
    return int(current) <= limit


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit


async def consume_quota(key: str, limit: int, window_seconds: int) -> bool:
    client = _get_redis_client()
    if client is not None:
        try:
            return await _consume_redis_quota(client, key, limit, window_seconds)
        except (RedisError, OSError) as exc:
            logger.warning("Redis rate limit unavailable, counting locally: %s", exc)
    return await _consume_local_quota(key, limit, window_seconds)


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[], None]:
    """Return a FastAPI dependency that enforces per-client request quotas."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"{settings.RATE_LIMIT_KEY_PREFIX}:{prefix}:{_client_identifier(request)}"
        if not await consume_quota(key, limit, window_seconds):
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
            )

    return _dependency
