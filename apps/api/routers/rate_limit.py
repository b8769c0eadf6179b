"""Per-client request quotas for visitor-facing endpoints.

Counters live in Redis so they hold across API processes; when Redis is
unreachable the limiter degrades to a per-process window.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)

_local_windows: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def _hit_local_window(key: str, window_seconds: int) -> int:
    now = time.monotonic()
    async with _local_lock:
        count, expires_at = _local_windows.get(key, (0, now + window_seconds))
        if now >= expires_at:
            count, expires_at = 0, now + window_seconds
        count += 1
        _local_windows[key] = (count, expires_at)
        return count


async def _hit_redis_window(key: str, window_seconds: int) -> int:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, window_seconds, nx=True)
            count, _ = await pipe.execute()
        return int(count)
    finally:
        await client.aclose()


def reset_local_windows() -> None:
    _local_windows.clear()


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable:
    """Return a FastAPI dependency allowing ``limit`` calls per client per window."""

    async def _dependency(request: Request) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return
        key = f"shm:rate:{prefix}:{client_identifier(request)}"
        try:
            count = await _hit_redis_window(key, window_seconds)
        except (redis.RedisError, OSError) as exc:
            logger.debug("Rate limiter falling back to local window: %s", exc)
            count = await _hit_local_window(key, window_seconds)
        if count > limit:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
            )

    return _dependency
