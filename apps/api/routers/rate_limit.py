"""Per-user request quotas backed by Redis, with an in-process fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import Depends, HTTPException, Request
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from routers.auth_scope import AuthContext, get_auth_context


logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


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


async def _consume_redis_quota(key: str, window_seconds: int) -> int:
    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        current = await redis_client.incr(key)
        if current == 1:
            await redis_client.expire(key, window_seconds)
        return int(current)
    finally:
        await redis_client.aclose()


def user_rate_limit(prefix: str, limit: Optional[int] = None, window_seconds: int = 3600) -> Callable:
    """Return a dependency limiting each authenticated user to ``limit`` calls per window."""

    async def _dependency(request: Request, auth: AuthContext = Depends(get_auth_context)):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        resolved_limit = int(limit if limit is not None else settings.ENHANCE_RATE_LIMIT_PER_HOUR)
        if resolved_limit <= 0:
            return
        key = f"pe:rate:{prefix}:{auth.user_id}"

        try:
            allowed = await _consume_redis_quota(key, window_seconds) <= resolved_limit
        except (RedisError, OSError) as exc:
            logger.debug("Rate limit falling back to local counters: %s", exc)
            allowed = await _consume_local_quota(key, resolved_limit, window_seconds)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
            )

    return _dependency
