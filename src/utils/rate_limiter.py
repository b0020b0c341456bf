"""
Redis-based rate limiter for the webhook ingress.
Uses a sliding window log (sorted set of request timestamps) per key.

The counter is the only shared mutable state of the ingress. Each check is a
single MULTI/EXEC pipeline, so concurrent handlers never lose an increment and
unrelated sources never contend on the same key.
"""
import logging
import math
import time
import uuid
from typing import Optional

logger = logging.getLogger(__name__)

KEY_PREFIX = "agentpulse:ratelimit:"


async def check_rate_limit(
    key: str,
    limit: int,
    window: int,
) -> tuple[bool, Optional[int]]:
    """
    Record one request against `key` and decide whether it is within the limit.

    Returns: (allowed: bool, retry_after_seconds: int | None)
    """
    try:
        from src.utils.dedup import get_redis
        redis = await get_redis()

        redis_key = f"{KEY_PREFIX}{key}"
        now = time.time()
        window_start = now - window
        member = f"{now:.6f}:{uuid.uuid4().hex[:8]}"

        pipe = redis.pipeline(transaction=True)
        pipe.zremrangebyscore(redis_key, 0, window_start)
        pipe.zadd(redis_key, {member: now})
        pipe.zcard(redis_key)
        pipe.zrange(redis_key, 0, 0, withscores=True)
        pipe.expire(redis_key, window + 1)
        results = await pipe.execute()

        request_count = results[2]
        if request_count <= limit:
            return True, None

        # Rejected requests do not consume allowance
        await redis.zrem(redis_key, member)

        oldest = results[3]
        oldest_score = oldest[0][1] if oldest else now
        retry_after = math.ceil(oldest_score + window - now)
        logger.warning(
            "Rate limit exceeded: key=%s count=%d limit=%d",
            key, request_count, limit,
        )
        return False, max(retry_after, 1)
    except Exception as e:
        # Redis failure should not block webhooks - allow through
        logger.warning("Rate limiter Redis error: %s. Allowing request.", str(e))
        return True, None


async def check_webhook_rate_limits(
    client_ip: str,
    source_id: Optional[str] = None,
) -> tuple[bool, Optional[int]]:
    """
    Check both IP and source-level rate limits.
    Runs before authentication, so unauthenticated callers are limited too.
    Returns (allowed, retry_after_seconds).
    """
    from src.config import get_settings
    settings = get_settings()
    window = settings.webhook_rate_window_seconds

    ip_allowed, ip_retry = await check_rate_limit(
        f"ip:{client_ip}", settings.webhook_ip_rate_limit, window,
    )
    if not ip_allowed:
        return False, ip_retry

    if source_id:
        source_allowed, source_retry = await check_rate_limit(
            f"source:{source_id}", settings.webhook_rate_limit, window,
        )
        if not source_allowed:
            return False, source_retry

    return True, None
