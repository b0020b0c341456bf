"""
Cache invalidation publisher - tells read caches and live-update subscribers
that a project's state changed.

Two signals per invalidation:
- the project's cache generation counter is bumped (readers key their cached
  views by generation, so stale entries are simply never read again)
- a message on the pub/sub channel for live dashboards

Fire-and-forget relative to the event: failures are logged and swallowed.
A stale cache heals on the next invalidation; a lost event would not.
"""
import asyncio
import json
import logging
import uuid
from typing import Optional

from src.utils.dedup import get_redis

logger = logging.getLogger(__name__)

CHANNEL = "agentpulse:project_updates"
GENERATION_KEY = "agentpulse:cache_gen:project:{project_id}"
PUBLISH_TIMEOUT_SECONDS = 1.0


async def _publish(project_id: str, message: str) -> None:
    redis = await get_redis()
    pipe = redis.pipeline(transaction=False)
    pipe.incr(GENERATION_KEY.format(project_id=project_id))
    pipe.publish(CHANNEL, message)
    await pipe.execute()


async def invalidate(
    project_id: uuid.UUID,
    event_kind: Optional[str] = None,
    event_id: Optional[uuid.UUID] = None,
) -> bool:
    """Signal that `project_id` changed. Returns False if the signal was lost."""
    message = json.dumps({
        "type": "project_updated",
        "project_id": str(project_id),
        "event_kind": event_kind,
        "event_id": str(event_id) if event_id else None,
    })
    try:
        await asyncio.wait_for(_publish(str(project_id), message), timeout=PUBLISH_TIMEOUT_SECONDS)
        logger.debug("Cache invalidated for project %s", str(project_id)[:8])
        return True
    except Exception as e:
        logger.warning(
            "Cache invalidation failed for project %s: %s",
            str(project_id)[:8], str(e) or type(e).__name__,
            extra={"project_id": str(project_id)},
        )
        return False


async def get_generation(project_id: uuid.UUID) -> int:
    """Current cache generation for a project (0 when never invalidated)."""
    redis = await get_redis()
    value = await redis.get(GENERATION_KEY.format(project_id=str(project_id)))
    return int(value) if value else 0
