"""
Deduplication keys and the shared Redis connection.

The durable duplicate check is the idempotency ledger (database). This module
only builds the keys: a source-provided identifier when one exists, otherwise
a content hash over (source, kind, payload, coarse time bucket).
"""
import hashlib
import json
import logging
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)

CONTENT_KEY_PREFIX = "content:"

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from src.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
    _redis_client = None


def time_bucket(occurred_at: datetime, bucket_seconds: int) -> int:
    """Floor a timestamp to a coarse bucket index."""
    return int(occurred_at.timestamp()) // max(bucket_seconds, 1)


def make_content_dedup_key(
    source_id: str,
    kind: str,
    payload: dict,
    occurred_at: datetime,
    bucket_seconds: int,
) -> str:
    """
    Fallback deduplication key when the source gives no stable identifier.

    Only probabilistically safe: two genuinely distinct events with identical
    content inside one bucket collapse into one, and a retry that straddles a
    bucket boundary is not recognised as a duplicate.
    """
    canonical = json.dumps(
        {
            "source": source_id,
            "kind": kind,
            "payload": payload,
            "bucket": time_bucket(occurred_at, bucket_seconds),
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return CONTENT_KEY_PREFIX + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def resolve_dedup_key(
    external_event_id: Optional[str],
    source_id: str,
    kind: str,
    payload: dict,
    occurred_at: datetime,
    bucket_seconds: int,
) -> str:
    """Return the idempotency key for an event: external id if present, else content hash."""
    if external_event_id:
        return external_event_id
    key = make_content_dedup_key(source_id, kind, payload, occurred_at, bucket_seconds)
    logger.debug(
        "No external id from source=%s kind=%s, using content key %s",
        source_id, kind, key[:20],
    )
    return key
