"""
Dead letter handling - terminal state for events that exhausted retries or
failed permanently. Entries are kept for audit and only move through the
admin interface (replay or discard). An event has at most one entry; a
replayed event that fails out again re-opens it.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.dead_letter_entry import (
    DL_DISCARDED,
    DL_PENDING_REVIEW,
    DL_REPLAYED,
    DL_STATUSES,
    DeadLetterEntry,
)
from src.models.queued_event import QueuedEvent

logger = logging.getLogger(__name__)


class DeadLetterStateError(Exception):
    """Replay/discard requested for an entry that is not pending review."""
    pass


async def dead_letter_event(
    db: AsyncSession,
    event: QueuedEvent,
    error: str,
    now: datetime,
    permanent: bool = False,
) -> DeadLetterEntry:
    """Create (or re-open) the dead-letter entry for `event`. Caller commits."""
    result = await db.execute(
        select(DeadLetterEntry).where(DeadLetterEntry.event_id == event.event_id)
    )
    entry = result.scalar_one_or_none()

    if entry is None:
        entry = DeadLetterEntry(
            event_id=event.event_id,
            first_failed_at=event.first_failed_at or now,
        )
        db.add(entry)

    entry.last_error = error
    entry.attempt_count = event.attempt_count
    entry.permanent = permanent
    entry.last_failed_at = now
    entry.status = DL_PENDING_REVIEW
    entry.resolved_at = None
    entry.resolved_by = None
    await db.flush()

    logger.error(
        "Event dead-lettered: id=%s kind=%s attempts=%d permanent=%s error=%s",
        str(event.event_id)[:8], event.kind, event.attempt_count, permanent, error[:200],
        extra={"event_id": str(event.event_id), "source_id": event.source_id, "error_code": "dead_lettered"},
    )
    return entry


async def list_dead_letters(
    db: AsyncSession,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[tuple[DeadLetterEntry, QueuedEvent]], int]:
    """Entries joined with their events, newest failure first."""
    if status is not None and status not in DL_STATUSES:
        raise ValueError(f"Unknown dead letter status '{status}'")

    query = select(DeadLetterEntry, QueuedEvent).join(
        QueuedEvent, QueuedEvent.event_id == DeadLetterEntry.event_id
    )
    count_query = select(func.count()).select_from(DeadLetterEntry)
    if status is not None:
        query = query.where(DeadLetterEntry.status == status)
        count_query = count_query.where(DeadLetterEntry.status == status)

    total = (await db.execute(count_query)).scalar() or 0
    result = await db.execute(
        query.order_by(DeadLetterEntry.last_failed_at.desc()).limit(limit).offset(offset)
    )
    return [(entry, event) for entry, event in result.all()], total


async def get_dead_letter(
    db: AsyncSession,
    entry_id: uuid.UUID,
) -> Optional[tuple[DeadLetterEntry, QueuedEvent]]:
    result = await db.execute(
        select(DeadLetterEntry, QueuedEvent)
        .join(QueuedEvent, QueuedEvent.event_id == DeadLetterEntry.event_id)
        .where(DeadLetterEntry.id == entry_id)
    )
    row = result.first()
    return (row[0], row[1]) if row else None


async def replay_dead_letter(
    db: AsyncSession,
    entry_id: uuid.UUID,
    resolved_by: str = "admin",
) -> Optional[DeadLetterEntry]:
    """Re-enqueue the event with a fresh retry budget and mark the entry replayed."""
    from src.services.event_queue import requeue

    found = await get_dead_letter(db, entry_id)
    if found is None:
        return None
    entry, event = found
    if entry.status != DL_PENDING_REVIEW:
        raise DeadLetterStateError(f"Dead letter {str(entry_id)[:8]} is already {entry.status}")

    await requeue(db, event)
    await db.refresh(event)
    entry.status = DL_REPLAYED
    entry.resolved_at = datetime.now(timezone.utc)
    entry.resolved_by = resolved_by
    await db.flush()

    logger.info(
        "Dead letter %s replayed by %s (event %s)",
        str(entry.id)[:8], resolved_by, str(event.event_id)[:8],
        extra={"event_id": str(event.event_id)},
    )
    return entry


async def discard_dead_letter(
    db: AsyncSession,
    entry_id: uuid.UUID,
    resolved_by: str = "admin",
) -> Optional[DeadLetterEntry]:
    """Permanently give up on the event. The entry and event stay for audit."""
    found = await get_dead_letter(db, entry_id)
    if found is None:
        return None
    entry, event = found
    if entry.status != DL_PENDING_REVIEW:
        raise DeadLetterStateError(f"Dead letter {str(entry_id)[:8]} is already {entry.status}")

    entry.status = DL_DISCARDED
    entry.resolved_at = datetime.now(timezone.utc)
    entry.resolved_by = resolved_by
    await db.flush()

    logger.info(
        "Dead letter %s discarded by %s (event %s)",
        str(entry.id)[:8], resolved_by, str(event.event_id)[:8],
        extra={"event_id": str(event.event_id)},
    )
    return entry
