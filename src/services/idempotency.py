"""
Idempotency ledger - at-least-once delivery, effectively-once application.

record_applied() must run in the same transaction as the handler's state
mutation. The unique constraint on (source_id, external_event_id) is what
resolves two workers racing on redelivered copies: the loser's commit fails
and its mutation rolls back with it.
"""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.idempotency_record import IdempotencyRecord
from src.models.queued_event import QueuedEvent

logger = logging.getLogger(__name__)


async def find_applied(
    db: AsyncSession,
    source_id: str,
    external_event_id: str,
) -> Optional[IdempotencyRecord]:
    """Return the ledger record if this key's effect has already been applied."""
    result = await db.execute(
        select(IdempotencyRecord).where(
            IdempotencyRecord.source_id == source_id,
            IdempotencyRecord.external_event_id == external_event_id,
        )
    )
    return result.scalar_one_or_none()


async def record_applied(db: AsyncSession, event: QueuedEvent) -> IdempotencyRecord:
    """
    Add the ledger row for `event` to the current transaction.
    Raises IntegrityError on flush if another delivery already recorded it.
    """
    record = IdempotencyRecord(
        source_id=event.source_id,
        external_event_id=event.dedup_key,
        applied_event_id=event.event_id,
    )
    db.add(record)
    await db.flush()
    return record
