"""
Durable event queue backed by the event_queue table.

Delivery guarantee boundary: once enqueue() has been committed the event is
retried until it is acked or dead-lettered; it is never silently dropped.

Every state change is a compare-and-set on `lease_version`, so two workers
can never both claim an event inside one lease window, and a worker whose
lease expired cannot ack or reschedule over the new holder. Crashed workers
need no cleanup: their lease simply runs out.

Also pushes a notification to Redis so idle workers can wake immediately
via BRPOP instead of waiting for the next poll.
"""
import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from src.models.dead_letter_entry import DL_PENDING_REVIEW, DeadLetterEntry
from src.models.queued_event import (
    ACTIVE_STATUSES,
    STATUS_ACKED,
    STATUS_DEAD_LETTERED,
    STATUS_LEASED,
    STATUS_QUEUED,
    QueuedEvent,
)
from src.schemas.events import CanonicalEvent
from src.utils.dead_letter import dead_letter_event
from src.utils.errors import LeaseLostError
from src.utils.timezone import ensure_utc, utcnow

logger = logging.getLogger(__name__)

QUEUE_NOTIFY_KEY = "agentpulse:queue_notify"
QUEUE_NOTIFY_MAX = 1000

DEFAULT_MAX_ATTEMPTS = 3
ERROR_MAX_LENGTH = 4000


@dataclass(frozen=True)
class FailureOutcome:
    status: str  # queued (retry scheduled) or dead_lettered
    attempt_count: int
    available_at: Optional[datetime] = None
    dead_letter_id: Optional[uuid.UUID] = None

    @property
    def dead_lettered(self) -> bool:
        return self.status == STATUS_DEAD_LETTERED


def compute_backoff(
    attempt: int,
    base_seconds: float = 1.0,
    cap_seconds: float = 16.0,
    jitter_ratio: float = 0.2,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Delay before retry number `attempt` (1-based): 1s, 2s, 4s, 8s, 16s, capped,
    plus uniform jitter of up to `jitter_ratio` of the interval.
    """
    interval = min(base_seconds * (2 ** max(attempt - 1, 0)), cap_seconds)
    return interval + interval * jitter_ratio * rng()


async def enqueue(
    db: AsyncSession,
    event: CanonicalEvent,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> QueuedEvent:
    """
    Persist a new event as immediately available. The caller commits; the
    HTTP 200 must not be sent before that commit succeeds.
    """
    row = QueuedEvent(
        event_id=event.event_id,
        external_event_id=event.external_event_id,
        dedup_key=event.dedup_key,
        source_id=event.source_id,
        project_id=event.project_id,
        kind=event.kind.value,
        occurred_at=event.occurred_at,
        payload=event.payload,
        received_at=event.received_at,
        status=STATUS_QUEUED,
        attempt_count=0,
        max_attempts=max_attempts,
        available_at=event.available_at or utcnow(),
        lease_version=0,
        delivery_count=0,
        correlation_id=event.correlation_id,
    )
    db.add(row)
    await db.flush()
    logger.info(
        "Event enqueued: id=%s kind=%s source=%s",
        str(row.event_id)[:8], row.kind, row.source_id,
        extra={"event_id": str(row.event_id), "source_id": row.source_id, "project_id": str(row.project_id)},
    )
    return row


async def lease(
    db: AsyncSession,
    worker_id: str,
    batch_size: int,
    lease_seconds: int,
    now: Optional[datetime] = None,
) -> list[QueuedEvent]:
    """
    Claim up to `batch_size` available events for `worker_id`.

    Candidates are queued or lease-expired rows with available_at <= now and
    attempts remaining. Each is claimed with a compare-and-set on
    lease_version; rows another worker claimed first are skipped. The claim
    pushes available_at to now + lease_seconds and does not touch
    attempt_count. The caller commits.
    """
    now = now or utcnow()
    candidates = await db.execute(
        select(QueuedEvent.event_id, QueuedEvent.lease_version)
        .where(
            QueuedEvent.status.in_(ACTIVE_STATUSES),
            QueuedEvent.available_at <= now,
            QueuedEvent.attempt_count < QueuedEvent.max_attempts,
        )
        .order_by(QueuedEvent.available_at)
        .limit(batch_size)
        .with_for_update(skip_locked=True)
    )

    leased_until = now + timedelta(seconds=lease_seconds)
    claimed: list[uuid.UUID] = []
    for event_id, observed_version in candidates.all():
        result = await db.execute(
            update(QueuedEvent)
            .where(
                QueuedEvent.event_id == event_id,
                QueuedEvent.lease_version == observed_version,
            )
            .values(
                status=STATUS_LEASED,
                available_at=leased_until,
                lease_owner=worker_id,
                lease_token=uuid.uuid4().hex,
                lease_version=observed_version + 1,
                delivery_count=QueuedEvent.delivery_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed.append(event_id)
        else:
            logger.debug("Lost claim race for event %s", str(event_id)[:8])

    if not claimed:
        return []

    result = await db.execute(
        select(QueuedEvent)
        .where(QueuedEvent.event_id.in_(claimed))
        .order_by(QueuedEvent.available_at)
        .execution_options(populate_existing=True)
    )
    events = list(result.scalars().all())
    logger.debug("Worker %s leased %d events", worker_id, len(events))
    return events


async def _load_for_update(
    db: AsyncSession,
    event_id: uuid.UUID,
    lease_token: Optional[str],
) -> QueuedEvent:
    query = select(QueuedEvent).where(QueuedEvent.event_id == event_id)
    if lease_token is not None:
        query = query.where(
            QueuedEvent.status == STATUS_LEASED,
            QueuedEvent.lease_token == lease_token,
        )
    result = await db.execute(query.execution_options(populate_existing=True))
    event = result.scalar_one_or_none()
    if event is None:
        raise LeaseLostError(f"Event {str(event_id)[:8]} is no longer held by this lease")
    return event


async def ack(
    db: AsyncSession,
    event_id: uuid.UUID,
    lease_token: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """
    Mark an event permanently applied. It leaves the active set and stays as
    an audit record. With a lease_token, only the current lease holder may ack.
    """
    now = now or utcnow()
    stmt = (
        update(QueuedEvent)
        .where(
            QueuedEvent.event_id == event_id,
            QueuedEvent.status.in_(ACTIVE_STATUSES),
        )
        .values(
            status=STATUS_ACKED,
            acked_at=now,
            lease_owner=None,
            lease_token=None,
            lease_version=QueuedEvent.lease_version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if lease_token is not None:
        stmt = stmt.where(QueuedEvent.lease_token == lease_token)

    result = await db.execute(stmt)
    if result.rowcount != 1:
        raise LeaseLostError(f"Event {str(event_id)[:8]} could not be acked: lease lost or already final")


async def fail(
    db: AsyncSession,
    event_id: uuid.UUID,
    error: str,
    lease_token: Optional[str] = None,
    permanent: bool = False,
    now: Optional[datetime] = None,
    backoff: Optional[Callable[[int], float]] = None,
    defer_seconds: Optional[float] = None,
) -> FailureOutcome:
    """
    Record a failed processing attempt.

    Increments attempt_count. Below the ceiling the event is re-queued at
    now + backoff(attempt_count); at the ceiling, or when `permanent`, it is
    moved to dead_lettered and a DeadLetterEntry is created in the same
    transaction. The caller commits.

    With `defer_seconds` the attempt is not counted: the event is re-queued
    at now + defer_seconds and can never be dead-lettered by this call. Used
    when a dependency refused the call without trying it (open breaker).
    """
    now = now or utcnow()
    if backoff is None:
        from src.config import get_settings
        settings = get_settings()

        def backoff(attempt: int) -> float:
            return compute_backoff(
                attempt,
                settings.backoff_base_seconds,
                settings.backoff_cap_seconds,
                settings.backoff_jitter_ratio,
            )

    event = await _load_for_update(db, event_id, lease_token)
    if event.status not in ACTIVE_STATUSES:
        raise LeaseLostError(f"Event {str(event_id)[:8]} is already {event.status}")

    deferred = defer_seconds is not None and not permanent
    attempts = event.attempt_count if deferred else event.attempt_count + 1
    error_text = (error or "unknown error")[:ERROR_MAX_LENGTH]
    first_failed_at = event.first_failed_at or now
    exhausted = not deferred and (permanent or attempts >= event.max_attempts)

    values = {
        "attempt_count": attempts,
        "last_error": error_text,
        "first_failed_at": first_failed_at,
        "lease_owner": None,
        "lease_token": None,
        "lease_version": event.lease_version + 1,
    }
    if exhausted:
        values["status"] = STATUS_DEAD_LETTERED
    else:
        delay = max(defer_seconds, 0.0) if deferred else backoff(attempts)
        values["status"] = STATUS_QUEUED
        values["available_at"] = now + timedelta(seconds=delay)

    result = await db.execute(
        update(QueuedEvent)
        .where(
            QueuedEvent.event_id == event_id,
            QueuedEvent.lease_version == event.lease_version,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise LeaseLostError(f"Event {str(event_id)[:8]} changed while recording failure")

    for key, value in values.items():
        set_committed_value(event, key, value)

    if deferred:
        logger.info(
            "Event deferred without using an attempt: id=%s kind=%s until=%s reason=%s",
            str(event_id)[:8], event.kind, values["available_at"].isoformat(), error_text[:200],
            extra={"event_id": str(event_id), "source_id": event.source_id},
        )
        return FailureOutcome(STATUS_QUEUED, attempts, available_at=values["available_at"])

    if not exhausted:
        logger.warning(
            "Event retry %d/%d scheduled: id=%s kind=%s at=%s error=%s",
            attempts, event.max_attempts, str(event_id)[:8], event.kind,
            values["available_at"].isoformat(), error_text[:200],
            extra={"event_id": str(event_id), "source_id": event.source_id},
        )
        return FailureOutcome(STATUS_QUEUED, attempts, available_at=values["available_at"])

    entry = await dead_letter_event(db, event, error_text, now, permanent=permanent)
    return FailureOutcome(STATUS_DEAD_LETTERED, attempts, dead_letter_id=entry.id)


async def requeue(db: AsyncSession, event: QueuedEvent, now: Optional[datetime] = None) -> None:
    """Put a dead-lettered event back in the queue with a fresh retry budget."""
    now = now or utcnow()
    result = await db.execute(
        update(QueuedEvent)
        .where(
            QueuedEvent.event_id == event.event_id,
            QueuedEvent.status == STATUS_DEAD_LETTERED,
        )
        .values(
            status=STATUS_QUEUED,
            attempt_count=0,
            available_at=now,
            lease_owner=None,
            lease_token=None,
            lease_version=QueuedEvent.lease_version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ValueError(f"Event {str(event.event_id)[:8]} is not dead-lettered")


async def get_event(db: AsyncSession, event_id: uuid.UUID) -> Optional[QueuedEvent]:
    result = await db.execute(
        select(QueuedEvent)
        .where(QueuedEvent.event_id == event_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def queue_stats(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    """Counts per status, age of the oldest due event, and pending dead letters."""
    now = now or utcnow()
    counts = {status: 0 for status in (STATUS_QUEUED, STATUS_LEASED, STATUS_ACKED, STATUS_DEAD_LETTERED)}
    result = await db.execute(
        select(QueuedEvent.status, func.count()).group_by(QueuedEvent.status)
    )
    for status, count in result.all():
        counts[status] = count

    oldest = (await db.execute(
        select(func.min(QueuedEvent.available_at)).where(
            QueuedEvent.status == STATUS_QUEUED,
            QueuedEvent.available_at <= now,
        )
    )).scalar()
    oldest_age = None
    if oldest is not None:
        oldest_age = max((now - ensure_utc(oldest)).total_seconds(), 0.0)

    pending_review = (await db.execute(
        select(func.count()).select_from(DeadLetterEntry).where(DeadLetterEntry.status == DL_PENDING_REVIEW)
    )).scalar() or 0

    return {
        "counts": counts,
        "oldest_available_age_seconds": oldest_age,
        "dead_letters_pending_review": pending_review,
    }


async def notify_workers(event_id: uuid.UUID) -> None:
    """Wake an idle worker (best-effort; workers also poll)."""
    try:
        from src.utils.dedup import get_redis
        redis = await get_redis()
        pipe = redis.pipeline(transaction=False)
        pipe.lpush(QUEUE_NOTIFY_KEY, str(event_id))
        pipe.ltrim(QUEUE_NOTIFY_KEY, 0, QUEUE_NOTIFY_MAX - 1)
        await pipe.execute()
    except Exception as e:
        logger.debug("Failed to notify workers: %s", str(e))
