"""
Event dispatcher - a pool of workers that lease events from the durable
queue, route them to their handlers and report the outcome back.

Per event, one transaction holds: the idempotency check, the handler's
state mutation, the idempotency record and the ack. Either all of it
commits or none of it does; on failure the event goes through fail() in a
fresh transaction and is retried with backoff or dead-lettered. An open
upstream breaker defers the event to the end of the cooldown instead, without
spending an attempt.

Uses BRPOP on the queue notification key for near-instant wake on new
events, with the poll interval as the fallback.
"""
import asyncio
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError

from src.config import get_settings
from src.database import async_session_factory
from src.services.cache_invalidation import invalidate
from src.services.event_handlers import dispatch_event
from src.services.event_queue import (
    QUEUE_NOTIFY_KEY,
    ack,
    fail,
    get_event,
    lease,
    queue_stats,
)
from src.services.idempotency import find_applied, record_applied
from src.utils.alerting import AlertType, send_alert
from src.utils.errors import (
    CircuitOpenError,
    DeliveryExhausted,
    LeaseLostError,
    PermanentProcessingFailure,
)
from src.utils.logging import generate_correlation_id, log_context, set_correlation_id

logger = logging.getLogger(__name__)

HEARTBEAT_KEY = "agentpulse:worker_health:{worker_id}"
HEARTBEAT_TTL_SECONDS = 120
RESTART_DELAY_SECONDS = 5
BACKLOG_CHECK_INTERVAL_SECONDS = 60
BACKLOG_ALERT_AGE_SECONDS = 300

OUTCOME_APPLIED = "applied"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_RETRY = "retry"
OUTCOME_DEFERRED = "deferred"
OUTCOME_DEAD_LETTERED = "dead_lettered"
OUTCOME_LEASE_LOST = "lease_lost"


def _log_extra(event_id: uuid.UUID, worker_id: str, **kwargs) -> dict:
    return {"event_id": str(event_id), "worker_id": worker_id, **kwargs}


async def _heartbeat(worker_id: str) -> None:
    """Store heartbeat timestamp in Redis."""
    try:
        from src.utils.dedup import get_redis
        redis = await get_redis()
        await redis.set(
            HEARTBEAT_KEY.format(worker_id=worker_id),
            datetime.now(timezone.utc).isoformat(),
            ex=HEARTBEAT_TTL_SECONDS,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def _wait_for_work(timeout: int) -> None:
    """Block until an enqueue notification arrives or `timeout` passes."""
    try:
        from src.utils.dedup import get_redis
        redis = await get_redis()
        await redis.brpop(QUEUE_NOTIFY_KEY, timeout=timeout)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        # If Redis is unavailable, fall back to sleep
        logger.debug("Redis BRPOP unavailable, falling back to sleep: %s", str(e))
        await asyncio.sleep(timeout)


async def run_event_dispatcher() -> None:
    """Start the worker pool plus the backlog monitor and run until cancelled."""
    settings = get_settings()
    prefix = f"worker-{os.getpid()}"
    tasks = [
        asyncio.create_task(_supervise(f"{prefix}-{i}"), name=f"{prefix}-{i}")
        for i in range(settings.worker_count)
    ]
    tasks.append(asyncio.create_task(_backlog_monitor(), name="backlog-monitor"))
    logger.info(
        "Event dispatcher started: %d workers, lease=%ds batch=%d",
        settings.worker_count, settings.queue_lease_seconds, settings.queue_batch_size,
    )
    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Event dispatcher stopped")


async def _supervise(worker_id: str) -> None:
    """Restart a worker loop that died; leases it held expire on their own."""
    while True:
        try:
            await _worker_loop(worker_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.critical("Worker %s crashed: %s", worker_id, str(e), exc_info=True)
            await send_alert(
                AlertType.WORKER_CRASHED,
                f"Worker {worker_id} crashed: {str(e)[:200]}",
                severity="critical",
            )
            await asyncio.sleep(RESTART_DELAY_SECONDS)


async def _worker_loop(worker_id: str) -> None:
    with log_context(worker_id=worker_id):
        await _run_worker(worker_id)


async def _run_worker(worker_id: str) -> None:
    settings = get_settings()
    logger.info("Worker %s started", worker_id)

    while True:
        processed = 0
        try:
            processed = await process_batch(worker_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Worker %s cycle error: %s", worker_id, str(e), exc_info=True)

        await _heartbeat(worker_id)

        # A full batch means more work is probably waiting
        if processed >= settings.queue_batch_size:
            continue
        await _wait_for_work(settings.worker_poll_interval_seconds)


async def process_batch(worker_id: str) -> int:
    """Lease one batch and process it. Returns the number of events leased."""
    settings = get_settings()

    async with async_session_factory() as db:
        events = await lease(db, worker_id, settings.queue_batch_size, settings.queue_lease_seconds)
        await db.commit()
        claims = [(event.event_id, event.lease_token) for event in events]

    if not claims:
        return 0

    logger.info("Worker %s processing %d events", worker_id, len(claims), extra={"worker_id": worker_id})
    for event_id, lease_token in claims:
        try:
            with log_context(worker_id=worker_id, event_id=event_id):
                await process_event(event_id, lease_token, worker_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The lease runs out and the event is redelivered
            logger.error(
                "Unhandled error processing event %s: %s", str(event_id)[:8], str(e),
                exc_info=True, extra=_log_extra(event_id, worker_id),
            )
    return len(claims)


async def process_event(event_id: uuid.UUID, lease_token: str, worker_id: str) -> str:
    """
    Apply one leased event. Returns the outcome:
    applied, duplicate, retry, deferred, dead_lettered or lease_lost.
    """
    settings = get_settings()

    async with async_session_factory() as db:
        event = await get_event(db, event_id)
        if event is None or event.lease_token != lease_token:
            logger.warning(
                "Lease lost before processing event %s", str(event_id)[:8],
                extra=_log_extra(event_id, worker_id),
            )
            return OUTCOME_LEASE_LOST

        set_correlation_id(event.correlation_id or generate_correlation_id())
        project_id = event.project_id
        kind = event.kind
        source_id = event.source_id
        dedup_key = event.dedup_key

        try:
            if await find_applied(db, source_id, dedup_key) is not None:
                await ack(db, event_id, lease_token)
                await db.commit()
                logger.info(
                    "Duplicate event acked without re-applying: id=%s key=%s",
                    str(event_id)[:8], dedup_key[:40],
                    extra=_log_extra(event_id, worker_id, source_id=source_id),
                )
                return OUTCOME_DUPLICATE

            result = await asyncio.wait_for(
                dispatch_event(db, event),
                timeout=settings.handler_timeout_seconds,
            )
            await record_applied(db, event)
            await ack(db, event_id, lease_token)
            await db.commit()

        except IntegrityError as e:
            await db.rollback()
            return await _resolve_conflict(db, event_id, lease_token, worker_id, source_id, dedup_key, e)
        except LeaseLostError as e:
            await db.rollback()
            logger.warning(
                "Lease lost while processing event %s: %s", str(event_id)[:8], str(e),
                extra=_log_extra(event_id, worker_id),
            )
            return OUTCOME_LEASE_LOST
        except PermanentProcessingFailure as e:
            await db.rollback()
            return await _record_failure(db, event_id, lease_token, worker_id, str(e), permanent=True)
        except CircuitOpenError as e:
            await db.rollback()
            return await _record_failure(
                db, event_id, lease_token, worker_id, str(e),
                defer_seconds=e.retry_after or settings.breaker_cooldown_seconds,
            )
        except asyncio.TimeoutError:
            await db.rollback()
            error = f"Handler timed out after {settings.handler_timeout_seconds}s"
            return await _record_failure(db, event_id, lease_token, worker_id, error)
        except Exception as e:
            await db.rollback()
            error = f"{type(e).__name__}: {str(e)}"
            return await _record_failure(db, event_id, lease_token, worker_id, error)

    logger.info(
        "Event applied: id=%s kind=%s action=%s",
        str(event_id)[:8], kind, result.get("action"),
        extra=_log_extra(event_id, worker_id, source_id=source_id, project_id=str(project_id)),
    )
    if not result.get("recorded_only"):
        await invalidate(project_id, kind, event_id)
    return OUTCOME_APPLIED


async def _resolve_conflict(
    db,
    event_id: uuid.UUID,
    lease_token: str,
    worker_id: str,
    source_id: str,
    dedup_key: str,
    error: IntegrityError,
) -> str:
    """
    A unique constraint fired at commit. If another delivery recorded the same
    idempotency key first, this copy is a duplicate; otherwise retry it.
    """
    if await find_applied(db, source_id, dedup_key) is None:
        return await _record_failure(
            db, event_id, lease_token, worker_id, f"IntegrityError: {str(error.orig)[:500]}",
        )
    try:
        await ack(db, event_id, lease_token)
        await db.commit()
    except LeaseLostError:
        await db.rollback()
        return OUTCOME_LEASE_LOST
    logger.info(
        "Concurrent delivery already applied event key %s, acked as duplicate", dedup_key[:40],
        extra=_log_extra(event_id, worker_id, source_id=source_id),
    )
    return OUTCOME_DUPLICATE


async def _record_failure(
    db,
    event_id: uuid.UUID,
    lease_token: str,
    worker_id: str,
    error: str,
    permanent: bool = False,
    defer_seconds: Optional[float] = None,
) -> str:
    """Report a failed attempt to the queue in its own transaction."""
    try:
        outcome = await fail(
            db, event_id, error,
            lease_token=lease_token, permanent=permanent, defer_seconds=defer_seconds,
        )
        await db.commit()
    except LeaseLostError as e:
        await db.rollback()
        logger.warning(
            "Lease lost while recording failure for %s: %s", str(event_id)[:8], str(e),
            extra=_log_extra(event_id, worker_id),
        )
        return OUTCOME_LEASE_LOST
    except Exception as e:
        await db.rollback()
        # Lease expiry redelivers the event; the attempt is simply not counted
        logger.error(
            "Could not record failure for event %s: %s", str(event_id)[:8], str(e),
            extra=_log_extra(event_id, worker_id, error_code="fail_not_recorded"),
        )
        return OUTCOME_RETRY

    if not outcome.dead_lettered:
        return OUTCOME_RETRY if defer_seconds is None else OUTCOME_DEFERRED

    if permanent:
        reason = f"Event {str(event_id)[:8]} failed permanently: {error[:200]}"
    else:
        reason = str(DeliveryExhausted(str(event_id)[:8], outcome.attempt_count, error[:200]))
    await send_alert(
        AlertType.DEAD_LETTERED,
        reason,
        extra={"event_id": str(event_id), "dead_letter_id": str(outcome.dead_letter_id)},
    )
    return OUTCOME_DEAD_LETTERED


async def _backlog_monitor() -> None:
    """Alert when the oldest due event has waited too long."""
    while True:
        await asyncio.sleep(BACKLOG_CHECK_INTERVAL_SECONDS)
        try:
            await check_backlog()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Backlog check failed: %s", str(e))


async def check_backlog(threshold_seconds: int = BACKLOG_ALERT_AGE_SECONDS) -> Optional[float]:
    """Return the oldest due event's age, alerting when it exceeds the threshold."""
    async with async_session_factory() as db:
        stats = await queue_stats(db)

    age = stats["oldest_available_age_seconds"]
    if age is not None and age > threshold_seconds:
        await send_alert(
            AlertType.QUEUE_BACKLOG,
            f"Oldest queued event has waited {int(age)}s ({stats['counts']['queued']} queued)",
            severity="warning",
            extra=stats["counts"],
        )
    return age
