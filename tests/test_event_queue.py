"""
Tests for src/services/event_queue.py - enqueue, lease, ack, fail, backoff.
"""
import asyncio
import uuid
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import func, select, update

from src.models.dead_letter_entry import DeadLetterEntry
from src.models.queued_event import (
    STATUS_ACKED,
    STATUS_DEAD_LETTERED,
    STATUS_LEASED,
    STATUS_QUEUED,
    QueuedEvent,
)
from src.schemas.events import EventKind
from src.services.event_queue import (
    QUEUE_NOTIFY_KEY,
    ack,
    compute_backoff,
    enqueue,
    fail,
    get_event,
    lease,
    notify_workers,
    queue_stats,
    requeue,
)
from src.utils.errors import LeaseLostError
from src.utils.timezone import ensure_utc, utcnow
from tests.conftest import make_event

LEASE_SECONDS = 30


def _fixed_backoff(attempt):
    return 10.0


async def _enqueue(db, project, **kwargs):
    row = await enqueue(db, make_event(project.id, **kwargs), max_attempts=3)
    await db.commit()
    return row


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------

class TestComputeBackoff:
    def test_doubles_without_jitter(self):
        delays = [compute_backoff(n, rng=lambda: 0.0) for n in range(1, 7)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 16.0]

    def test_jitter_bounds(self):
        for attempt in range(1, 8):
            interval = min(2 ** (attempt - 1), 16)
            low = compute_backoff(attempt, rng=lambda: 0.0)
            high = compute_backoff(attempt, rng=lambda: 1.0)
            assert low == interval
            assert high == pytest.approx(interval * 1.2)

    def test_minimum_delay_non_decreasing(self):
        minimums = [compute_backoff(n, rng=lambda: 0.0) for n in range(1, 10)]
        assert minimums == sorted(minimums)

    def test_custom_base_and_cap(self):
        assert compute_backoff(3, base_seconds=0.5, cap_seconds=1.0, rng=lambda: 0.0) == 1.0


# ---------------------------------------------------------------------------
# Enqueue / lease
# ---------------------------------------------------------------------------

class TestEnqueue:
    async def test_enqueued_event_is_immediately_available(self, db, project):
        row = await _enqueue(db, project)

        stored = await get_event(db, row.event_id)
        assert stored.status == STATUS_QUEUED
        assert stored.attempt_count == 0
        assert stored.lease_version == 0
        assert stored.kind == EventKind.TASK_STARTED.value
        assert stored.payload == {"task_id": "T-1"}


class TestLease:
    async def test_lease_claims_event(self, db, project):
        row = await _enqueue(db, project)
        now = utcnow()

        leased = await lease(db, "w-1", batch_size=10, lease_seconds=LEASE_SECONDS, now=now)
        await db.commit()

        assert [e.event_id for e in leased] == [row.event_id]
        event = leased[0]
        assert event.status == STATUS_LEASED
        assert event.lease_owner == "w-1"
        assert event.lease_token
        assert event.lease_version == 1
        assert event.delivery_count == 1
        assert event.attempt_count == 0
        assert ensure_utc(event.available_at) == now + timedelta(seconds=LEASE_SECONDS)

    async def test_leased_event_not_visible_to_other_workers(self, db, project):
        await _enqueue(db, project)
        now = utcnow()

        first = await lease(db, "w-1", 10, LEASE_SECONDS, now=now)
        await db.commit()
        second = await lease(db, "w-2", 10, LEASE_SECONDS, now=now + timedelta(seconds=LEASE_SECONDS - 1))

        assert len(first) == 1
        assert second == []

    async def test_expired_lease_can_be_reclaimed(self, db, project):
        row = await _enqueue(db, project)
        now = utcnow()

        first = await lease(db, "w-1", 10, LEASE_SECONDS, now=now)
        first_token = first[0].lease_token
        await db.commit()

        later = now + timedelta(seconds=LEASE_SECONDS + 1)
        second = await lease(db, "w-2", 10, LEASE_SECONDS, now=later)
        await db.commit()

        assert second[0].event_id == row.event_id
        assert second[0].lease_owner == "w-2"
        assert second[0].lease_token != first_token
        assert second[0].delivery_count == 2
        assert second[0].attempt_count == 0

    async def test_stale_holder_cannot_ack_after_reclaim(self, db, project):
        row = await _enqueue(db, project)
        now = utcnow()

        first = await lease(db, "w-1", 10, LEASE_SECONDS, now=now)
        stale_token = first[0].lease_token
        await db.commit()
        await lease(db, "w-2", 10, LEASE_SECONDS, now=now + timedelta(seconds=LEASE_SECONDS + 1))
        await db.commit()

        with pytest.raises(LeaseLostError):
            await ack(db, row.event_id, lease_token=stale_token)
        with pytest.raises(LeaseLostError):
            await fail(db, row.event_id, "boom", lease_token=stale_token, backoff=_fixed_backoff)

    async def test_future_events_are_not_leased(self, db, project):
        now = utcnow()
        event = make_event(project.id)
        event.available_at = now + timedelta(minutes=5)
        await enqueue(db, event)
        await db.commit()

        assert await lease(db, "w-1", 10, LEASE_SECONDS, now=now) == []

    async def test_batch_size_is_respected(self, db, project):
        for _ in range(5):
            await _enqueue(db, project)

        leased = await lease(db, "w-1", batch_size=2, lease_seconds=LEASE_SECONDS)
        await db.commit()
        assert len(leased) == 2

    async def test_oldest_first(self, db, project):
        now = utcnow()
        ids = []
        for offset in (30, 10, 20):
            event = make_event(project.id)
            event.available_at = now - timedelta(seconds=offset)
            ids.append((offset, (await enqueue(db, event)).event_id))
        await db.commit()

        leased = await lease(db, "w-1", 1, LEASE_SECONDS, now=now)
        assert leased[0].event_id == dict(ids)[30]

    async def test_concurrent_workers_never_share_an_event(self, session_factory, project):
        async with session_factory() as db:
            for _ in range(20):
                await enqueue(db, make_event(project.id), max_attempts=3)
            await db.commit()

        async def _worker(worker_id):
            async with session_factory() as db:
                events = await lease(db, worker_id, 5, LEASE_SECONDS)
                await db.commit()
                return [(e.event_id, worker_id) for e in events]

        claimed = []
        for _ in range(10):
            batches = await asyncio.gather(*(_worker(f"w-{i}") for i in range(6)))
            round_claims = [claim for batch in batches for claim in batch]
            if not round_claims:
                break
            claimed.extend(round_claims)

        event_ids = [event_id for event_id, _ in claimed]
        assert len(event_ids) == 20
        assert len(set(event_ids)) == 20

        async with session_factory() as db:
            rows = (await db.execute(select(QueuedEvent))).scalars().all()
        owners = {row.event_id: row.lease_owner for row in rows}
        assert all(row.status == STATUS_LEASED for row in rows)
        assert all(row.delivery_count == 1 for row in rows)
        assert all(owners[event_id] == worker_id for event_id, worker_id in claimed)

    async def test_claim_lost_between_select_and_update(self, db, session_factory, project):
        row = await _enqueue(db, project)
        select_then_claim = db.execute
        calls = 0

        async def _execute_with_rival(statement, *args, **kwargs):
            nonlocal calls
            result = await select_then_claim(statement, *args, **kwargs)
            calls += 1
            if calls == 1:
                # Another worker claims the row after our candidate select
                async with session_factory() as rival:
                    await rival.execute(
                        update(QueuedEvent)
                        .where(QueuedEvent.event_id == row.event_id)
                        .values(lease_version=QueuedEvent.lease_version + 1, lease_owner="w-2")
                    )
                    await rival.commit()
            return result

        with patch.object(db, "execute", new=_execute_with_rival):
            leased = await lease(db, "w-1", 10, LEASE_SECONDS)
        await db.commit()

        assert leased == []
        stored = await get_event(db, row.event_id)
        assert stored.lease_owner == "w-2"
        assert stored.lease_token is None
        assert stored.delivery_count == 0


# ---------------------------------------------------------------------------
# Ack / fail
# ---------------------------------------------------------------------------

class TestAck:
    async def test_ack_finalizes_event(self, db, project):
        row = await _enqueue(db, project)
        leased = await lease(db, "w-1", 10, LEASE_SECONDS)
        await ack(db, row.event_id, lease_token=leased[0].lease_token)
        await db.commit()

        stored = await get_event(db, row.event_id)
        assert stored.status == STATUS_ACKED
        assert stored.acked_at is not None
        assert stored.lease_token is None

    async def test_acked_event_is_never_leased_again(self, db, project):
        row = await _enqueue(db, project)
        leased = await lease(db, "w-1", 10, LEASE_SECONDS)
        await ack(db, row.event_id, lease_token=leased[0].lease_token)
        await db.commit()

        assert await lease(db, "w-2", 10, LEASE_SECONDS, now=utcnow() + timedelta(days=1)) == []

    async def test_double_ack_raises(self, db, project):
        row = await _enqueue(db, project)
        await ack(db, row.event_id)
        await db.commit()

        with pytest.raises(LeaseLostError):
            await ack(db, row.event_id)

    async def test_wrong_token_raises(self, db, project):
        row = await _enqueue(db, project)
        await lease(db, "w-1", 10, LEASE_SECONDS)
        await db.commit()

        with pytest.raises(LeaseLostError):
            await ack(db, row.event_id, lease_token=uuid.uuid4().hex)


class TestFail:
    async def test_failure_schedules_retry_with_backoff(self, db, project):
        row = await _enqueue(db, project)
        now = utcnow()
        leased = await lease(db, "w-1", 10, LEASE_SECONDS, now=now)

        outcome = await fail(
            db, row.event_id, "timeout", lease_token=leased[0].lease_token,
            now=now, backoff=_fixed_backoff,
        )
        await db.commit()

        assert outcome.status == STATUS_QUEUED
        assert outcome.attempt_count == 1
        assert outcome.available_at == now + timedelta(seconds=10)
        assert outcome.dead_lettered is False

        stored = await get_event(db, row.event_id)
        assert stored.status == STATUS_QUEUED
        assert stored.last_error == "timeout"
        assert stored.first_failed_at is not None
        assert await lease(db, "w-1", 10, LEASE_SECONDS, now=now + timedelta(seconds=5)) == []

    async def test_retry_ceiling_dead_letters_exactly_once(self, db, project):
        row = await _enqueue(db, project)
        now = utcnow()

        outcomes = []
        for attempt in range(3):
            leased = await lease(db, "w-1", 10, LEASE_SECONDS, now=now)
            assert len(leased) == 1
            outcomes.append(await fail(
                db, row.event_id, f"error {attempt}", lease_token=leased[0].lease_token,
                now=now, backoff=_fixed_backoff,
            ))
            await db.commit()
            now = now + timedelta(seconds=11)

        assert [o.status for o in outcomes] == [STATUS_QUEUED, STATUS_QUEUED, STATUS_DEAD_LETTERED]
        assert outcomes[-1].dead_letter_id is not None

        stored = await get_event(db, row.event_id)
        assert stored.status == STATUS_DEAD_LETTERED
        assert stored.attempt_count == 3

        count = (await db.execute(select(func.count()).select_from(DeadLetterEntry))).scalar()
        assert count == 1
        entry = (await db.execute(select(DeadLetterEntry))).scalar_one()
        assert entry.last_error == "error 2"
        assert entry.attempt_count == 3
        assert entry.permanent is False

        assert await lease(db, "w-1", 10, LEASE_SECONDS, now=now + timedelta(days=1)) == []

    async def test_permanent_failure_skips_retries(self, db, project):
        row = await _enqueue(db, project)
        leased = await lease(db, "w-1", 10, LEASE_SECONDS)

        outcome = await fail(
            db, row.event_id, "project deleted", lease_token=leased[0].lease_token, permanent=True,
        )
        await db.commit()

        assert outcome.dead_lettered is True
        assert outcome.attempt_count == 1
        entry = (await db.execute(select(DeadLetterEntry))).scalar_one()
        assert entry.permanent is True

    async def test_fail_after_ack_raises(self, db, project):
        row = await _enqueue(db, project)
        await ack(db, row.event_id)
        await db.commit()

        with pytest.raises(LeaseLostError):
            await fail(db, row.event_id, "late", backoff=_fixed_backoff)

    async def test_long_error_is_truncated(self, db, project):
        row = await _enqueue(db, project)
        await fail(db, row.event_id, "x" * 10000, backoff=_fixed_backoff)
        await db.commit()

        stored = await get_event(db, row.event_id)
        assert len(stored.last_error) == 4000

    async def test_deferral_does_not_spend_attempts(self, db, project):
        row = await _enqueue(db, project)
        now = utcnow()

        for _ in range(5):
            leased = await lease(db, "w-1", 10, LEASE_SECONDS, now=now)
            assert len(leased) == 1
            outcome = await fail(
                db, row.event_id, "Circuit 'github_api' is open",
                lease_token=leased[0].lease_token, now=now, defer_seconds=30,
            )
            await db.commit()
            assert outcome.status == STATUS_QUEUED
            assert outcome.attempt_count == 0
            assert outcome.available_at == now + timedelta(seconds=30)
            now = now + timedelta(seconds=31)

        stored = await get_event(db, row.event_id)
        assert stored.status == STATUS_QUEUED
        assert stored.attempt_count == 0
        assert stored.delivery_count == 5
        count = (await db.execute(select(func.count()).select_from(DeadLetterEntry))).scalar()
        assert count == 0

    async def test_deferred_event_not_leased_early(self, db, project):
        row = await _enqueue(db, project)
        now = utcnow()
        leased = await lease(db, "w-1", 10, LEASE_SECONDS, now=now)
        await fail(db, row.event_id, "open", lease_token=leased[0].lease_token, now=now, defer_seconds=30)
        await db.commit()

        assert await lease(db, "w-1", 10, LEASE_SECONDS, now=now + timedelta(seconds=29)) == []
        assert len(await lease(db, "w-1", 10, LEASE_SECONDS, now=now + timedelta(seconds=31))) == 1

    async def test_permanent_wins_over_deferral(self, db, project):
        row = await _enqueue(db, project)
        outcome = await fail(db, row.event_id, "gone", permanent=True, defer_seconds=30)
        await db.commit()

        assert outcome.dead_lettered is True


class TestRequeue:
    async def test_requeue_requires_dead_letter(self, db, project):
        row = await _enqueue(db, project)
        with pytest.raises(ValueError):
            await requeue(db, row)


# ---------------------------------------------------------------------------
# Stats and notifications
# ---------------------------------------------------------------------------

class TestQueueStats:
    async def test_counts_and_oldest_age(self, db, project):
        now = utcnow()
        old = make_event(project.id)
        old.available_at = now - timedelta(seconds=120)
        await enqueue(db, old)
        acked = await enqueue(db, make_event(project.id))
        await db.commit()
        await ack(db, acked.event_id)
        await db.commit()

        stats = await queue_stats(db, now=now)

        assert stats["counts"][STATUS_QUEUED] == 1
        assert stats["counts"][STATUS_ACKED] == 1
        assert stats["counts"][STATUS_LEASED] == 0
        assert stats["oldest_available_age_seconds"] == pytest.approx(120, abs=1)
        assert stats["dead_letters_pending_review"] == 0

    async def test_empty_queue(self, db):
        stats = await queue_stats(db)
        assert stats["oldest_available_age_seconds"] is None
        assert sum(stats["counts"].values()) == 0


class TestNotifyWorkers:
    async def test_pushes_event_id(self, fake_redis):
        event_id = uuid.uuid4()
        await notify_workers(event_id)
        assert fake_redis.lists[QUEUE_NOTIFY_KEY] == [str(event_id)]

    async def test_redis_failure_is_swallowed(self):
        from unittest.mock import AsyncMock, patch
        with patch("src.utils.dedup.get_redis", new_callable=AsyncMock, side_effect=ConnectionError("down")):
            await notify_workers(uuid.uuid4())
