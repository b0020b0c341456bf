"""
Tests for src/services/event_handlers.py - applying events to project state.
Events are enqueued first so handlers see real QueuedEvent rows.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from src.models.agent_task import TASK_BLOCKED, TASK_COMPLETED, TASK_IN_PROGRESS, AgentTask
from src.models.event_log import EventLog
from src.models.metrics import CommitMetric, TestRun
from src.models.project import Project
from src.models.pull_request import PR_CLOSED, PR_MERGED, PR_OPEN, PullRequest
from src.schemas.events import EventKind
from src.services.event_handlers import MAX_BLOCKERS, dispatch_event, get_or_create_task
from src.services.event_queue import enqueue
from src.utils.errors import PermanentProcessingFailure, TransientProcessingFailure
from src.utils.timezone import ensure_utc, utcnow
from tests.conftest import make_event

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


async def _apply(db, project, kind, payload, occurred_at=T0, **kwargs):
    row = await enqueue(db, make_event(project.id, kind=kind, payload=payload, occurred_at=occurred_at, **kwargs))
    result = await dispatch_event(db, row)
    await db.commit()
    return result


async def _task(db, project, external_task_id="T-1"):
    result = await db.execute(
        select(AgentTask).where(
            AgentTask.project_id == project.id,
            AgentTask.external_task_id == external_task_id,
        )
    )
    return result.scalar_one()


async def _pr(db, project, number=7):
    result = await db.execute(
        select(PullRequest).where(PullRequest.project_id == project.id, PullRequest.number == number)
    )
    return result.scalar_one()


def _pr_payload(action, number=7, **extra):
    return {"repository": "acme/shop", "number": number, "action": action, **extra}


@pytest.fixture
def no_github():
    with patch(
        "src.services.event_handlers.fetch_commit_stats",
        new_callable=AsyncMock,
        return_value=None,
    ) as mock:
        yield mock


# ---------------------------------------------------------------------------
# Task lifecycle
# ---------------------------------------------------------------------------

class TestTaskLifecycle:
    async def test_task_started_creates_task(self, db, project):
        result = await _apply(db, project, EventKind.TASK_STARTED, {"task_id": "T-1", "title": "Cart", "agent_id": "a-1"})

        task = await _task(db, project)
        assert result["status"] == TASK_IN_PROGRESS
        assert task.title == "Cart"
        assert task.agent_id == "a-1"
        assert ensure_utc(task.started_at) == T0

    async def test_completed_before_started(self, db, project):
        """Reordered delivery: the late task_started must not reopen the task."""
        await _apply(db, project, EventKind.TASK_COMPLETED, {"task_id": "T-1"}, occurred_at=T0 + timedelta(minutes=10))
        await _apply(db, project, EventKind.TASK_STARTED, {"task_id": "T-1", "title": "Cart"}, occurred_at=T0)

        task = await _task(db, project)
        assert task.status == TASK_COMPLETED
        assert ensure_utc(task.started_at) == T0
        assert ensure_utc(task.completed_at) == T0 + timedelta(minutes=10)
        assert ensure_utc(task.last_event_at) == T0 + timedelta(minutes=10)
        assert task.title == "Cart"

    async def test_started_keeps_earliest_time(self, db, project):
        await _apply(db, project, EventKind.TASK_STARTED, {"task_id": "T-1"}, occurred_at=T0 + timedelta(minutes=5))
        await _apply(db, project, EventKind.TASK_STARTED, {"task_id": "T-1"}, occurred_at=T0)

        task = await _task(db, project)
        assert ensure_utc(task.started_at) == T0

    async def test_blocker_marks_task_blocked(self, db, project):
        await _apply(db, project, EventKind.TASK_STARTED, {"task_id": "T-1"})
        result = await _apply(
            db, project, EventKind.BLOCKER_IDENTIFIED,
            {"task_id": "T-1", "description": "CI is red", "severity": "high"},
            occurred_at=T0 + timedelta(minutes=1),
        )

        task = await _task(db, project)
        assert result["status"] == TASK_BLOCKED
        assert task.status == TASK_BLOCKED
        assert task.blockers[0]["description"] == "CI is red"
        assert task.blockers[0]["severity"] == "high"

    async def test_late_start_does_not_clear_blocker(self, db, project):
        await _apply(db, project, EventKind.BLOCKER_IDENTIFIED, {"task_id": "T-1", "description": "x"})
        await _apply(db, project, EventKind.TASK_STARTED, {"task_id": "T-1"})
        assert (await _task(db, project)).status == TASK_BLOCKED

    async def test_blocker_after_completion_keeps_completed(self, db, project):
        await _apply(db, project, EventKind.TASK_COMPLETED, {"task_id": "T-1"})
        await _apply(db, project, EventKind.BLOCKER_IDENTIFIED, {"task_id": "T-1", "description": "x"})

        task = await _task(db, project)
        assert task.status == TASK_COMPLETED
        assert len(task.blockers) == 1

    async def test_blockers_are_capped(self, db, project):
        task = await get_or_create_task(db, project.id, "T-1")
        task.blockers = [{"description": str(i)} for i in range(MAX_BLOCKERS)]
        await db.commit()

        await _apply(db, project, EventKind.BLOCKER_IDENTIFIED, {"task_id": "T-1", "description": "newest"})

        task = await _task(db, project)
        assert len(task.blockers) == MAX_BLOCKERS
        assert task.blockers[-1]["description"] == "newest"
        assert task.blockers[0]["description"] == "1"


# ---------------------------------------------------------------------------
# Commits and test runs
# ---------------------------------------------------------------------------

class TestCodeCommit:
    async def test_commit_with_stats(self, db, project, no_github):
        payload = {
            "task_id": "T-1",
            "commits": [{"sha": "abc1234", "message": "fix", "lines_added": 10, "lines_deleted": 2}],
        }
        result = await _apply(db, project, EventKind.CODE_COMMIT, payload)

        assert result["recorded"] == 1
        no_github.assert_not_awaited()
        task = await _task(db, project)
        assert task.commit_count == 1
        assert task.lines_added == 10
        assert task.lines_deleted == 2

    async def test_missing_stats_fetched_from_github(self, db, project, no_github):
        no_github.return_value = {"lines_added": 40, "lines_deleted": 5, "files_changed": 3}
        payload = {"task_id": "T-1", "commits": [{"sha": "def5678"}]}

        result = await _apply(db, project, EventKind.CODE_COMMIT, payload)

        no_github.assert_awaited_once_with("acme/shop", "def5678")
        assert result["stats_fetched"] == 1
        metric = (await db.execute(select(CommitMetric))).scalar_one()
        assert metric.lines_added == 40
        assert metric.files_changed == 3
        assert (await _task(db, project)).lines_added == 40

    async def test_github_unavailable_propagates_for_retry(self, db, project, no_github):
        no_github.side_effect = TransientProcessingFailure("GitHub 503")
        row = await enqueue(db, make_event(project.id, kind=EventKind.CODE_COMMIT, payload={"commits": [{"sha": "def5678"}]}))

        with pytest.raises(TransientProcessingFailure):
            await dispatch_event(db, row)

    async def test_project_without_repository_skips_fetch(self, db, no_github):
        project = Project(name="Local only")
        db.add(project)
        await db.commit()

        await _apply(db, project, EventKind.CODE_COMMIT, {"commits": [{"sha": "def5678"}]})
        no_github.assert_not_awaited()

    async def test_same_sha_recorded_once(self, db, project, no_github):
        payload = {"task_id": "T-1", "commits": [{"sha": "abc1234", "lines_added": 1, "lines_deleted": 0}]}
        await _apply(db, project, EventKind.CODE_COMMIT, payload)
        result = await _apply(db, project, EventKind.CODE_COMMIT, payload)

        assert result["recorded"] == 0
        assert result["skipped_existing"] == 1
        assert (await _task(db, project)).commit_count == 1


class TestTestExecution:
    async def test_run_recorded_and_counted(self, db, project):
        payload = {"task_id": "T-1", "total": 12, "passed": 10, "failed": 2, "coverage_percent": 77.0}
        await _apply(db, project, EventKind.TEST_EXECUTION, payload)
        await _apply(db, project, EventKind.TEST_EXECUTION, {**payload, "failed": 0, "passed": 12})

        runs = (await db.execute(select(TestRun))).scalars().all()
        assert len(runs) == 2
        task = await _task(db, project)
        assert task.tests_passed == 22
        assert task.tests_failed == 2

    async def test_run_without_task(self, db, project):
        await _apply(db, project, EventKind.TEST_EXECUTION, {"total": 3, "passed": 3})
        run = (await db.execute(select(TestRun))).scalar_one()
        assert run.task_id is None


# ---------------------------------------------------------------------------
# Pull requests
# ---------------------------------------------------------------------------

class TestPullRequests:
    async def test_opened(self, db, project):
        await _apply(db, project, EventKind.PULL_REQUEST_OPENED, _pr_payload("opened", title="Cart"))

        pr = await _pr(db, project)
        assert pr.state == PR_OPEN
        assert pr.title == "Cart"
        assert ensure_utc(pr.opened_at) == T0

    async def test_latest_event_wins(self, db, project):
        await _apply(db, project, EventKind.PULL_REQUEST_SYNCHRONIZED, _pr_payload("synchronize"), occurred_at=T0 + timedelta(hours=1))
        result = await _apply(db, project, EventKind.PULL_REQUEST_CLOSED, _pr_payload("closed"), occurred_at=T0)

        assert result["action"] == "pull_request_stale"
        pr = await _pr(db, project)
        assert pr.state == PR_OPEN
        assert pr.closed_at is None
        assert ensure_utc(pr.last_event_at) == T0 + timedelta(hours=1)

    async def test_closed_then_reopened(self, db, project):
        await _apply(db, project, EventKind.PULL_REQUEST_CLOSED, _pr_payload("closed"), occurred_at=T0)
        await _apply(db, project, EventKind.PULL_REQUEST_REOPENED, _pr_payload("reopened"), occurred_at=T0 + timedelta(minutes=1))
        assert (await _pr(db, project)).state == PR_OPEN

    async def test_late_merge_still_applies(self, db, project):
        await _apply(db, project, EventKind.PULL_REQUEST_SYNCHRONIZED, _pr_payload("synchronize"), occurred_at=T0 + timedelta(hours=1))
        await _apply(db, project, EventKind.PULL_REQUEST_MERGED, _pr_payload("closed", merged=True), occurred_at=T0)

        pr = await _pr(db, project)
        assert pr.state == PR_MERGED
        assert ensure_utc(pr.merged_at) == T0

    async def test_merged_is_terminal(self, db, project):
        await _apply(db, project, EventKind.PULL_REQUEST_MERGED, _pr_payload("closed", merged=True), occurred_at=T0)
        await _apply(db, project, EventKind.PULL_REQUEST_REOPENED, _pr_payload("reopened"), occurred_at=T0 + timedelta(minutes=5))

        pr = await _pr(db, project)
        assert pr.state == PR_MERGED
        assert pr.closed_at is not None

    async def test_late_opened_backfills_opened_at(self, db, project):
        await _apply(db, project, EventKind.PULL_REQUEST_CLOSED, _pr_payload("closed"), occurred_at=T0 + timedelta(hours=2))
        await _apply(db, project, EventKind.PULL_REQUEST_OPENED, _pr_payload("opened"), occurred_at=T0)

        pr = await _pr(db, project)
        assert pr.state == PR_CLOSED
        assert ensure_utc(pr.opened_at) == T0


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

class TestDispatchEvent:
    async def test_writes_event_log_receipt(self, db, project):
        row = await enqueue(db, make_event(project.id, kind=EventKind.TASK_STARTED, payload={"task_id": "T-1"}))
        result = await dispatch_event(db, row)
        await db.commit()

        assert result["recorded_only"] is False
        log = (await db.execute(select(EventLog))).scalar_one()
        assert log.event_id == row.event_id
        assert log.status == "applied"
        assert log.handler == "task_started"
        assert log.action == "task_started"

    async def test_unclassified_is_receipt_only(self, db, project):
        payload = {"original_type": "agent_meditated", "raw": {"minutes": 5}}
        result = await _apply(db, project, EventKind.UNCLASSIFIED, payload)

        assert result["recorded_only"] is True
        log = (await db.execute(select(EventLog))).scalar_one()
        assert log.status == "recorded_only"
        assert log.handler == "unclassified"
        assert (await db.execute(select(AgentTask))).first() is None

    async def test_deleted_project_is_permanent(self, db, project):
        row = await enqueue(db, make_event(project.id))
        project.deleted_at = utcnow()
        await db.commit()

        with pytest.raises(PermanentProcessingFailure):
            await dispatch_event(db, row)

    async def test_invalid_stored_payload_is_permanent(self, db, project):
        row = await enqueue(db, make_event(project.id, kind=EventKind.TASK_STARTED, payload={"no_task": True}))
        with pytest.raises(PermanentProcessingFailure):
            await dispatch_event(db, row)
