"""
Event handlers - apply one CanonicalEvent to project state.

Each handler receives the open transaction, the owning project, the queued
event and its typed payload, and returns a result dict that becomes the
EventLog receipt. Handlers never commit; the dispatcher commits the
mutation, the idempotency record and the ack together.

The queue gives no per-entity ordering, so every handler tolerates
reordering: missing tasks are created on demand, completed tasks never
regress, and pull request state is latest-wins on occurred_at.
"""
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.integrations.github_api import fetch_commit_stats
from src.models.agent_task import (
    TASK_BLOCKED,
    TASK_COMPLETED,
    TASK_IN_PROGRESS,
    AgentTask,
)
from src.models.event_log import EventLog
from src.models.metrics import CommitMetric, TestRun
from src.models.project import Project
from src.models.pull_request import PR_CLOSED, PR_MERGED, PR_OPEN, PullRequest
from src.models.queued_event import QueuedEvent
from src.schemas.events import (
    BlockerPayload,
    CodeCommitPayload,
    EventKind,
    PULL_REQUEST_KINDS,
    PullRequestPayload,
    TaskCompletedPayload,
    TaskStartedPayload,
    TestExecutionPayload,
    parse_payload,
)
from src.utils.errors import PermanentProcessingFailure
from src.utils.metrics import Timer
from src.utils.timezone import ensure_utc, parse_timestamp

logger = logging.getLogger(__name__)

MAX_BLOCKERS = 50

Handler = Callable[[AsyncSession, Project, QueuedEvent, BaseModel], Awaitable[dict]]


def _later(current: Optional[datetime], candidate: datetime) -> datetime:
    current = ensure_utc(current)
    candidate = ensure_utc(candidate)
    if current is None or candidate > current:
        return candidate
    return current


def _earlier(current: Optional[datetime], candidate: datetime) -> datetime:
    current = ensure_utc(current)
    candidate = ensure_utc(candidate)
    if current is None or candidate < current:
        return candidate
    return current


async def get_or_create_task(
    db: AsyncSession,
    project_id,
    external_task_id: str,
    agent_id: Optional[str] = None,
) -> AgentTask:
    """Find a task by its agent-side id, creating it if this is the first event seen."""
    result = await db.execute(
        select(AgentTask).where(
            AgentTask.project_id == project_id,
            AgentTask.external_task_id == external_task_id,
        )
    )
    task = result.scalar_one_or_none()
    if task is None:
        task = AgentTask(
            project_id=project_id,
            external_task_id=external_task_id,
            agent_id=agent_id,
            blockers=[],
            commit_count=0,
            lines_added=0,
            lines_deleted=0,
            tests_passed=0,
            tests_failed=0,
        )
        db.add(task)
        await db.flush()
        logger.info("Task %s created on demand", external_task_id[:40])
    elif agent_id and not task.agent_id:
        task.agent_id = agent_id
    return task


# --- Task lifecycle ---

async def _handle_task_started(
    db: AsyncSession, project: Project, event: QueuedEvent, payload: TaskStartedPayload,
) -> dict:
    occurred_at = ensure_utc(event.occurred_at)
    task = await get_or_create_task(db, project.id, payload.task_id, payload.agent_id)
    if payload.title and not task.title:
        task.title = payload.title

    task.started_at = _earlier(task.started_at, occurred_at)
    task.last_event_at = _later(task.last_event_at, occurred_at)

    # A late task_started must not undo a completion or an open blocker
    if task.status not in (TASK_COMPLETED, TASK_BLOCKED):
        task.status = TASK_IN_PROGRESS

    return {"action": "task_started", "task_id": payload.task_id, "status": task.status}


async def _handle_task_completed(
    db: AsyncSession, project: Project, event: QueuedEvent, payload: TaskCompletedPayload,
) -> dict:
    occurred_at = ensure_utc(event.occurred_at)
    task = await get_or_create_task(db, project.id, payload.task_id, payload.agent_id)
    if payload.title and not task.title:
        task.title = payload.title

    task.status = TASK_COMPLETED
    task.completed_at = _later(task.completed_at, occurred_at)
    task.last_event_at = _later(task.last_event_at, occurred_at)

    return {"action": "task_completed", "task_id": payload.task_id, "status": task.status}


async def _handle_blocker(
    db: AsyncSession, project: Project, event: QueuedEvent, payload: BlockerPayload,
) -> dict:
    occurred_at = ensure_utc(event.occurred_at)
    task = await get_or_create_task(db, project.id, payload.task_id, payload.agent_id)

    blocker = {
        "description": payload.description[:2000],
        "severity": payload.severity,
        "reported_at": occurred_at.isoformat(),
        "event_id": str(event.event_id),
    }
    # New list so the JSON column is seen as changed
    task.blockers = (list(task.blockers or []) + [blocker])[-MAX_BLOCKERS:]
    task.last_event_at = _later(task.last_event_at, occurred_at)
    if task.status != TASK_COMPLETED:
        task.status = TASK_BLOCKED

    return {
        "action": "blocker_identified",
        "task_id": payload.task_id,
        "severity": payload.severity,
        "status": task.status,
    }


# --- Metrics ---

async def _handle_code_commit(
    db: AsyncSession, project: Project, event: QueuedEvent, payload: CodeCommitPayload,
) -> dict:
    occurred_at = ensure_utc(event.occurred_at)
    repository = payload.repository or project.repository

    task = None
    if payload.task_id:
        task = await get_or_create_task(db, project.id, payload.task_id, payload.agent_id)
        task.last_event_at = _later(task.last_event_at, occurred_at)

    recorded = 0
    skipped = 0
    fetched = 0
    for commit in payload.commits:
        existing = await db.execute(
            select(CommitMetric.id).where(
                CommitMetric.project_id == project.id,
                CommitMetric.sha == commit.sha,
            )
        )
        if existing.scalar_one_or_none() is not None:
            # Same commit reported by both the agent and the push webhook
            skipped += 1
            continue

        lines_added = commit.lines_added
        lines_deleted = commit.lines_deleted
        files_changed = commit.files_changed
        if repository and (lines_added is None or lines_deleted is None):
            # An open breaker defers the event; other transient failures retry it
            stats = await fetch_commit_stats(repository, commit.sha)
            if stats:
                fetched += 1
                lines_added = lines_added if lines_added is not None else stats["lines_added"]
                lines_deleted = lines_deleted if lines_deleted is not None else stats["lines_deleted"]
                files_changed = files_changed if files_changed is not None else stats["files_changed"]

        db.add(CommitMetric(
            project_id=project.id,
            task_id=task.id if task else None,
            sha=commit.sha,
            message=(commit.message or "")[:1000] or None,
            author=commit.author,
            lines_added=lines_added,
            lines_deleted=lines_deleted,
            files_changed=files_changed,
            committed_at=parse_timestamp(commit.timestamp) or occurred_at,
        ))
        recorded += 1

        if task is not None:
            task.commit_count = (task.commit_count or 0) + 1
            task.lines_added = (task.lines_added or 0) + (lines_added or 0)
            task.lines_deleted = (task.lines_deleted or 0) + (lines_deleted or 0)

    await db.flush()
    return {
        "action": "commits_recorded",
        "recorded": recorded,
        "skipped_existing": skipped,
        "stats_fetched": fetched,
        "task_id": payload.task_id,
    }


async def _handle_test_execution(
    db: AsyncSession, project: Project, event: QueuedEvent, payload: TestExecutionPayload,
) -> dict:
    occurred_at = ensure_utc(event.occurred_at)

    task = None
    if payload.task_id:
        task = await get_or_create_task(db, project.id, payload.task_id, payload.agent_id)
        task.tests_passed = (task.tests_passed or 0) + payload.passed
        task.tests_failed = (task.tests_failed or 0) + payload.failed
        task.last_event_at = _later(task.last_event_at, occurred_at)

    db.add(TestRun(
        project_id=project.id,
        task_id=task.id if task else None,
        event_id=event.event_id,
        total=payload.total,
        passed=payload.passed,
        failed=payload.failed,
        skipped=payload.skipped,
        coverage_percent=payload.coverage_percent,
        duration_ms=payload.duration_ms,
        ran_at=occurred_at,
    ))
    await db.flush()
    return {
        "action": "test_run_recorded",
        "total": payload.total,
        "passed": payload.passed,
        "failed": payload.failed,
        "task_id": payload.task_id,
    }


# --- Pull requests ---

PR_STATE_BY_KIND = {
    EventKind.PULL_REQUEST_OPENED.value: PR_OPEN,
    EventKind.PULL_REQUEST_REOPENED.value: PR_OPEN,
    EventKind.PULL_REQUEST_SYNCHRONIZED.value: PR_OPEN,
    EventKind.PULL_REQUEST_CLOSED.value: PR_CLOSED,
    EventKind.PULL_REQUEST_MERGED.value: PR_MERGED,
}


async def _handle_pull_request(
    db: AsyncSession, project: Project, event: QueuedEvent, payload: PullRequestPayload,
) -> dict:
    occurred_at = ensure_utc(event.occurred_at)
    result = await db.execute(
        select(PullRequest).where(
            PullRequest.project_id == project.id,
            PullRequest.repository == payload.repository,
            PullRequest.number == payload.number,
        )
    )
    pr = result.scalar_one_or_none()
    if pr is None:
        pr = PullRequest(
            project_id=project.id,
            repository=payload.repository,
            number=payload.number,
        )
        db.add(pr)

    for attr in ("title", "author", "head_branch"):
        value = getattr(payload, attr)
        if value and not getattr(pr, attr):
            setattr(pr, attr, value)

    new_state = PR_STATE_BY_KIND[event.kind]
    if event.kind == EventKind.PULL_REQUEST_OPENED.value:
        pr.opened_at = _earlier(pr.opened_at, occurred_at)

    last = ensure_utc(pr.last_event_at)
    # Merged is terminal, so a merge is applied even when it arrives late
    if last is not None and occurred_at < last and new_state != PR_MERGED:
        await db.flush()
        logger.info(
            "Stale pull request event ignored: %s#%d %s (occurred %s < %s)",
            payload.repository, payload.number, event.kind,
            occurred_at.isoformat(), last.isoformat(),
        )
        return {"action": "pull_request_stale", "state": pr.state, "number": payload.number}

    if new_state == PR_MERGED:
        pr.merged_at = occurred_at
        pr.closed_at = pr.closed_at or occurred_at
        pr.state = PR_MERGED
    elif pr.state != PR_MERGED:
        pr.state = new_state
        if new_state == PR_CLOSED:
            pr.closed_at = occurred_at
    pr.last_event_at = _later(pr.last_event_at, occurred_at)
    await db.flush()

    return {
        "action": event.kind,
        "repository": payload.repository,
        "number": payload.number,
        "state": pr.state,
    }


async def _handle_unclassified(
    db: AsyncSession, project: Project, event: QueuedEvent, payload: BaseModel,
) -> dict:
    original_type = getattr(payload, "original_type", None)
    logger.info(
        "Unclassified event recorded: id=%s type=%s",
        str(event.event_id)[:8], original_type,
        extra={"event_id": str(event.event_id), "project_id": str(project.id)},
    )
    return {
        "action": "event_received",
        "recorded_only": True,
        "original_type": original_type,
    }


HANDLERS: dict[str, Handler] = {
    EventKind.TASK_STARTED.value: _handle_task_started,
    EventKind.TASK_COMPLETED.value: _handle_task_completed,
    EventKind.BLOCKER_IDENTIFIED.value: _handle_blocker,
    EventKind.CODE_COMMIT.value: _handle_code_commit,
    EventKind.TEST_EXECUTION.value: _handle_test_execution,
    EventKind.UNCLASSIFIED.value: _handle_unclassified,
    **{kind.value: _handle_pull_request for kind in PULL_REQUEST_KINDS},
}


async def dispatch_event(db: AsyncSession, event: QueuedEvent) -> dict:
    """
    Route a leased event to its handler and write the EventLog receipt.

    Raises PermanentProcessingFailure when the event can never apply (deleted
    project, payload that no longer parses); anything else propagates for retry.
    """
    timer = Timer().start()

    project = await db.get(Project, event.project_id)
    if project is None or project.deleted_at is not None:
        raise PermanentProcessingFailure(f"Project {str(event.project_id)[:8]} not found or deleted")

    handler = HANDLERS.get(event.kind, _handle_unclassified)
    try:
        payload = parse_payload(event.kind, event.payload or {})
    except (ValidationError, ValueError) as e:
        raise PermanentProcessingFailure(f"Stored payload for {event.kind} is invalid: {e}") from e

    result = await handler(db, project, event, payload)
    recorded_only = bool(result.pop("recorded_only", False))

    db.add(EventLog(
        project_id=project.id,
        event_id=event.event_id,
        source_id=event.source_id,
        action=result.get("action", event.kind),
        status="recorded_only" if recorded_only else "applied",
        handler=handler.__name__.removeprefix("_handle_"),
        duration_ms=timer.stop(),
        data=result,
    ))
    await db.flush()

    result["recorded_only"] = recorded_only
    return result
