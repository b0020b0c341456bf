"""
Admin API - dead-letter review, credential management, event audit.
All routes require the X-Admin-Key header.
"""
import hmac
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.database import get_db
from src.models.dead_letter_entry import DeadLetterEntry
from src.models.queued_event import QueuedEvent
from src.schemas.api_responses import (
    CredentialIssueRequest,
    CredentialIssuedResponse,
    DeadLetterListResponse,
    DeadLetterSummary,
    EventDetail,
    QueueStatsResponse,
)
from src.services.credentials import issue_credential, revoke_credential
from src.services.event_queue import get_event, notify_workers, queue_stats
from src.utils.dead_letter import (
    DeadLetterStateError,
    discard_dead_letter,
    get_dead_letter,
    list_dead_letters,
    replay_dead_letter,
)
from src.utils.errors import PermanentProcessingFailure, SourceConflict, ValidationFailure

logger = logging.getLogger(__name__)


async def require_admin_key(x_admin_key: Optional[str] = Header(default=None)) -> str:
    """Constant-time check of the X-Admin-Key header."""
    expected = get_settings().admin_api_key
    if not expected:
        raise HTTPException(status_code=503, detail="Admin API not configured")
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid admin key")
    return "admin"


router = APIRouter(
    prefix="/api/v1/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin_key)],
)


def _parse_uuid(value: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"{label} not found")


def _dead_letter_summary(entry: DeadLetterEntry, event: QueuedEvent) -> DeadLetterSummary:
    return DeadLetterSummary(
        id=str(entry.id),
        event_id=str(entry.event_id),
        source_id=event.source_id,
        kind=event.kind,
        status=entry.status,
        last_error=entry.last_error,
        attempt_count=entry.attempt_count,
        permanent=bool(entry.permanent),
        first_failed_at=entry.first_failed_at,
        last_failed_at=entry.last_failed_at,
        resolved_at=entry.resolved_at,
        resolved_by=entry.resolved_by,
    )


def _event_detail(event: QueuedEvent) -> EventDetail:
    return EventDetail(
        event_id=str(event.event_id),
        external_event_id=event.external_event_id,
        dedup_key=event.dedup_key,
        source_id=event.source_id,
        project_id=str(event.project_id),
        kind=event.kind,
        status=event.status,
        attempt_count=event.attempt_count,
        max_attempts=event.max_attempts,
        delivery_count=event.delivery_count or 0,
        occurred_at=event.occurred_at,
        received_at=event.received_at,
        available_at=event.available_at,
        acked_at=event.acked_at,
        last_error=event.last_error,
        payload=event.payload or {},
        correlation_id=event.correlation_id,
    )


# --- Dead letters ---

@router.get("/dead-letters", response_model=DeadLetterListResponse)
async def list_dead_letter_entries(
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """List dead-letter entries, newest failure first."""
    try:
        rows, total = await list_dead_letters(db, status=status, limit=limit, offset=offset)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return DeadLetterListResponse(
        entries=[_dead_letter_summary(entry, event) for entry, event in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/dead-letters/{entry_id}")
async def get_dead_letter_entry(
    entry_id: str,
    db: AsyncSession = Depends(get_db),
):
    """One dead-letter entry with its full event."""
    found = await get_dead_letter(db, _parse_uuid(entry_id, "Dead letter"))
    if not found:
        raise HTTPException(status_code=404, detail="Dead letter not found")
    entry, event = found
    return {
        "entry": _dead_letter_summary(entry, event).model_dump(mode="json"),
        "event": _event_detail(event).model_dump(mode="json"),
    }


@router.post("/dead-letters/{entry_id}/replay", response_model=DeadLetterSummary)
async def replay_dead_letter_entry(
    entry_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Re-enqueue a dead-lettered event with a fresh retry budget."""
    try:
        entry = await replay_dead_letter(db, _parse_uuid(entry_id, "Dead letter"))
    except DeadLetterStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if entry is None:
        raise HTTPException(status_code=404, detail="Dead letter not found")

    await db.commit()
    await notify_workers(entry.event_id)
    _, event = await get_dead_letter(db, entry.id)
    return _dead_letter_summary(entry, event)


@router.post("/dead-letters/{entry_id}/discard", response_model=DeadLetterSummary)
async def discard_dead_letter_entry(
    entry_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Give up on a dead-lettered event. The records stay for audit."""
    try:
        entry = await discard_dead_letter(db, _parse_uuid(entry_id, "Dead letter"))
    except DeadLetterStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if entry is None:
        raise HTTPException(status_code=404, detail="Dead letter not found")

    await db.commit()
    _, event = await get_dead_letter(db, entry.id)
    return _dead_letter_summary(entry, event)


# --- Credentials ---

@router.post("/projects/{project_id}/credentials", response_model=CredentialIssuedResponse)
async def issue_project_credential(
    project_id: str,
    payload: CredentialIssueRequest,
    db: AsyncSession = Depends(get_db),
):
    """Issue a webhook token for a source, rotating any active one. The token is shown once."""
    try:
        credential, token, rotated = await issue_credential(
            db, _parse_uuid(project_id, "Project"), payload.source_id, payload.source_type,
        )
    except SourceConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValidationFailure as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PermanentProcessingFailure:
        raise HTTPException(status_code=404, detail="Project not found")

    await db.commit()
    return CredentialIssuedResponse(
        credential_id=str(credential.id),
        project_id=str(credential.project_id),
        source_id=credential.source_id,
        source_type=credential.source_type,
        token=token,
        created_at=credential.created_at,
        rotated=rotated,
    )


@router.delete("/projects/{project_id}/credentials/{source_id}")
async def revoke_project_credential(
    project_id: str,
    source_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Revoke the active credential. Events already queued still process."""
    revoked = await revoke_credential(db, _parse_uuid(project_id, "Project"), source_id)
    if not revoked:
        raise HTTPException(status_code=404, detail="No active credential for this source")
    await db.commit()
    return {"status": "revoked", "project_id": project_id, "source_id": source_id}


# --- Events and queue ---

@router.get("/events/{event_id}", response_model=EventDetail)
async def get_event_detail(
    event_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Audit view of a single event, in any state."""
    event = await get_event(db, _parse_uuid(event_id, "Event"))
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return _event_detail(event)


@router.get("/queue/stats", response_model=QueueStatsResponse)
async def get_queue_stats(
    db: AsyncSession = Depends(get_db),
):
    """Counts per status, oldest due event age, dead letters awaiting review."""
    stats = await queue_stats(db)
    return QueueStatsResponse(**stats)
