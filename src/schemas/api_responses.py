"""
API response schemas for the ingress and admin endpoints.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class WebhookAcceptedResponse(BaseModel):
    status: str = "accepted"
    event_id: Optional[str] = None
    kind: Optional[str] = None


class CredentialIssueRequest(BaseModel):
    source_id: str
    source_type: str = "agent"


class CredentialIssuedResponse(BaseModel):
    credential_id: str
    project_id: str
    source_id: str
    source_type: str
    token: str  # shown once
    created_at: datetime
    rotated: bool = False


class DeadLetterSummary(BaseModel):
    id: str
    event_id: str
    source_id: Optional[str] = None
    kind: Optional[str] = None
    status: str
    last_error: str
    attempt_count: int
    permanent: bool = False
    first_failed_at: datetime
    last_failed_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None


class DeadLetterListResponse(BaseModel):
    entries: list[DeadLetterSummary]
    total: int
    limit: int
    offset: int


class EventDetail(BaseModel):
    event_id: str
    external_event_id: Optional[str] = None
    dedup_key: str
    source_id: str
    project_id: str
    kind: str
    status: str
    attempt_count: int
    max_attempts: int
    delivery_count: int
    occurred_at: datetime
    received_at: datetime
    available_at: datetime
    acked_at: Optional[datetime] = None
    last_error: Optional[str] = None
    payload: dict
    correlation_id: Optional[str] = None


class QueueStatsResponse(BaseModel):
    counts: dict[str, int]
    oldest_available_age_seconds: Optional[float] = None
    dead_letters_pending_review: int = 0
